"""Owning descriptor that keeps a model and solver description in sync with a dataset."""

from __future__ import annotations

import logging
from collections.abc import Callable

from .dataset import DatasetBinding
from .phase import Phase
from .rawproto import Node, parse
from .settings import EngineSettings
from .transforms import (
    apply_dataset_sources,
    custom_trainer_name,
    get_batch_size,
    get_layer_setting,
    model_name,
    normalize_for_running,
    normalize_for_training,
    read_dataset_sources,
    rebind_dataset,
    set_solver_variable,
    solver_type,
)

logger = logging.getLogger(__name__)

OverrideHook = Callable[["NetworkProject", Node], Node | None]


class NetworkProject:
    """Model + solver descriptions bound to a dataset.

    Assigning a description re-parses it.  When no dataset name is bound yet
    the data-layer sources are harvested into ``dataset``; otherwise the bound
    source names are written into the description.
    """

    def __init__(
        self,
        name: str,
        dataset: DatasetBinding | None = None,
        settings: EngineSettings | None = None,
        on_override_model: OverrideHook | None = None,
        on_override_solver: OverrideHook | None = None,
    ) -> None:
        self.name = name
        self.dataset = dataset or DatasetBinding()
        self.settings = settings or EngineSettings()
        self.on_override_model = on_override_model
        self.on_override_solver = on_override_solver
        self._model: Node | None = None
        self._solver: Node | None = None

    def _sync(self, tree: Node) -> Node:
        if not self.dataset.name:
            self.dataset = read_dataset_sources(tree, self.dataset)
            return tree
        return apply_dataset_sources(tree, self.dataset)

    @property
    def model(self) -> Node | None:
        return self._model

    @property
    def solver(self) -> Node | None:
        return self._solver

    @property
    def model_description(self) -> str | None:
        return None if self._model is None else self._model.to_text()

    @model_description.setter
    def model_description(self, text: str | None) -> None:
        self._model = self._sync(parse(text)) if text else None

    @property
    def solver_description(self) -> str | None:
        return None if self._solver is None else self._solver.to_text()

    @solver_description.setter
    def solver_description(self, text: str | None) -> None:
        self._solver = self._sync(parse(text)) if text else None

    @property
    def model_name(self) -> str | None:
        return None if self._model is None else model_name(self._model)

    @property
    def solver_type(self) -> str:
        if self._solver is None:
            return self.settings.default_solver_type
        return solver_type(self._solver, self.settings)

    @property
    def custom_trainer_name(self) -> str | None:
        return None if self._solver is None else custom_trainer_name(self._solver)

    def batch_size(self, phase: Phase = Phase.NONE) -> int:
        return 0 if self._model is None else get_batch_size(self._model, phase)

    def layer_setting(self, phase: Phase, block: str, field: str) -> float | None:
        if self._model is None:
            return None
        return get_layer_setting(self._model, phase, block, field)

    def set_solver_variable(self, name: str, value: object) -> bool:
        if self._solver is None:
            return False
        self._solver = set_solver_variable(self._solver, name, value)
        return True

    def set_dataset(self, dataset: DatasetBinding | None, resize_outputs: bool = False) -> bool:
        """Rebind the model to ``dataset``; returns whether outputs were resized."""
        if dataset is None:
            return False
        self.dataset = dataset
        resized = False
        if self._model is not None:
            model, resized = rebind_dataset(self._model, dataset, resize_outputs)
            if self.on_override_model is not None:
                model = self.on_override_model(self, model) or model
            self._model = model
            logger.info("Rebound '%s' to dataset '%s'", self.name, dataset.name)
        if self._solver is not None and self.on_override_solver is not None:
            self._solver = self.on_override_solver(self, self._solver.copy()) or self._solver
        return resized

    def create_model_for_training(self, native_format: bool = False) -> Node | None:
        if self._model is None:
            return None
        return normalize_for_training(self._model, self.name, native_format, self.settings)

    def create_model_for_running(
        self, input_name: str, batch: int, channels: int, height: int, width: int
    ) -> tuple[Node, Node | None] | None:
        if self._model is None:
            return None
        return normalize_for_running(
            self._model, input_name, batch, channels, height, width, self.settings
        )

    def __str__(self) -> str:
        return f"{self.name} ({self.dataset.name or 'no dataset'})"
