"""Dataset bindings consumed by the rebind transforms."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from .phase import Phase
from .settings import read_structured


class SourceBinding(BaseModel):
    """One data source as seen by a network: name, image size, label count."""

    name: str = ""
    image_height: int = Field(default=0, ge=0)
    image_width: int = Field(default=0, ge=0)
    label_count: int = Field(default=0, ge=0)


class DatasetBinding(BaseModel):
    """Training and testing sources, plus an optional secondary (target) dataset."""

    name: str = ""
    training: SourceBinding = Field(default_factory=SourceBinding)
    testing: SourceBinding = Field(default_factory=SourceBinding)
    target: DatasetBinding | None = None

    def source_for(self, phase: Phase) -> SourceBinding:
        return self.testing if phase is Phase.TEST else self.training


DatasetBinding.model_rebuild()


def load_dataset_binding(path: str | Path) -> DatasetBinding:
    data = read_structured(path)
    try:
        return DatasetBinding(**data)
    except ValidationError as exc:
        raise ValueError(f"Invalid dataset binding {path}") from exc
