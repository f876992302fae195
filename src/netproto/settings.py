"""Engine constants, overridable from a YAML or JSON file."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import ujson as json
import yaml
from pydantic import BaseModel, Field, ValidationError

from .params import DbBackend, NormalizationMode


class EngineSettings(BaseModel):
    """Values the transforms use when they synthesize or rename things."""

    data_batch_size: int = Field(default=16, gt=0)
    data_backend: DbBackend = DbBackend.IMAGEDB
    live_suffix: str = " - Live"
    accuracy_top_k: int = Field(default=1, gt=0)
    loss_normalization: NormalizationMode = NormalizationMode.VALID
    default_solver_type: str = "SGD"

    model_config = {"extra": "forbid"}


def read_structured(path: str | Path) -> Any:
    """Load YAML or JSON by file suffix."""
    path = Path(path)
    text = path.read_text()
    if path.suffix in {".yaml", ".yml"}:
        return yaml.safe_load(text) or {}
    return json.loads(text)


def write_structured(data: Any, path: str | Path) -> None:
    path = Path(path)
    if path.suffix in {".yaml", ".yml"}:
        path.write_text(yaml.safe_dump(data, sort_keys=False))
    else:
        path.write_text(json.dumps(data, indent=2))


def load_settings(path: str | Path) -> EngineSettings:
    data = read_structured(path)
    try:
        return EngineSettings(**data)
    except ValidationError as exc:
        raise ValueError(f"Invalid settings {path}") from exc


def save_settings(settings: EngineSettings, path: str | Path) -> None:
    write_structured(settings.model_dump(mode="json"), path)
