"""Public API for downstream modules."""

from __future__ import annotations

from pathlib import Path

from .dataset import DatasetBinding, load_dataset_binding
from .layers import LayerParameter, LayerType, parse_layer_type
from .phase import Phase
from .project import NetworkProject
from .rawproto import Node, parse, serialize
from .settings import EngineSettings, load_settings
from .transforms import (
    find_layer_parameter,
    normalize_for_running,
    normalize_for_training,
    rebind_dataset,
)

__all__ = [
    "DatasetBinding",
    "EngineSettings",
    "LayerParameter",
    "LayerType",
    "NetworkProject",
    "Node",
    "Phase",
    "decode_layer",
    "encode_layer",
    "find_layer_parameter",
    "load_dataset_binding",
    "load_description",
    "load_settings",
    "normalize_for_running",
    "normalize_for_training",
    "parse",
    "parse_layer_type",
    "rebind_dataset",
    "save_description",
    "serialize",
]


def load_description(path: str | Path) -> Node:
    """Read and parse a description file."""
    return parse(Path(path).read_text())


def save_description(tree: Node, path: str | Path) -> None:
    """Serialize a tree to disk."""
    Path(path).write_text(serialize(tree))


def decode_layer(node: Node) -> LayerParameter:
    return LayerParameter.from_proto(node)


def encode_layer(layer: LayerParameter) -> Node:
    return layer.to_proto()
