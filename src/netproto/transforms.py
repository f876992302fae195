"""Graph rewrites that adapt a network description to a new execution context.

Every public function here accepts either description text or a ``Node`` and
works on a private copy, so the caller's tree is never modified.  Each
rewrite first classifies the layers in a read-only scan, then applies the
resulting plan.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

from .dataset import DatasetBinding, SourceBinding
from .errors import LayerDecodeError
from .layers import DATA_KINDS, LayerType, parse_layer_type
from .params import format_number
from .phase import Phase, parse_phase
from .rawproto import Node, ValueType, parse
from .settings import EngineSettings

logger = logging.getLogger(__name__)

LAYER_KEY = "layer"
LEGACY_LAYER_KEY = "layers"
_TRAIN_TEST = frozenset({Phase.TRAIN, Phase.TEST})


def _as_tree(model: Node | str) -> Node:
    return parse(model) if isinstance(model, str) else model.copy()


def _as_view(model: Node | str) -> Node:
    return parse(model) if isinstance(model, str) else model


def layer_key(root: Node) -> str:
    """``layer``, or the legacy ``layers`` when only that is present."""
    if not root.find_children(LAYER_KEY) and root.find_children(LEGACY_LAYER_KEY):
        return LEGACY_LAYER_KEY
    return LAYER_KEY


def layer_nodes(root: Node) -> list[Node]:
    return root.find_children(layer_key(root))


def layer_kind(layer: Node) -> LayerType:
    type_text = layer.find_value("type")
    if type_text is None:
        name = layer.find_value("name") or "<unnamed>"
        raise LayerDecodeError(f"Layer '{name}' has no type")
    return parse_layer_type(type_text)


def rule_phases(rules: list[Node]) -> set[Phase]:
    """Concrete phases named by a set of include or exclude rules."""
    phases: set[Phase] = set()
    for rule in rules:
        text = rule.find_value("phase")
        if text is not None:
            phases |= parse_phase(text).expand()
    return phases


def include_phase(layer: Node) -> Phase:
    """Phase of the first include rule, ``NONE`` when there is none."""
    rule = layer.find_child("include")
    text = None if rule is None else rule.find_value("phase")
    return Phase.NONE if text is None else parse_phase(text)


def _is_primary(data_param: Node) -> bool:
    flags = data_param.find_array("primary_data", bool)
    return flags[0] if flags else True


# -- training ----------------------------------------------------------------


def data_layer_node(
    key: str,
    name: str,
    phase: Phase,
    native_format: bool = False,
    source: str = "",
    settings: EngineSettings | None = None,
) -> Node:
    """Synthesize a data layer block for ``phase``."""
    settings = settings or EngineSettings()
    color = "BGR" if native_format else "RGB"
    text = (
        f'{key} {{ type: "Data" top: "data" top: "label" include {{ phase: {phase.value} }} '
        f"transform_param {{ scale: 1 mirror: true use_imagedb_mean: true color_order: {color} }} "
        f"data_param {{ batch_size: {settings.data_batch_size} "
        f"backend: {settings.data_backend.value} enable_random_selection: true }} }}"
    )
    node = parse(text).children[0]
    node.insert(0, Node.scalar("name", name, ValueType.STRING))
    node.find_child("data_param").insert(0, Node.scalar("source", source, ValueType.STRING))
    return node


def accuracy_layer_node(key: str, bottom: str, settings: EngineSettings | None = None) -> Node:
    settings = settings or EngineSettings()
    node = parse(
        f'{key} {{ name: "accuracy" type: "Accuracy" bottom: "label" top: "accuracy" '
        f"include {{ phase: TEST }} accuracy_param {{ top_k: {settings.accuracy_top_k} }} }}"
    ).children[0]
    node.insert(2, Node.scalar("bottom", bottom, ValueType.STRING))
    return node


def normalize_for_training(
    model: Node | str,
    name: str,
    native_format: bool = False,
    settings: EngineSettings | None = None,
) -> Node:
    """Make a description trainable: data layers for both phases, a loss and an accuracy.

    ``name`` names the synthesized data layers; ``native_format`` selects BGR
    color order for them.  When anything structural changes (or legacy
    ``input_dim`` fields are present) the root is rebuilt as ``name`` followed
    by the layers.
    """
    settings = settings or EngineSettings()
    root = _as_tree(model)
    key = layer_key(root)
    layers = root.find_children(key)

    train_idx = test_idx = accuracy_idx = -1
    softmax: Node | None = None
    removal: list[Node] = []
    for idx, layer in enumerate(layers):
        kind = layer_kind(layer)
        included = rule_phases(layer.find_children("include"))
        excluded = rule_phases(layer.find_children("exclude"))
        if (included and not included <= _TRAIN_TEST) or excluded & _TRAIN_TEST:
            removal.append(layer)
            continue
        if kind is LayerType.SOFTMAX:
            softmax = layer
        if kind in DATA_KINDS:
            if Phase.TRAIN in included and train_idx < 0:
                train_idx = idx
            if Phase.TEST in included and test_idx < 0:
                test_idx = idx
        elif kind is LayerType.ACCURACY and accuracy_idx < 0:
            accuracy_idx = idx

    dirty = False
    plan = list(layers)
    if test_idx < 0:
        node = data_layer_node(key, name, Phase.TEST, native_format, settings=settings)
        plan.insert(train_idx + 1 if train_idx >= 0 else 0, node)
        logger.debug("Inserted TEST data layer")
        dirty = True
    if train_idx < 0:
        plan.insert(0, data_layer_node(key, name, Phase.TRAIN, native_format, settings=settings))
        logger.debug("Inserted TRAIN data layer")
        dirty = True

    removed_ids = {id(node) for node in removal}
    plan = [node for node in plan if id(node) not in removed_ids]
    for node in removal:
        root.remove_child(node)
        logger.debug("Removed layer '%s' (phase rules)", node.find_value("name"))

    if softmax is not None:
        softmax.set_value("type", LayerType.SOFTMAXWITH_LOSS.value, ValueType.STRING)
        softmax.append(Node.scalar("bottom", "label", ValueType.STRING))
        softmax.append(Node.scalar("loss_weight", 1, ValueType.NUMERIC))
        softmax.append(parse("include { phase: TRAIN }").children[0])
        softmax.append(
            parse(f"loss_param {{ normalization: {settings.loss_normalization.value} }}").children[0]
        )
        logger.debug("Converted '%s' to SoftmaxWithLoss", softmax.find_value("name"))
        dirty = True

    if accuracy_idx < 0 and plan:
        bottoms = plan[-1].find_array("bottom")
        if bottoms:
            plan.append(accuracy_layer_node(key, bottoms[0], settings))
            logger.debug("Appended accuracy layer on '%s'", bottoms[0])
            dirty = True

    if dirty or root.find_children("input_dim"):
        name_node = root.find_child("name")
        return Node.root(([name_node] if name_node is not None else []) + plan)
    return root


# -- running -------------------------------------------------------------------


def _trim_bottoms(layer: Node, count: int) -> None:
    bottoms = layer.find_children("bottom")
    for extra in bottoms[max(count, 0) :]:
        layer.remove_child(extra)


def _run_bottom_limit(layer: Node) -> int | None:
    for block in layer.find_children("max_bottom_count"):
        text = block.find_value("phase")
        if text is None or parse_phase(text) is not Phase.RUN:
            continue
        counts = block.find_array("count", int)
        if counts:
            return counts[0]
    return None


def normalize_for_running(
    model: Node | str,
    input_name: str,
    batch: int,
    channels: int,
    height: int,
    width: int,
    settings: EngineSettings | None = None,
) -> tuple[Node, Node | None]:
    """Strip training-only structure and declare a fixed-shape input.

    Returns the rewritten tree and a copy of the TEST data layer's
    ``transform_param`` block (``None`` when there is none) so inference
    callers can reproduce the preprocessing.
    """
    settings = settings or EngineSettings()
    root = _as_tree(model)
    insert_at = root.find_child_index("name") + 1

    input_node = root.find_child("input")
    input_pos = -1
    if input_node is not None:
        input_node.value = input_name
        input_node.value_type = ValueType.STRING
    else:
        input_node = Node.scalar("input", input_name, ValueType.STRING)
        input_pos = insert_at
        insert_at += 1

    dims = (batch, channels, height, width)
    shape_node = root.find_child("input_shape")
    shape_pos = -1
    if shape_node is not None:
        existing = shape_node.find_children("dim")
        for dim, value in zip(existing, dims):
            dim.value = str(value)
            dim.value_type = ValueType.NUMERIC
        for value in dims[len(existing) :]:
            shape_node.append(Node.scalar("dim", value))
    else:
        shape_node = Node.block("input_shape", [Node.scalar("dim", value) for value in dims])
        shape_pos = insert_at

    name_node = root.find_child("name")
    if name_node is not None and name_node.value is not None:
        name_node.value += settings.live_suffix

    transform: Node | None = None
    softmax_present = False
    loss_layers: list[Node] = []
    removal: list[Node] = []
    for layer in layer_nodes(root):
        kind = layer_kind(layer)
        included = rule_phases(layer.find_children("include"))
        excluded = rule_phases(layer.find_children("exclude"))
        keep = False
        if kind in DATA_KINDS:
            found = layer.find_child("transform_param")
            if Phase.TEST in included and transform is None and found is not None:
                transform = found.copy()
        elif kind is LayerType.SOFTMAXWITH_LOSS:
            loss_layers.append(layer)
            keep = True
        elif kind is LayerType.SOFTMAX:
            softmax_present = True
        elif kind in (LayerType.LABELMAPPING, LayerType.DEBUG):
            removal.append(layer)
            continue
        elif kind is LayerType.BINARYHASH:
            bottoms = layer.find_children("bottom")
            if bottoms:
                layer.remove_child(bottoms[-1])

        if Phase.RUN in excluded:
            removal.append(layer)
        elif not keep and included & _TRAIN_TEST and Phase.RUN not in included:
            removal.append(layer)
        else:
            limit = _run_bottom_limit(layer)
            if limit is not None:
                _trim_bottoms(layer, limit)

    for layer in loss_layers:
        if softmax_present:
            removal.append(layer)
            continue
        layer.set_value("type", LayerType.SOFTMAX.value, ValueType.STRING)
        layer.remove_value("bottom", "label", first_only=True)
        for child in layer.find_children("loss_weight", "loss_param"):
            layer.remove_child(child)
        logger.debug("Demoted '%s' to Softmax", layer.find_value("name"))

    for layer in removal:
        if root.remove_child(layer):
            logger.debug("Removed layer '%s' for running", layer.find_value("name"))

    remaining = layer_nodes(root)
    if remaining:
        bottoms = remaining[0].find_array("bottom")
        if bottoms:
            input_node.value = bottoms[0]

    if input_pos >= 0:
        root.insert(input_pos, input_node)
    if shape_pos >= 0:
        root.insert(shape_pos, shape_node)
    return root, transform


# -- dataset rebinding -----------------------------------------------------------


def source_block(layer: Node, kind: LayerType) -> Node | None:
    """Block holding a data layer's ``source``: ``batch_data_param`` for BatchData."""
    return layer.find_child("batch_data_param" if kind is LayerType.BATCHDATA else "data_param")


def _rebind_data_layer(
    layer: Node, kind: LayerType, binding: DatasetBinding, batches: dict[Phase, Node]
) -> None:
    data_param = source_block(layer, kind)
    height = 0
    if data_param is not None:
        phase = include_phase(layer)
        if phase is not Phase.NONE:
            slot = Phase.TEST if phase is Phase.TEST else Phase.TRAIN
            primary = _is_primary(data_param)
            target = binding if primary else binding.target
            if target is not None:
                source: SourceBinding = target.source_for(slot)
                data_param.set_value("source", source.name, ValueType.STRING)
                height = source.image_height
            if primary and data_param.find_array("batch_size", int):
                batches[slot] = data_param

    transform = layer.find_child("transform_param")
    crops = [] if transform is None else transform.find_array("crop_size", int)
    if crops and height > 0 and crops[0] != height:
        transform.set_value("crop_size", height, ValueType.NUMERIC)


def rebind_dataset(
    model: Node | str,
    binding: DatasetBinding,
    resize_outputs: bool = False,
) -> tuple[Node, bool]:
    """Point data layers at a dataset's sources.

    Returns the rewritten tree and whether any inner-product output was
    resized to the dataset's label count.
    """
    root = _as_tree(model)
    batches: dict[Phase, Node] = {}
    resize: list[Node] = []
    last_kind: LayerType | None = None
    last_layer: Node | None = None
    for layer in layer_nodes(root):
        kind = layer_kind(layer)
        if kind in DATA_KINDS:
            _rebind_data_layer(layer, kind, binding, batches)
        elif kind.is_loss and last_kind is LayerType.INNERPRODUCT and last_layer is not None:
            resize.append(last_layer)
        last_kind, last_layer = kind, layer

    test_param = batches.get(Phase.TEST)
    train_param = batches.get(Phase.TRAIN)
    if test_param is not None and train_param is not None:
        test_size = test_param.find_array("batch_size", int)[0]
        if train_param.find_array("batch_size", int)[0] < test_size:
            train_param.set_value("batch_size", test_size, ValueType.NUMERIC)
            logger.debug("Raised TRAIN batch size to %d", test_size)

    resized = False
    if resize_outputs and binding.training.label_count > 0:
        for layer in resize:
            block = layer.find_child("inner_product_param")
            num_output = None if block is None else block.find_child("num_output")
            if num_output is not None:
                num_output.value = str(binding.training.label_count)
                num_output.value_type = ValueType.NUMERIC
                resized = True
    return root, resized


def _source_nodes(root: Node) -> Iterator[tuple[bool, Phase, Node]]:
    """Yield ``(primary, phase, source_node)`` for each phased data-layer source."""
    for layer in layer_nodes(root):
        kind = layer_kind(layer)
        if kind not in DATA_KINDS:
            continue
        data_param = source_block(layer, kind)
        source = None if data_param is None else data_param.find_child("source")
        if source is None:
            continue
        phase = include_phase(layer)
        if phase in _TRAIN_TEST:
            yield _is_primary(data_param), phase, source


def read_dataset_sources(
    model: Node | str, binding: DatasetBinding | None = None
) -> DatasetBinding:
    """Harvest data-layer source names; secondary (non-primary) sources go to ``target``."""
    result = binding.model_copy(deep=True) if binding is not None else DatasetBinding()
    for primary, phase, source in _source_nodes(_as_view(model)):
        if primary:
            dataset = result
        else:
            if result.target is None:
                result.target = DatasetBinding(name=f"{result.name}_tgt" if result.name else "")
            dataset = result.target
        dataset.source_for(phase).name = source.value or ""
    return result


def apply_dataset_sources(model: Node | str, binding: DatasetBinding) -> Node:
    """Write bound source names into existing ``source`` fields; unbound names are skipped."""
    root = _as_tree(model)
    for primary, phase, source in _source_nodes(root):
        dataset = binding if primary else binding.target
        if dataset is None:
            continue
        name = dataset.source_for(phase).name
        if name:
            source.value = name
            source.value_type = ValueType.STRING
    return root


# -- lookups -------------------------------------------------------------------


def find_layer_parameter(
    model: Node | str,
    layer_name: str | None,
    layer_type: str,
    param: str | None,
    field: str,
    phase: Phase = Phase.NONE,
) -> str | None:
    """Value of ``field`` in the matching layer's ``param`` block (or on the layer itself).

    With a phase filter, a layer whose include rule names exactly that phase
    wins; otherwise the first matching layer without include rules is used.
    """
    found: Node | None = None
    for layer in layer_nodes(_as_view(model)):
        type_text = layer.find_value("type")
        if type_text is None or type_text.lower() != layer_type.lower():
            continue
        if layer_name is not None and layer.find_value("name") != layer_name:
            continue
        if phase is Phase.NONE:
            found = layer
            break
        rule = layer.find_child("include")
        if rule is None:
            if found is None:
                found = layer
            continue
        text = rule.find_value("phase")
        if text is not None and text.upper() == phase.value:
            found = layer
            break
    if found is None:
        return None
    block = found.find_child(param) if param else None
    return (found if block is None else block).find_value(field)


def get_batch_size(model: Node | str, phase: Phase = Phase.NONE) -> int:
    """Batch size of the first data layer running in ``phase`` (any phase for NONE); 0 if none."""
    for layer in layer_nodes(_as_view(model)):
        if phase is not Phase.NONE and include_phase(layer) is not phase:
            continue
        block = layer.find_child("batch_data_param")
        if block is None:
            block = layer.find_child("data_param")
        if block is not None:
            sizes = block.find_array("batch_size", int)
            return sizes[0] if sizes else 0
    return 0


def get_layer_setting(
    model: Node | str, phase: Phase, block: str, field: str
) -> float | None:
    for layer in layer_nodes(_as_view(model)):
        if phase is not Phase.NONE and include_phase(layer) is not phase:
            continue
        found = layer.find_child(block)
        if found is not None:
            values = found.find_array(field, float)
            return values[0] if values else None
    return None


# -- solver / model metadata -----------------------------------------------------


def set_solver_variable(solver: Node | str, name: str, value: object) -> Node:
    root = _as_tree(solver)
    text = format_number(value) if isinstance(value, float) else value
    root.set_value(name, text)
    return root


def solver_type(solver: Node | str, settings: EngineSettings | None = None) -> str:
    settings = settings or EngineSettings()
    return _as_view(solver).find_value("type") or settings.default_solver_type


def custom_trainer_name(solver: Node | str) -> str | None:
    return _as_view(solver).find_value("custom_trainer") or None


def model_name(model: Node | str) -> str | None:
    return _as_view(model).find_value("name")
