import pytest

from netproto.dataset import DatasetBinding, SourceBinding
from netproto.errors import LayerDecodeError, ProtoSyntaxError, UnknownKindError
from netproto.phase import Phase
from netproto.rawproto import Node, parse
from netproto.settings import EngineSettings
from netproto.transforms import (
    apply_dataset_sources,
    custom_trainer_name,
    find_layer_parameter,
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

SMALL = (
    'layer { name: "d" type: "Data" include { phase: TRAIN } '
    'data_param { source: "s1" batch_size: 16 } } '
    'layer { name: "sm" type: "Softmax" }'
)


def _names(tree: Node, key: str = "layer") -> list[str | None]:
    return [layer.find_value("name") for layer in tree.find_children(key)]


def _layer(tree: Node, name: str) -> Node:
    return next(layer for layer in tree.find_children("layer") if layer.find_value("name") == name)


def _phase(layer: Node) -> str | None:
    return layer.find_child("include").find_value("phase")


# -- training ------------------------------------------------------------------


def test_training_completes_a_partial_model() -> None:
    tree = normalize_for_training(SMALL, "net")
    assert _names(tree) == ["d", "net", "sm", "accuracy"]

    test_data = tree.find_children("layer")[1]
    assert test_data.find_value("type") == "Data"
    assert _phase(test_data) == "TEST"
    assert test_data.find_child("data_param").find_value("batch_size") == "16"
    assert test_data.find_child("transform_param").find_value("color_order") == "RGB"

    sm = _layer(tree, "sm")
    assert sm.find_value("type") == "SoftmaxWithLoss"
    assert sm.find_array("bottom") == ["label"]
    assert _phase(sm) == "TRAIN"
    assert sm.find_child("loss_param").find_value("normalization") == "VALID"

    accuracy = _layer(tree, "accuracy")
    assert accuracy.find_value("type") == "Accuracy"
    assert _phase(accuracy) == "TEST"
    assert accuracy.find_child("accuracy_param").find_value("top_k") == "1"
    assert accuracy.find_array("bottom")[0] == sm.find_array("bottom")[0]


def test_training_leaves_complete_model_unchanged(lenet_text: str) -> None:
    assert normalize_for_training(lenet_text, "mnist") == parse(lenet_text)


def test_training_does_not_touch_the_input_tree() -> None:
    tree = parse(SMALL)
    snapshot = tree.copy()
    normalize_for_training(tree, "net")
    assert tree == snapshot


def test_training_inserts_both_data_layers_first() -> None:
    tree = normalize_for_training(
        'name: "ip-only" layer { name: "ip" type: "InnerProduct" bottom: "x" top: "ip" }', "net"
    )
    layers = tree.find_children("layer")
    assert [_phase(layer) for layer in layers[:2]] == ["TRAIN", "TEST"]
    assert _names(tree) == ["net", "net", "ip", "accuracy"]
    assert tree.children[0].name == "name"
    assert _layer(tree, "accuracy").find_array("bottom") == ["x", "label"]


def test_training_removes_non_training_layers(lenet_text: str) -> None:
    text = lenet_text + (
        'layer { name: "deploy" type: "ReLU" include { phase: RUN } }\n'
        'layer { name: "no_test" type: "Dropout" exclude { phase: TEST } }\n'
        'layer { name: "always" type: "ReLU" exclude { phase: RUN } }\n'
    )
    tree = normalize_for_training(text, "mnist")
    assert _names(tree) == ["mnist", "mnist", "conv1", "ip2", "accuracy", "loss", "always"]


def test_training_replaces_excluded_accuracy_layer() -> None:
    text = (
        'layer { name: "d_train" type: "Data" include { phase: TRAIN } } '
        'layer { name: "d_test" type: "Data" include { phase: TEST } } '
        'layer { name: "ip" type: "InnerProduct" bottom: "data" top: "ip" } '
        'layer { name: "acc" type: "Accuracy" bottom: "ip" bottom: "label" '
        "exclude { phase: TRAIN } } "
        'layer { name: "loss" type: "SoftmaxWithLoss" bottom: "ip" bottom: "label" }'
    )
    tree = normalize_for_training(text, "net")
    assert _names(tree) == ["d_train", "d_test", "ip", "loss", "accuracy"]
    accuracy = _layer(tree, "accuracy")
    assert _phase(accuracy) == "TEST"
    assert accuracy.find_array("bottom") == ["ip", "label"]


def test_training_replaces_excluded_train_data_layer() -> None:
    text = (
        'layer { name: "train" type: "Data" include { phase: TRAIN } exclude { phase: TEST } } '
        'layer { name: "test" type: "Data" include { phase: TEST } } '
        'layer { name: "loss" type: "SoftmaxWithLoss" bottom: "ip" bottom: "label" } '
        'layer { name: "acc" type: "Accuracy" bottom: "ip" bottom: "label" '
        "include { phase: TEST } }"
    )
    tree = normalize_for_training(text, "net")
    layers = tree.find_children("layer")
    assert _names(tree) == ["net", "test", "loss", "acc"]
    assert _phase(layers[0]) == "TRAIN"
    assert layers[0].find_value("type") == "Data"


def test_training_rebuilds_legacy_input_headers(lenet_text: str) -> None:
    tree = normalize_for_training('input: "data"\ninput_dim: 1\n' + lenet_text, "mnist")
    assert tree.find_child("input_dim") is None
    assert tree.find_child("input") is None
    assert tree.children[0].name == "name"
    assert len(tree.find_children("layer")) == 6


def test_training_honors_format_and_settings() -> None:
    settings = EngineSettings(data_batch_size=8, accuracy_top_k=5)
    tree = normalize_for_training(SMALL, "net", native_format=True, settings=settings)
    test_data = tree.find_children("layer")[1]
    assert test_data.find_child("transform_param").find_value("color_order") == "BGR"
    assert test_data.find_child("data_param").find_value("batch_size") == "8"
    assert _layer(tree, "accuracy").find_child("accuracy_param").find_value("top_k") == "5"


def test_training_keeps_legacy_layer_key() -> None:
    tree = normalize_for_training('layers { name: "sm" type: "Softmax" bottom: "ip" }', "net")
    assert tree.find_children("layer") == []
    assert _names(tree, "layers") == ["net", "net", "sm", "accuracy"]


@pytest.mark.parametrize(
    ("text", "error"),
    [
        ('layer { name: "h" type: "Hdf5Data" }', UnknownKindError),
        ('layer { name: "h" }', LayerDecodeError),
        ('layer { name: "h" type: "ReLU" include { phase: LATER } }', UnknownKindError),
        ('layer { name: "h" type: "ReLU"', ProtoSyntaxError),
    ],
)
def test_training_rejects_bad_layers(text: str, error: type[Exception]) -> None:
    with pytest.raises(error):
        normalize_for_training(text, "net")


# -- running -------------------------------------------------------------------


def test_running_strips_training_structure(lenet_text: str) -> None:
    tree, transform = normalize_for_running(lenet_text, "data", 1, 1, 28, 28)
    assert tree.find_value("name") == "LeNet - Live"
    assert [child.name for child in tree.children[:3]] == ["name", "input", "input_shape"]
    assert tree.find_value("input") == "data"
    assert tree.find_child("input_shape").find_array("dim", int) == [1, 1, 28, 28]
    assert _names(tree) == ["conv1", "ip2", "loss"]

    loss = _layer(tree, "loss")
    assert loss.find_value("type") == "Softmax"
    assert loss.find_array("bottom") == ["ip2"]

    assert transform is not None
    assert transform.name == "transform_param"
    assert transform.find_value("scale") == "0.00390625"


def test_running_removes_loss_when_softmax_exists() -> None:
    tree, transform = normalize_for_running(
        'layer { name: "prob" type: "Softmax" bottom: "ip" top: "prob" } '
        'layer { name: "loss" type: "SoftmaxWithLoss" bottom: "ip" bottom: "label" '
        "loss_weight: 1 loss_param { normalization: FULL } }",
        "data",
        1,
        3,
        8,
        8,
    )
    assert _names(tree) == ["prob"]
    assert transform is None


def test_running_demotion_strips_loss_fields() -> None:
    tree, _ = normalize_for_running(
        'layer { name: "loss" type: "SoftmaxWithLoss" bottom: "ip" bottom: "label" '
        "loss_weight: 1 loss_param { normalization: FULL } }",
        "data",
        1,
        3,
        8,
        8,
    )
    loss = _layer(tree, "loss")
    assert loss.find_value("type") == "Softmax"
    assert loss.find_children("loss_weight", "loss_param") == []
    assert tree.find_value("input") == "ip"


def test_running_trims_bottoms_to_run_limit() -> None:
    tree, _ = normalize_for_running(
        'layer { name: "knn" type: "Knn" bottom: "a" bottom: "b" bottom: "c" top: "k" '
        "max_bottom_count { phase: RUN count: 1 } }",
        "data",
        1,
        3,
        8,
        8,
    )
    assert _layer(tree, "knn").find_array("bottom") == ["a"]


def test_running_kind_specific_rules() -> None:
    text = (
        'layer { name: "map" type: "LabelMapping" bottom: "x" } '
        'layer { name: "dbg" type: "Debug" bottom: "x" bottom: "label" } '
        'layer { name: "hash" type: "BinaryHash" bottom: "a" bottom: "b" bottom: "c" bottom: "label" } '
        'layer { name: "drop" type: "Dropout" bottom: "x" exclude { phase: RUN } } '
        'layer { name: "all" type: "ReLU" bottom: "x" include { phase: ALL } } '
        'layer { name: "train_only" type: "ReLU" bottom: "x" include { phase: TRAIN } }'
    )
    tree, _ = normalize_for_running(text, "data", 1, 3, 8, 8)
    assert _names(tree) == ["hash", "all"]
    assert _layer(tree, "hash").find_array("bottom") == ["a", "b", "c"]


def test_running_updates_existing_input_declarations() -> None:
    tree, _ = normalize_for_running(
        'name: "n" input: "old" input_shape { dim: 5 dim: 3 } '
        'layer { name: "c" type: "Convolution" bottom: "img" }',
        "data",
        2,
        3,
        64,
        64,
    )
    assert [child.name for child in tree.children] == ["name", "input", "input_shape", "layer"]
    assert tree.find_value("input") == "img"
    assert tree.find_child("input_shape").find_array("dim", int) == [2, 3, 64, 64]


def test_running_without_layers_uses_input_name() -> None:
    settings = EngineSettings(live_suffix=" (deploy)")
    tree, transform = normalize_for_running('name: "n"', "pixels", 1, 3, 4, 4, settings)
    assert tree.find_value("name") == "n (deploy)"
    assert tree.find_value("input") == "pixels"
    assert transform is None


def test_running_rejects_unknown_layer_type() -> None:
    with pytest.raises(UnknownKindError):
        normalize_for_running('layer { name: "x" type: "Warp" }', "data", 1, 3, 4, 4)


# -- dataset rebinding -----------------------------------------------------------


def test_rebind_sets_sources_and_harmonizes_batches(
    lenet_text: str, cifar_binding: DatasetBinding
) -> None:
    tree, resized = rebind_dataset(lenet_text, cifar_binding)
    train, test = tree.find_children("layer")[:2]
    assert train.find_child("data_param").find_value("source") == "CIFAR-10.training"
    assert test.find_child("data_param").find_value("source") == "CIFAR-10.testing"
    assert train.find_child("data_param").find_value("batch_size") == "100"
    assert test.find_child("data_param").find_value("batch_size") == "100"
    assert resized is False


def test_rebind_raises_train_batch_to_test_batch(cifar_binding: DatasetBinding) -> None:
    text = (
        'layer { name: "train" type: "Data" include { phase: TRAIN } data_param { batch_size: 16 } } '
        'layer { name: "test" type: "Data" include { phase: TEST } data_param { batch_size: 32 } }'
    )
    tree, _ = rebind_dataset(text, cifar_binding)
    assert get_batch_size(tree, Phase.TRAIN) == 32
    assert get_batch_size(tree, Phase.TEST) == 32
    assert _layer(tree, "train").find_child("data_param").find_value("source") == (
        "CIFAR-10.training"
    )


def test_rebind_keeps_larger_train_batch(cifar_binding: DatasetBinding) -> None:
    text = (
        'layer { name: "train" type: "Data" include { phase: TRAIN } data_param { batch_size: 64 } } '
        'layer { name: "test" type: "Data" include { phase: TEST } data_param { batch_size: 32 } }'
    )
    tree, _ = rebind_dataset(text, cifar_binding)
    assert get_batch_size(tree, Phase.TRAIN) == 64


def test_rebind_reconciles_crop_size(cifar_binding: DatasetBinding) -> None:
    text = (
        'layer { name: "train" type: "Data" include { phase: TRAIN } '
        "transform_param { crop_size: 28 } data_param { batch_size: 4 } }"
    )
    tree, _ = rebind_dataset(text, cifar_binding)
    assert get_layer_setting(tree, Phase.TRAIN, "transform_param", "crop_size") == 32

    unsized = DatasetBinding(name="x", training=SourceBinding(name="x.training"))
    tree, _ = rebind_dataset(text, unsized)
    assert get_layer_setting(tree, Phase.TRAIN, "transform_param", "crop_size") == 28


RESIZE = (
    'layer { name: "data" type: "Data" include { phase: TRAIN } data_param { batch_size: 4 } } '
    'layer { name: "ip" type: "InnerProduct" bottom: "data" top: "ip" '
    "inner_product_param { num_output: 1000 } } "
    'layer { name: "loss" type: "SoftmaxWithLoss" bottom: "ip" bottom: "label" }'
)


def test_rebind_resizes_classifier_before_loss() -> None:
    binding = DatasetBinding(
        name="flowers", training=SourceBinding(name="flowers.training", label_count=7)
    )
    tree, resized = rebind_dataset(RESIZE, binding, resize_outputs=True)
    assert resized is True
    assert find_layer_parameter(tree, "ip", "InnerProduct", "inner_product_param", "num_output") == (
        "7"
    )

    tree, resized = rebind_dataset(RESIZE, binding)
    assert resized is False
    assert find_layer_parameter(tree, "ip", "InnerProduct", "inner_product_param", "num_output") == (
        "1000"
    )


def test_rebind_resize_needs_adjacent_loss() -> None:
    binding = DatasetBinding(training=SourceBinding(label_count=7))
    text = RESIZE.replace(
        'layer { name: "loss"', 'layer { name: "relu" type: "ReLU" bottom: "ip" } layer { name: "loss"'
    )
    tree, resized = rebind_dataset(text, binding, resize_outputs=True)
    assert resized is False


SECONDARY = (
    'layer { name: "src" type: "Data" include { phase: TRAIN } '
    'data_param { source: "a.training" batch_size: 32 } } '
    'layer { name: "tgt" type: "Data" include { phase: TRAIN } '
    'data_param { source: "b.training" batch_size: 8 primary_data: false } }'
)


def test_rebind_keeps_secondary_sources_distinct(cifar_binding: DatasetBinding) -> None:
    tree, _ = rebind_dataset(SECONDARY, cifar_binding)
    assert _layer(tree, "src").find_child("data_param").find_value("source") == (
        "CIFAR-10.training"
    )
    assert _layer(tree, "tgt").find_child("data_param").find_value("source") == "b.training"

    cifar_binding.target = DatasetBinding(
        name="SVHN", training=SourceBinding(name="SVHN.training")
    )
    tree, _ = rebind_dataset(SECONDARY, cifar_binding)
    tgt = _layer(tree, "tgt").find_child("data_param")
    assert tgt.find_value("source") == "SVHN.training"
    assert tgt.find_value("batch_size") == "8"


def test_rebind_adds_missing_source(cifar_binding: DatasetBinding) -> None:
    tree, _ = rebind_dataset(
        'layer { name: "t" type: "Data" include { phase: TEST } data_param { batch_size: 2 } }',
        cifar_binding,
    )
    assert tree.find_child("layer").find_child("data_param").find_array("source") == [
        "CIFAR-10.testing"
    ]


BATCH_DATA = (
    'layer { name: "batch" type: "BatchData" bottom: "imgidx" include { phase: TRAIN } '
    'transform_param { crop_size: 28 } batch_data_param { source: "old" iterations: 2 } }'
)


def test_rebind_uses_batch_data_block(cifar_binding: DatasetBinding) -> None:
    tree, _ = rebind_dataset(BATCH_DATA, cifar_binding)
    layer = tree.find_child("layer")
    assert layer.find_child("batch_data_param").find_value("source") == "CIFAR-10.training"
    assert layer.find_child("data_param") is None
    assert layer.find_child("transform_param").find_value("crop_size") == "32"

    assert read_dataset_sources(BATCH_DATA).training.name == "old"
    renamed = DatasetBinding(training=SourceBinding(name="fresh.training"))
    applied = apply_dataset_sources(BATCH_DATA, renamed).find_child("layer")
    assert applied.find_child("batch_data_param").find_value("source") == "fresh.training"


# -- lookups -------------------------------------------------------------------


def test_find_layer_parameter_prefers_exact_phase(lenet_text: str) -> None:
    assert find_layer_parameter(lenet_text, None, "Data", "data_param", "batch_size", Phase.TEST) == (
        "100"
    )
    assert find_layer_parameter(lenet_text, None, "data", "data_param", "batch_size", Phase.TRAIN) == (
        "64"
    )
    assert find_layer_parameter(lenet_text, None, "Data", "data_param", "batch_size") == "64"


def test_find_layer_parameter_falls_back_to_unphased_layer() -> None:
    text = (
        'layer { name: "any" type: "Data" data_param { batch_size: 5 } } '
        'layer { name: "train" type: "Data" include { phase: TRAIN } data_param { batch_size: 7 } }'
    )
    assert find_layer_parameter(text, None, "Data", "data_param", "batch_size", Phase.TEST) == "5"
    assert find_layer_parameter(text, None, "Data", "data_param", "batch_size", Phase.TRAIN) == "7"


def test_find_layer_parameter_misses_are_none(lenet_text: str) -> None:
    assert find_layer_parameter(lenet_text, "conv1", "Convolution", "convolution_param", "num_output") == (
        "20"
    )
    assert find_layer_parameter(lenet_text, None, "InnerProduct", None, "top") == "ip2"
    assert find_layer_parameter(lenet_text, None, "Pooling", "pooling_param", "pool") is None
    assert find_layer_parameter(lenet_text, "conv9", "Convolution", None, "name") is None
    assert find_layer_parameter(lenet_text, None, "Convolution", "pooling_param", "pool") is None


def test_find_layer_parameter_parse_failure() -> None:
    with pytest.raises(ProtoSyntaxError):
        find_layer_parameter("layer {", None, "Data", None, "name")


def test_batch_size_and_layer_settings(lenet_text: str) -> None:
    assert get_batch_size(lenet_text, Phase.TEST) == 100
    assert get_batch_size(lenet_text) == 64
    assert get_batch_size(lenet_text, Phase.RUN) == 0
    assert get_layer_setting(lenet_text, Phase.TRAIN, "transform_param", "scale") == 0.00390625
    assert get_layer_setting(lenet_text, Phase.TRAIN, "transform_param", "crop_size") is None
    assert get_layer_setting(lenet_text, Phase.RUN, "transform_param", "scale") is None


def test_read_and_apply_dataset_sources(lenet_text: str) -> None:
    binding = read_dataset_sources(lenet_text)
    assert binding.training.name == "MNIST.training"
    assert binding.testing.name == "MNIST.testing"
    assert binding.target is None

    binding = read_dataset_sources(SECONDARY, DatasetBinding(name="pair"))
    assert binding.training.name == "a.training"
    assert binding.target is not None
    assert binding.target.name == "pair_tgt"
    assert binding.target.training.name == "b.training"

    renamed = DatasetBinding(training=SourceBinding(name="fresh.training"))
    tree = apply_dataset_sources(lenet_text, renamed)
    train, test = tree.find_children("layer")[:2]
    assert train.find_child("data_param").find_value("source") == "fresh.training"
    assert test.find_child("data_param").find_value("source") == "MNIST.testing"


def test_solver_helpers(lenet_text: str) -> None:
    solver = parse('base_lr: 0.01\ntype: "Adam"\n')
    updated = set_solver_variable(solver, "base_lr", 0.1)
    updated = set_solver_variable(updated, "max_iter", 1000)
    assert updated.find_value("base_lr") == "0.1"
    assert updated.find_value("max_iter") == "1000"
    assert solver.find_value("base_lr") == "0.01"
    assert solver_type(solver) == "Adam"
    assert solver_type("base_lr: 0.01") == "SGD"
    assert custom_trainer_name(solver) is None
    assert custom_trainer_name('custom_trainer: "RL"') == "RL"
    assert model_name(lenet_text) == "LeNet"
