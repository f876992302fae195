"""Typed parameter records carried by layers, plus their raw-tree codec."""

from __future__ import annotations

import types
from enum import Enum
from typing import Any, Union, get_args, get_origin

from pydantic import BaseModel, Field, ValidationError

from .errors import LayerDecodeError, UnknownKindError
from .phase import Phase
from .rawproto import Node, ValueType


def _unwrap(annotation: Any) -> tuple[Any, bool]:
    """Return ``(item_type, repeated)`` for a field annotation."""
    origin = get_origin(annotation)
    if origin in (Union, types.UnionType):
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        return _unwrap(args[0])
    if origin is list:
        return get_args(annotation)[0], True
    return annotation, False


def _is_record(kind: Any) -> bool:
    return isinstance(kind, type) and issubclass(kind, ProtoRecord)


def format_number(value: float | int) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return repr(value) if isinstance(value, float) else str(value)


def _scalar_input(kind: Any, text: str) -> Any:
    if kind is int:
        try:
            as_float = float(text)
        except ValueError:
            return text
        if as_float.is_integer() and not text.lstrip("+-").isdigit():
            return int(as_float)
    return text


def _encode_value(name: str, kind: Any, value: Any) -> Node:
    if isinstance(value, ProtoRecord):
        return value.to_proto(name)
    if isinstance(value, Enum):
        return Node(name=name, value=str(value.value), value_type=ValueType.UNKNOWN)
    if kind is bool or isinstance(value, bool):
        return Node.scalar(name, bool(value), ValueType.BOOL)
    if kind in (int, float):
        return Node.scalar(name, format_number(value), ValueType.NUMERIC)
    return Node.scalar(name, value, ValueType.STRING)


def _plain(value: Any) -> Any:
    if isinstance(value, ProtoRecord):
        return value.to_data()
    if isinstance(value, Enum):
        return value.value
    return value


def wrap_validation_error(exc: ValidationError, where: str) -> Exception:
    """Translate a pydantic failure into the package's error taxonomy."""
    for err in exc.errors():
        if err["type"] == "enum":
            field = ".".join(str(part) for part in err["loc"] if not isinstance(part, int))
            return UnknownKindError(f"{where}.{field}" if field else where, err.get("input"))
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first["loc"])
    return LayerDecodeError(f"Invalid '{where}' field '{field}': {first['msg']}")


class ProtoRecord(BaseModel):
    """Base for every record that maps to a named block in the raw tree.

    Field declaration order is the canonical output order.  Lists map to
    repeated same-named children, nested records to blocks, enums to bare
    words.
    """

    model_config = {"extra": "forbid", "validate_assignment": True}

    @classmethod
    def from_proto(cls, node: Node) -> ProtoRecord:
        data: dict[str, Any] = {}
        for name, info in cls.model_fields.items():
            kind, repeated = _unwrap(info.annotation)
            children = node.find_children(name)
            if not children:
                continue
            if _is_record(kind):
                values = [kind.from_proto(child) for child in children]
            else:
                values = [
                    _scalar_input(kind, child.value) for child in children if child.value is not None
                ]
                if not values:
                    continue
            data[name] = values if repeated else values[0]
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise wrap_validation_error(exc, node.name) from exc

    def emitted_fields(self) -> list[str]:
        """Fields worth writing: explicitly set or changed from their default."""
        names: list[str] = []
        for field, info in type(self).model_fields.items():
            value = getattr(self, field)
            if value is None:
                continue
            if field in self.model_fields_set or value != info.get_default(
                call_default_factory=True
            ):
                names.append(field)
        return names

    def to_proto(self, name: str) -> Node:
        node = Node.block(name)
        for field in self.emitted_fields():
            kind, _ = _unwrap(type(self).model_fields[field].annotation)
            value = getattr(self, field)
            for item in value if isinstance(value, list) else [value]:
                node.append(_encode_value(field, kind, item))
        return node

    def to_data(self) -> dict[str, Any]:
        """JSON-ready dict holding only the emitted fields."""
        data: dict[str, Any] = {}
        for field in self.emitted_fields():
            value = getattr(self, field)
            if isinstance(value, list):
                data[field] = [_plain(item) for item in value]
            else:
                data[field] = _plain(value)
        return data

    def clone(self) -> ProtoRecord:
        return self.model_copy(deep=True)


# -- enumerations ------------------------------------------------------------


class Engine(str, Enum):
    DEFAULT = "DEFAULT"
    CAFFE = "CAFFE"
    CUDNN = "CUDNN"


class ColorOrder(str, Enum):
    RGB = "RGB"
    BGR = "BGR"


class NormalizationMode(str, Enum):
    """How a loss is normalized over the batch."""

    FULL = "FULL"
    VALID = "VALID"
    BATCH_SIZE = "BATCH_SIZE"
    NONE = "NONE"


class DbBackend(str, Enum):
    IMAGEDB = "IMAGEDB"
    LEVELDB = "LEVELDB"
    LMDB = "LMDB"


class PoolMethod(str, Enum):
    MAX = "MAX"
    AVE = "AVE"
    STOCHASTIC = "STOCHASTIC"


class EltwiseOp(str, Enum):
    PROD = "PROD"
    SUM = "SUM"
    MAX = "MAX"


class ReductionOp(str, Enum):
    SUM = "SUM"
    ASUM = "ASUM"
    SUMSQ = "SUMSQ"
    MEAN = "MEAN"


class NormRegion(str, Enum):
    ACROSS_CHANNELS = "ACROSS_CHANNELS"
    WITHIN_CHANNEL = "WITHIN_CHANNEL"


class HingeNorm(str, Enum):
    L1 = "L1"
    L2 = "L2"


class VarianceNorm(str, Enum):
    FAN_IN = "FAN_IN"
    FAN_OUT = "FAN_OUT"
    AVERAGE = "AVERAGE"


# -- shared records ------------------------------------------------------------


class FillerParameter(ProtoRecord):
    """Weight initializer description."""

    type: str = "constant"
    value: float = 0.0
    min: float = 0.0
    max: float = 1.0
    mean: float = 0.0
    std: float = 1.0
    sparse: int = -1
    variance_norm: VarianceNorm = VarianceNorm.FAN_IN


class BlobShape(ProtoRecord):
    dim: list[int] = Field(default_factory=list)


class BlobProto(ProtoRecord):
    """Serialized weight blob; opaque to the graph transforms."""

    shape: BlobShape | None = None
    data: list[float] = Field(default_factory=list)
    diff: list[float] = Field(default_factory=list)
    num: int | None = None
    channels: int | None = None
    height: int | None = None
    width: int | None = None


class ParamSpec(ProtoRecord):
    """Learning-rate and weight-decay multipliers, optionally shared by name."""

    name: str | None = None
    lr_mult: float = 1.0
    decay_mult: float = 1.0


class NetStateRule(ProtoRecord):
    """One include/exclude rule; only the phase takes part in filtering."""

    phase: Phase | None = None
    min_level: int | None = None
    max_level: int | None = None
    stage: list[str] = Field(default_factory=list)
    not_stage: list[str] = Field(default_factory=list)


# -- kind specific records -------------------------------------------------


class TransformationParameter(ProtoRecord):
    """Input preprocessing shared by the data layers."""

    scale: float = 1.0
    mirror: bool = False
    crop_size: int = Field(default=0, ge=0)
    use_imagedb_mean: bool = False
    mean_value: list[float] = Field(default_factory=list)
    mean_file: str | None = None
    force_color: bool = False
    force_gray: bool = False
    color_order: ColorOrder = ColorOrder.RGB


class LossParameter(ProtoRecord):
    ignore_label: int | None = None
    normalization: NormalizationMode = NormalizationMode.VALID
    normalize: bool | None = None


class AccuracyParameter(ProtoRecord):
    top_k: int = Field(default=1, gt=0)
    axis: int = 1
    ignore_label: int | None = None


class ArgMaxParameter(ProtoRecord):
    out_max_val: bool = False
    top_k: int = Field(default=1, gt=0)
    axis: int | None = None


class BatchDataParameter(ProtoRecord):
    source: str = ""
    iterations: int = Field(default=1, ge=0)
    batch_set_count: int = Field(default=1, ge=0)
    backend: DbBackend = DbBackend.IMAGEDB


class BatchNormParameter(ProtoRecord):
    use_global_stats: bool | None = None
    moving_average_fraction: float = 0.999
    eps: float = 1e-5
    engine: Engine = Engine.DEFAULT


class BiasParameter(ProtoRecord):
    axis: int = 1
    num_axes: int = 1
    filler: FillerParameter | None = None


class BinaryHashParameter(ProtoRecord):
    enable_debug: bool = False
    cache_depth: int = Field(default=1000, ge=0)
    pool_size: int = Field(default=3, ge=0)
    top_k: int = Field(default=3, ge=0)


class ConcatParameter(ProtoRecord):
    axis: int = 1


class ContrastiveLossParameter(ProtoRecord):
    margin: float = 1.0
    legacy_version: bool = False


class ConvolutionParameter(ProtoRecord):
    """Convolution, deconvolution and im2col geometry."""

    num_output: int = Field(default=0, ge=0)
    bias_term: bool = True
    pad: list[int] = Field(default_factory=list)
    kernel_size: list[int] = Field(default_factory=list)
    stride: list[int] = Field(default_factory=list)
    dilation: list[int] = Field(default_factory=list)
    pad_h: int | None = None
    pad_w: int | None = None
    kernel_h: int | None = None
    kernel_w: int | None = None
    stride_h: int | None = None
    stride_w: int | None = None
    group: int = Field(default=1, gt=0)
    weight_filler: FillerParameter | None = None
    bias_filler: FillerParameter | None = None
    axis: int = 1
    engine: Engine = Engine.DEFAULT


class CropParameter(ProtoRecord):
    axis: int = 2
    offset: list[int] = Field(default_factory=list)


class DataParameter(ProtoRecord):
    """Where a data layer reads its samples from."""

    source: str = ""
    batch_size: int = Field(default=1, ge=0)
    backend: DbBackend = DbBackend.IMAGEDB
    prefetch: int = Field(default=4, ge=0)
    enable_random_selection: bool | None = None
    enable_pair_selection: bool | None = None
    display_timing: bool = False
    primary_data: bool = True


class DebugParameter(ProtoRecord):
    max_stored_batches: int = Field(default=1000, ge=0)


class DropoutParameter(ProtoRecord):
    dropout_ratio: float = Field(default=0.5, ge=0.0, le=1.0)


class DummyDataParameter(ProtoRecord):
    data_filler: list[FillerParameter] = Field(default_factory=list)
    shape: list[BlobShape] = Field(default_factory=list)


class EltwiseParameter(ProtoRecord):
    operation: EltwiseOp = EltwiseOp.SUM
    coeff: list[float] = Field(default_factory=list)
    stable_prod_grad: bool = True


class EluParameter(ProtoRecord):
    alpha: float = 1.0
    engine: Engine = Engine.DEFAULT


class EmbedParameter(ProtoRecord):
    num_output: int = Field(default=0, ge=0)
    input_dim: int = Field(default=0, ge=0)
    bias_term: bool = True
    weight_filler: FillerParameter | None = None
    bias_filler: FillerParameter | None = None


class ExpParameter(ProtoRecord):
    base: float = -1.0
    scale: float = 1.0
    shift: float = 0.0


class FlattenParameter(ProtoRecord):
    axis: int = 1
    end_axis: int = -1


class GradientScaleParameter(ProtoRecord):
    lower_bound: float = 0.0
    upper_bound: float = 1.0
    alpha: float = 10.0
    max_iter: float = 1.0


class HingeLossParameter(ProtoRecord):
    norm: HingeNorm = HingeNorm.L1


class InfogainLossParameter(ProtoRecord):
    source: str = ""


class InnerProductParameter(ProtoRecord):
    num_output: int = Field(default=0, ge=0)
    bias_term: bool = True
    weight_filler: FillerParameter | None = None
    bias_filler: FillerParameter | None = None
    axis: int = 1
    transpose: bool = False


class KnnParameter(ProtoRecord):
    num_output: int = Field(default=10, ge=0)
    k: int = Field(default=100, gt=0)
    max_stored_batches: int = Field(default=10, ge=0)


class LabelMappingParameter(ProtoRecord):
    mapping: list[str] = Field(default_factory=list)
    update_database: bool = False
    reset_database_labels: bool = False


class LogParameter(ProtoRecord):
    base: float = -1.0
    scale: float = 1.0
    shift: float = 0.0


class LRNParameter(ProtoRecord):
    local_size: int = Field(default=5, gt=0)
    alpha: float = 1.0
    beta: float = 0.75
    norm_region: NormRegion = NormRegion.ACROSS_CHANNELS
    k: float = 1.0
    engine: Engine = Engine.DEFAULT


class MemoryDataParameter(ProtoRecord):
    batch_size: int = Field(default=1, ge=0)
    channels: int = Field(default=1, ge=0)
    height: int = Field(default=1, ge=0)
    width: int = Field(default=1, ge=0)


class MVNParameter(ProtoRecord):
    normalize_variance: bool = True
    across_channels: bool = False
    eps: float = 1e-9


class NormalizationParameter(ProtoRecord):
    across_spatial: bool = True
    channel_shared: bool = True
    eps: float = 1e-10
    scale_filler: FillerParameter | None = None


class PoolingParameter(ProtoRecord):
    pool: PoolMethod = PoolMethod.MAX
    pad: list[int] = Field(default_factory=list)
    kernel_size: list[int] = Field(default_factory=list)
    stride: list[int] = Field(default_factory=list)
    pad_h: int | None = None
    pad_w: int | None = None
    kernel_h: int | None = None
    kernel_w: int | None = None
    stride_h: int | None = None
    stride_w: int | None = None
    global_pooling: bool = False
    engine: Engine = Engine.DEFAULT


class PowerParameter(ProtoRecord):
    power: float = 1.0
    scale: float = 1.0
    shift: float = 0.0


class PReLUParameter(ProtoRecord):
    filler: FillerParameter | None = None
    channel_shared: bool = False


class ReductionParameter(ProtoRecord):
    operation: ReductionOp = ReductionOp.SUM
    axis: int = 0
    coeff: float = 1.0


class ReinforcementLossParameter(ProtoRecord):
    exploration_rate_start: float = 0.6
    exploration_rate_end: float = 0.4
    exploration_rate_decay: float = 6.0
    discount_rate: float = Field(default=0.99, ge=0.0, le=1.0)


class ReLUParameter(ProtoRecord):
    negative_slope: float = 0.0
    engine: Engine = Engine.DEFAULT


class ReshapeParameter(ProtoRecord):
    shape: BlobShape | None = None
    axis: int = 0
    num_axes: int = -1


class ScaleParameter(ProtoRecord):
    axis: int = 1
    num_axes: int = 1
    filler: FillerParameter | None = None
    bias_term: bool = False
    bias_filler: FillerParameter | None = None


class SigmoidParameter(ProtoRecord):
    engine: Engine = Engine.DEFAULT


class SoftmaxParameter(ProtoRecord):
    axis: int = 1
    engine: Engine = Engine.DEFAULT


class SPPParameter(ProtoRecord):
    pyramid_height: int = Field(default=1, gt=0)
    pool: PoolMethod = PoolMethod.MAX
    engine: Engine = Engine.DEFAULT


class SliceParameter(ProtoRecord):
    axis: int = 1
    slice_point: list[int] = Field(default_factory=list)
    slice_dim: int | None = None


class SwishParameter(ProtoRecord):
    beta: float = 1.0


class TanhParameter(ProtoRecord):
    engine: Engine = Engine.DEFAULT


class ThresholdParameter(ProtoRecord):
    threshold: float = 0.0


class TileParameter(ProtoRecord):
    axis: int = 1
    tiles: int = Field(default=1, gt=0)


class TripletLossParameter(ProtoRecord):
    alpha: float = 1.1
    pregen_label_start: int = 0


class TripletLossSimpleParameter(ProtoRecord):
    alpha: float = 1.1
    separate: bool = False
    max_stored_batches: int = Field(default=10, ge=0)


class LSTMSimpleParameter(ProtoRecord):
    num_output: int = Field(default=0, ge=0)
    clipping_threshold: float = 0.0
    weight_filler: FillerParameter | None = None
    bias_filler: FillerParameter | None = None
    batch_size: int = Field(default=1, ge=0)
    enable_clockwork_forgetgate_bias: bool = False


class RecurrentParameter(ProtoRecord):
    num_output: int = Field(default=0, ge=0)
    weight_filler: FillerParameter | None = None
    bias_filler: FillerParameter | None = None
    debug_info: bool = False
    expose_hidden: bool = False


class InputParameter(ProtoRecord):
    shape: list[BlobShape] = Field(default_factory=list)


# Canonical block order for encoding and the binary slot tags (index = tag).
SLOT_TYPES: dict[str, type[ProtoRecord]] = {
    "transform_param": TransformationParameter,
    "loss_param": LossParameter,
    "accuracy_param": AccuracyParameter,
    "argmax_param": ArgMaxParameter,
    "batch_data_param": BatchDataParameter,
    "batch_norm_param": BatchNormParameter,
    "bias_param": BiasParameter,
    "binaryhash_param": BinaryHashParameter,
    "concat_param": ConcatParameter,
    "contrastive_loss_param": ContrastiveLossParameter,
    "convolution_param": ConvolutionParameter,
    "crop_param": CropParameter,
    "data_param": DataParameter,
    "debug_param": DebugParameter,
    "dropout_param": DropoutParameter,
    "dummy_data_param": DummyDataParameter,
    "eltwise_param": EltwiseParameter,
    "elu_param": EluParameter,
    "embed_param": EmbedParameter,
    "exp_param": ExpParameter,
    "flatten_param": FlattenParameter,
    "gradient_scale_param": GradientScaleParameter,
    "hinge_loss_param": HingeLossParameter,
    "infogain_loss_param": InfogainLossParameter,
    "inner_product_param": InnerProductParameter,
    "knn_param": KnnParameter,
    "labelmapping_param": LabelMappingParameter,
    "log_param": LogParameter,
    "lrn_param": LRNParameter,
    "memory_data_param": MemoryDataParameter,
    "mvn_param": MVNParameter,
    "normalization_param": NormalizationParameter,
    "pooling_param": PoolingParameter,
    "power_param": PowerParameter,
    "prelu_param": PReLUParameter,
    "reduction_param": ReductionParameter,
    "reinforcement_loss_param": ReinforcementLossParameter,
    "relu_param": ReLUParameter,
    "reshape_param": ReshapeParameter,
    "scale_param": ScaleParameter,
    "sigmoid_param": SigmoidParameter,
    "softmax_param": SoftmaxParameter,
    "spp_param": SPPParameter,
    "slice_param": SliceParameter,
    "swish_param": SwishParameter,
    "tanh_param": TanhParameter,
    "threshold_param": ThresholdParameter,
    "tile_param": TileParameter,
    "triplet_loss_param": TripletLossParameter,
    "triplet_loss_simple_param": TripletLossSimpleParameter,
    "lstm_simple_param": LSTMSimpleParameter,
    "recurrent_param": RecurrentParameter,
    "input_param": InputParameter,
}

SLOT_NAMES: list[str] = list(SLOT_TYPES)
