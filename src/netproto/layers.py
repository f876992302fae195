"""Typed layer configuration: the kind table and ``LayerParameter``."""

from __future__ import annotations

import io
import logging
from enum import Enum
from typing import BinaryIO, NamedTuple

from pydantic import BaseModel, Field

from .binary import BinaryReader, BinaryWriter
from .errors import LayerDecodeError, UnknownKindError
from .params import (
    SLOT_NAMES,
    SLOT_TYPES,
    BlobProto,
    LossParameter,
    NetStateRule,
    NormalizationMode,
    ParamSpec,
    ProtoRecord,
    format_number,
)
from .phase import Phase, parse_phase
from .rawproto import Node, ValueType

logger = logging.getLogger(__name__)


class LayerType(str, Enum):
    """Layer kinds; values are the canonical ``type`` strings.

    Member order is the binary kind tag and must only ever be appended to.
    """

    ABSVAL = "AbsVal"
    ACCURACY = "Accuracy"
    ARGMAX = "ArgMax"
    BIAS = "Bias"
    BATCHNORM = "BatchNorm"
    BATCHREINDEX = "BatchReIndex"
    BNLL = "BNLL"
    CONCAT = "Concat"
    CONTRASTIVE_LOSS = "ContrastiveLoss"
    CONVOLUTION = "Convolution"
    CROP = "Crop"
    DECONVOLUTION = "Deconvolution"
    DATA = "Data"
    DROPOUT = "Dropout"
    DUMMYDATA = "DummyData"
    ELTWISE = "Eltwise"
    ELU = "ELU"
    EMBED = "Embed"
    EUCLIDEAN_LOSS = "EuclideanLoss"
    EXP = "EXP"
    FILTER = "Filter"
    FLATTEN = "Flatten"
    GRADIENTSCALER = "GSL"
    GRN = "GRN"
    HINGE_LOSS = "HingeLoss"
    IM2COL = "Im2Col"
    INFOGAIN_LOSS = "InfogainLoss"
    INNERPRODUCT = "InnerProduct"
    LABELMAPPING = "LabelMapping"
    LOG = "Log"
    LRN = "LRN"
    MEMORYDATA = "MemoryData"
    MULTINOMIALLOGISTIC_LOSS = "MultinomialLogisticLoss"
    MVN = "MVN"
    POOLING = "Pooling"
    POWER = "Power"
    PRELU = "PReLU"
    REDUCTION = "Reduction"
    RELU = "ReLU"
    RESHAPE = "Reshape"
    SCALE = "Scale"
    SIGMOID = "Sigmoid"
    SIGMOIDCROSSENTROPY_LOSS = "SigmoidCrossEntropyLoss"
    SOFTMAX = "Softmax"
    SOFTMAXWITH_LOSS = "SoftmaxWithLoss"
    SPP = "SPP"
    SILENCE = "Silence"
    SLICE = "Slice"
    SPLIT = "Split"
    SWISH = "Swish"
    TANH = "TanH"
    THRESHOLD = "Threshold"
    TILE = "Tile"
    LSTM_SIMPLE = "LstmSimple"
    RNN = "Rnn"
    LSTM = "Lstm"
    LSTM_UNIT = "LstmUnit"
    INPUT = "Input"
    BATCHDATA = "BatchData"
    REINFORCEMENT_LOSS = "ReinforcementLoss"
    UNPOOLING1 = "UnPooling1"
    UNPOOLING2 = "UnPooling2"
    NORMALIZATION = "Normalization"
    TRIPLET_LOSS_SIMPLE = "SimpleTripletLoss"
    TRIPLET_LOSS = "TripletLoss"
    TRIPLET_SELECT = "TripletSelection"
    TRIPLET_DATA = "TripletData"
    KNN = "Knn"
    DEBUG = "Debug"
    BINARYHASH = "BinaryHash"

    @property
    def is_loss(self) -> bool:
        return "Loss" in self.value

    @property
    def is_data(self) -> bool:
        return self in DATA_KINDS


DATA_KINDS = frozenset({LayerType.DATA, LayerType.BATCHDATA, LayerType.TRIPLET_DATA})

_ALIASES: dict[str, LayerType] = {kind.value.lower(): kind for kind in LayerType}
_ALIASES.update(
    {
        "contrastive_loss": LayerType.CONTRASTIVE_LOSS,
        "euclidean_loss": LayerType.EUCLIDEAN_LOSS,
        "hinge_loss": LayerType.HINGE_LOSS,
        "infogain_loss": LayerType.INFOGAIN_LOSS,
        "inner_product": LayerType.INNERPRODUCT,
        "multinomiallogistic_loss": LayerType.MULTINOMIALLOGISTIC_LOSS,
        "reinforcement_loss": LayerType.REINFORCEMENT_LOSS,
        "sigmoidcrossentropy_loss": LayerType.SIGMOIDCROSSENTROPY_LOSS,
        "softmaxwith_loss": LayerType.SOFTMAXWITH_LOSS,
        "softmax_loss": LayerType.SOFTMAXWITH_LOSS,
        "simple_triplet_loss": LayerType.TRIPLET_LOSS_SIMPLE,
        "triplet_data": LayerType.TRIPLET_DATA,
        "triplet_loss": LayerType.TRIPLET_LOSS,
        "triplet_selection": LayerType.TRIPLET_SELECT,
        "lstm_simple": LayerType.LSTM_SIMPLE,
        "lstm_unit": LayerType.LSTM_UNIT,
    }
)


def parse_layer_type(text: str) -> LayerType:
    """Resolve a ``type`` string (case-insensitive, legacy aliases allowed)."""
    try:
        return _ALIASES[text.strip().lower()]
    except KeyError as exc:
        raise UnknownKindError("type", text) from exc


class KindSpec(NamedTuple):
    """Static facts about one layer kind."""

    bottom: tuple[str, ...] = ()
    top: tuple[str, ...] = ()
    slots: tuple[str, ...] = ()
    extra: tuple[str, ...] = ()
    max_bottom: tuple[tuple[Phase, int], ...] = ()

    @property
    def legal_slots(self) -> frozenset[str]:
        return frozenset(self.slots + self.extra)


_LOSS = "loss_param"
_XFORM = "transform_param"

KIND_TABLE: dict[LayerType, KindSpec] = {
    LayerType.ABSVAL: KindSpec(("input",), ("abs",)),
    LayerType.ACCURACY: KindSpec(("input", "label"), ("accuracy",), ("accuracy_param",)),
    LayerType.ARGMAX: KindSpec(("input",), ("max",), ("argmax_param",)),
    LayerType.BIAS: KindSpec(("input", "bias"), ("bias",), ("bias_param",)),
    LayerType.BATCHNORM: KindSpec(("input",), ("norm",), ("batch_norm_param",)),
    LayerType.BATCHREINDEX: KindSpec(("input", "idx"), ("data",)),
    LayerType.BNLL: KindSpec(("input",), ("bnll",)),
    LayerType.CONCAT: KindSpec(("x_1", "x_2"), ("concat",), ("concat_param",)),
    LayerType.CONTRASTIVE_LOSS: KindSpec(
        ("a", "b", "s"), ("loss",), (_LOSS, "contrastive_loss_param")
    ),
    LayerType.CONVOLUTION: KindSpec(("input",), ("output",), ("convolution_param",)),
    LayerType.CROP: KindSpec(("upscore", "data"), ("score",), ("crop_param",)),
    LayerType.DECONVOLUTION: KindSpec(("score",), ("upscore",), ("convolution_param",)),
    LayerType.DATA: KindSpec((), ("data", "label"), (_XFORM, "data_param")),
    LayerType.DROPOUT: KindSpec(("input",), ("dropout",), ("dropout_param",)),
    LayerType.DUMMYDATA: KindSpec((), ("data", "label"), (_XFORM, "dummy_data_param")),
    LayerType.ELTWISE: KindSpec(("x_1", "x_2"), ("eltwise",), ("eltwise_param",)),
    LayerType.ELU: KindSpec(("input",), ("elu",), ("elu_param",)),
    LayerType.EMBED: KindSpec(("input",), ("embed",), ("embed_param",)),
    LayerType.EUCLIDEAN_LOSS: KindSpec(("pred", "trgt"), ("loss",), (_LOSS,)),
    LayerType.EXP: KindSpec(("input",), ("exp",), ("exp_param",)),
    LayerType.FILTER: KindSpec(("x_1", "x_2"), ("y_1", "y_2")),
    LayerType.FLATTEN: KindSpec(("x_1", "x_2"), ("flatten",), ("flatten_param",)),
    LayerType.GRADIENTSCALER: KindSpec(("input",), ("identity",), ("gradient_scale_param",)),
    LayerType.GRN: KindSpec(("input",), ("grn",)),
    LayerType.HINGE_LOSS: KindSpec(("pred", "label"), ("loss",), (_LOSS, "hinge_loss_param")),
    LayerType.IM2COL: KindSpec(("input",), ("output",), ("convolution_param",)),
    LayerType.INFOGAIN_LOSS: KindSpec(
        ("pred", "label", "H"), ("loss",), (_LOSS, "infogain_loss_param")
    ),
    LayerType.INNERPRODUCT: KindSpec(("input",), ("ip",), ("inner_product_param",)),
    LayerType.LABELMAPPING: KindSpec(("input",), ("output",), ("labelmapping_param",)),
    LayerType.LOG: KindSpec(("input",), ("log",), ("log_param",)),
    LayerType.LRN: KindSpec(("input",), ("lrn",), ("lrn_param",)),
    LayerType.MEMORYDATA: KindSpec((), ("data", "label"), (_XFORM, "memory_data_param")),
    LayerType.MULTINOMIALLOGISTIC_LOSS: KindSpec(("pred", "label"), ("loss",), (_LOSS,)),
    LayerType.MVN: KindSpec(("input",), ("mvn",), ("mvn_param",)),
    LayerType.POOLING: KindSpec(("input",), ("pool",), ("pooling_param",)),
    LayerType.POWER: KindSpec(("input",), ("power",), ("power_param",)),
    LayerType.PRELU: KindSpec(("input",), ("prelu",), ("prelu_param",)),
    LayerType.REDUCTION: KindSpec(("input",), ("reduction",), ("reduction_param",)),
    LayerType.RELU: KindSpec(("input",), ("relu",), ("relu_param",)),
    LayerType.RESHAPE: KindSpec(("input",), ("reshape",), ("reshape_param",)),
    LayerType.SCALE: KindSpec(("input",), ("scale",), ("scale_param",)),
    LayerType.SIGMOID: KindSpec(("input",), ("sigmoid",), ("sigmoid_param",)),
    LayerType.SIGMOIDCROSSENTROPY_LOSS: KindSpec(
        ("scores", "trgt"), ("loss",), (_LOSS, "sigmoid_param")
    ),
    LayerType.SOFTMAX: KindSpec(("input",), ("softmax",), ("softmax_param",)),
    LayerType.SOFTMAXWITH_LOSS: KindSpec(
        ("pred", "label"), ("loss",), (_LOSS, "softmax_param")
    ),
    LayerType.SPP: KindSpec(("input",), ("spp",), ("spp_param",)),
    LayerType.SILENCE: KindSpec(("input",)),
    LayerType.SLICE: KindSpec(("input",), ("slice1", "slice2"), ("slice_param",)),
    LayerType.SPLIT: KindSpec(("input",), ("split1", "split2")),
    LayerType.SWISH: KindSpec(("input",), ("swish",), ("swish_param",)),
    LayerType.TANH: KindSpec(("input",), ("tanh",), ("tanh_param",)),
    LayerType.THRESHOLD: KindSpec(("input",), ("thresh",), ("threshold_param",)),
    LayerType.TILE: KindSpec(("input",), ("tile",), ("tile_param",)),
    LayerType.LSTM_SIMPLE: KindSpec(("input",), ("lstm",), ("lstm_simple_param",)),
    LayerType.RNN: KindSpec(("time", "seq", "stat"), ("rnn",), ("recurrent_param",)),
    LayerType.LSTM: KindSpec(("time", "seq", "stat"), ("lstm",), ("recurrent_param",)),
    LayerType.LSTM_UNIT: KindSpec(),
    LayerType.INPUT: KindSpec(slots=("input_param",)),
    LayerType.BATCHDATA: KindSpec(("imgidx",), ("data", "label"), (_XFORM, "batch_data_param")),
    LayerType.REINFORCEMENT_LOSS: KindSpec(
        ("pred", "label"), ("loss",), ("reinforcement_loss_param",), (_LOSS,)
    ),
    LayerType.UNPOOLING1: KindSpec(("pool", "mask"), ("unpool",), ("pooling_param",)),
    LayerType.UNPOOLING2: KindSpec(("pool", "mask"), ("unpool",), ("pooling_param",)),
    LayerType.NORMALIZATION: KindSpec(("input",), ("norm",), ("normalization_param",)),
    LayerType.TRIPLET_LOSS_SIMPLE: KindSpec(
        ("input", "label"), ("loss",), (_LOSS, "triplet_loss_simple_param")
    ),
    LayerType.TRIPLET_LOSS: KindSpec(
        ("anchor", "pos", "neg", "label"), ("loss",), (_LOSS, "triplet_loss_param")
    ),
    LayerType.TRIPLET_SELECT: KindSpec(("input",), ("anchor", "pos", "neg")),
    LayerType.TRIPLET_DATA: KindSpec((), ("data", "label"), (_XFORM, "data_param")),
    LayerType.KNN: KindSpec(
        ("input", "label"), ("classes",), ("knn_param",), max_bottom=((Phase.RUN, 1),)
    ),
    LayerType.DEBUG: KindSpec(("input", "label"), ("output",), ("debug_param",)),
    LayerType.BINARYHASH: KindSpec(
        ("input1", "input2", "input3", "label"), ("binhash",), ("binaryhash_param",)
    ),
}


def _default_record(kind: LayerType, slot: str) -> ProtoRecord:
    if kind is LayerType.SIGMOIDCROSSENTROPY_LOSS and slot == _LOSS:
        return LossParameter(normalization=NormalizationMode.BATCH_SIZE)
    return SLOT_TYPES[slot]()


class LayerParameter(BaseModel):
    """One layer of a network description.

    ``params`` maps a slot name (``convolution_param``, ...) to its record;
    only the slots legal for ``type`` may be populated.
    """

    type: LayerType
    name: str = ""
    bottom: list[str] = Field(default_factory=list)
    top: list[str] = Field(default_factory=list)
    phase: Phase | None = None
    loss_weight: list[float] = Field(default_factory=list)
    parameters: list[ParamSpec] = Field(default_factory=list)
    blobs: list[BlobProto] = Field(default_factory=list)
    propagate_down: list[bool] = Field(default_factory=list)
    include: list[NetStateRule] = Field(default_factory=list)
    exclude: list[NetStateRule] = Field(default_factory=list)
    max_bottom_count: dict[Phase, int] = Field(default_factory=dict)
    params: dict[str, ProtoRecord] = Field(default_factory=dict)
    # Runtime distribution settings; never serialized.
    solver_count: int = Field(default=1, ge=1)
    solver_rank: int = Field(default=0, ge=0)

    @classmethod
    def create(cls, kind: LayerType, name: str | None = None) -> LayerParameter:
        """Build a layer with the kind's default blocks already in place."""
        spec = KIND_TABLE[kind]
        return cls(
            type=kind,
            name=kind.value if name is None else name,
            params={slot: _default_record(kind, slot) for slot in spec.slots},
            max_bottom_count=dict(spec.max_bottom),
        )

    @property
    def kind_spec(self) -> KindSpec:
        return KIND_TABLE[self.type]

    def expected_ports(self) -> tuple[list[str], list[str]]:
        """Documented (bottom, top) names for this kind; never enforced."""
        spec = self.kind_spec
        return list(spec.bottom), list(spec.top)

    # -- slots -------------------------------------------------------------

    def get_param(self, slot: str) -> ProtoRecord | None:
        return self.params.get(slot)

    def set_param(self, slot: str, record: ProtoRecord | None) -> None:
        if slot not in SLOT_TYPES:
            raise UnknownKindError("parameter block", slot)
        if slot not in self.kind_spec.legal_slots:
            msg = f"'{slot}' is not legal for a {self.type.value} layer"
            raise LayerDecodeError(msg)
        if record is None:
            self.params.pop(slot, None)
            return
        expected = SLOT_TYPES[slot]
        if not isinstance(record, expected):
            msg = f"'{slot}' expects {expected.__name__}, got {type(record).__name__}"
            raise LayerDecodeError(msg)
        self.params[slot] = record

    # -- phases ------------------------------------------------------------

    def meets_phase(self, phase: Phase) -> bool:
        """Exclude rules win, then include rules, then "no include rules" means on."""
        if phase is Phase.NONE:
            return True
        if any(_rule_names(rule, phase) for rule in self.exclude):
            return False
        if any(_rule_names(rule, phase) for rule in self.include):
            return True
        if not self.include:
            return True
        return bool(self.exclude)

    # -- copying -------------------------------------------------------------

    def clone(self, clone_blobs: bool = True) -> LayerParameter:
        copy = self.model_copy(deep=True)
        if not clone_blobs:
            copy.blobs = []
        return copy

    def copy_defaults(self, other: LayerParameter | None) -> None:
        """Adopt phase rules, param specs and data blocks from a same-kind layer."""
        if other is None:
            return
        if other.type is not self.type:
            msg = f"Cannot copy defaults from {other.type.value} into {self.type.value}"
            raise ValueError(msg)
        self.include = [rule.model_copy(deep=True) for rule in other.include]
        self.exclude = [rule.model_copy(deep=True) for rule in other.exclude]
        self.parameters = [spec.model_copy(deep=True) for spec in other.parameters]
        if self.type in (LayerType.DATA, LayerType.TRIPLET_DATA):
            shared = ("data_param", _XFORM)
        elif self.type is LayerType.BATCHDATA:
            shared = ("batch_data_param", _XFORM)
        else:
            shared = ()
        for slot in shared:
            record = other.params.get(slot)
            if record is not None:
                self.params[slot] = record.clone()

    def parameter_count(self) -> int:
        """Number of learnable param specs, ignoring a disabled bias."""
        slot = {
            LayerType.CONVOLUTION: "convolution_param",
            LayerType.DECONVOLUTION: "convolution_param",
            LayerType.INNERPRODUCT: "inner_product_param",
        }.get(self.type)
        record = self.params.get(slot) if slot else None
        count = len(self.parameters)
        if record is not None and not getattr(record, "bias_term", True) and count > 1:
            count -= 1
        return count

    # -- raw tree codec ------------------------------------------------------

    @classmethod
    def from_proto(cls, node: Node) -> LayerParameter:
        type_text = node.find_value("type")
        if type_text is None:
            name = node.find_value("name") or "<unnamed>"
            raise LayerDecodeError(f"Layer '{name}' has no type")
        layer = cls.create(parse_layer_type(type_text), node.find_value("name") or "")
        layer.bottom = node.find_array("bottom")
        layer.top = node.find_array("top")
        phase_text = node.find_value("phase")
        if phase_text is not None:
            layer.phase = parse_phase(phase_text)
        layer.loss_weight = node.find_array("loss_weight", float)
        layer.parameters = [ParamSpec.from_proto(c) for c in node.find_children("param")]
        layer.blobs = [BlobProto.from_proto(c) for c in node.find_children("blobs")]
        layer.propagate_down = node.find_array("propagate_down", bool)
        layer.include = [NetStateRule.from_proto(c) for c in node.find_children("include")]
        layer.exclude = [NetStateRule.from_proto(c) for c in node.find_children("exclude")]
        for child in node.find_children("max_bottom_count"):
            phase_text = child.find_value("phase")
            counts = child.find_array("count", int)
            if phase_text is None or not counts:
                continue
            layer.max_bottom_count[parse_phase(phase_text)] = counts[0]

        legal = layer.kind_spec.legal_slots
        for child in node.children:
            if child.name not in SLOT_TYPES:
                continue
            if child.name not in legal:
                logger.warning(
                    "Dropping '%s' from %s layer '%s'", child.name, layer.type.value, layer.name
                )
                continue
            layer.params[child.name] = SLOT_TYPES[child.name].from_proto(child)
        return layer

    def to_proto(self, name: str = "layer") -> Node:
        node = Node.block(name)
        if self.name:
            node.append(Node.scalar("name", self.name, ValueType.STRING))
        node.append(Node.scalar("type", self.type.value, ValueType.STRING))
        for port in self.bottom:
            node.append(Node.scalar("bottom", port, ValueType.STRING))
        for port in self.top:
            node.append(Node.scalar("top", port, ValueType.STRING))
        if self.phase is not None:
            node.append(Node(name="phase", value=self.phase.value))
        for weight in self.loss_weight:
            node.append(Node.scalar("loss_weight", format_number(weight), ValueType.NUMERIC))
        for spec in self.parameters:
            node.append(spec.to_proto("param"))
        for blob in self.blobs:
            node.append(blob.to_proto("blobs"))
        for flag in self.propagate_down:
            node.append(Node.scalar("propagate_down", flag, ValueType.BOOL))
        for rule in self.include:
            node.append(rule.to_proto("include"))
        for rule in self.exclude:
            node.append(rule.to_proto("exclude"))
        for phase, count in self.max_bottom_count.items():
            node.append(
                Node.block(
                    "max_bottom_count",
                    [Node(name="phase", value=phase.value), Node.scalar("count", count)],
                )
            )
        for slot in SLOT_NAMES:
            record = self.params.get(slot)
            if record is not None:
                node.append(record.to_proto(slot))
        return node

    # -- binary codec ----------------------------------------------------------

    def save(self, stream: BinaryIO) -> None:
        """Write the compact binary record.

        Scalars, lists and tags are little-endian primitives in field order.
        Each populated parameter block is written as its slot tag followed by
        a length-prefixed JSON object of the block's emitted fields, not as
        field-by-field binary.
        """
        out = BinaryWriter(stream)
        out.write_int(_KIND_TAGS[self.type])
        out.write_string(self.name)
        out.write_strings(self.bottom)
        out.write_strings(self.top)
        out.write_string(None if self.phase is None else self.phase.value)
        out.write_doubles(self.loss_weight)
        out.write_records(self.parameters)
        out.write_records(self.blobs)
        out.write_bools(self.propagate_down)
        out.write_records(self.include)
        out.write_records(self.exclude)
        out.write_int(len(self.max_bottom_count))
        for phase, count in self.max_bottom_count.items():
            out.write_int(_PHASE_TAGS[phase])
            out.write_int(count)
        populated = [slot for slot in SLOT_NAMES if slot in self.params]
        out.write_int(len(populated))
        for slot in populated:
            out.write_int(SLOT_NAMES.index(slot))
            out.write_record(self.params[slot])

    @classmethod
    def load(cls, stream: BinaryIO) -> LayerParameter:
        src = BinaryReader(stream)
        kind = _lookup(_KINDS_BY_TAG, src.read_int(), "layer type tag")
        layer = cls(type=kind)
        layer.name = src.read_string() or ""
        layer.bottom = src.read_strings()
        layer.top = src.read_strings()
        phase_text = src.read_string()
        layer.phase = None if phase_text is None else parse_phase(phase_text)
        layer.loss_weight = src.read_doubles()
        layer.parameters = src.read_records(ParamSpec)  # type: ignore[assignment]
        layer.blobs = src.read_records(BlobProto)  # type: ignore[assignment]
        layer.propagate_down = src.read_bools()
        layer.include = src.read_records(NetStateRule)  # type: ignore[assignment]
        layer.exclude = src.read_records(NetStateRule)  # type: ignore[assignment]
        for _ in range(src.read_count()):
            phase = _lookup(list(Phase), src.read_int(), "phase tag")
            layer.max_bottom_count[phase] = src.read_int()
        legal = layer.kind_spec.legal_slots
        for _ in range(src.read_count()):
            slot = _lookup(SLOT_NAMES, src.read_int(), "parameter block tag")
            if slot not in legal:
                msg = f"'{slot}' is not legal for a {kind.value} layer"
                raise LayerDecodeError(msg)
            layer.params[slot] = src.read_record(SLOT_TYPES[slot])
        return layer

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        self.save(buffer)
        return buffer.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> LayerParameter:
        return cls.load(io.BytesIO(data))

    def __str__(self) -> str:
        return f"{self.name} ({self.type.value})"


def _rule_names(rule: NetStateRule, phase: Phase) -> bool:
    if rule.phase is None:
        return False
    return rule.phase is phase or phase in rule.phase.expand()


_KINDS_BY_TAG: list[LayerType] = list(LayerType)
_KIND_TAGS: dict[LayerType, int] = {kind: idx for idx, kind in enumerate(_KINDS_BY_TAG)}
_PHASE_TAGS: dict[Phase, int] = {phase: idx for idx, phase in enumerate(Phase)}


def _lookup(table: list, tag: int, what: str):  # type: ignore[no-untyped-def]
    if 0 <= tag < len(table):
        return table[tag]
    raise UnknownKindError(what, tag)
