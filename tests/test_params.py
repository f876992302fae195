import pytest

from netproto.errors import LayerDecodeError, UnknownKindError
from netproto.params import (
    DataParameter,
    DbBackend,
    DropoutParameter,
    LossParameter,
    NormalizationMode,
    TransformationParameter,
    format_number,
)
from netproto.rawproto import ValueType, parse


def _block(text: str):
    return parse(text).children[0]


def test_record_decodes_scalars_lists_and_enums() -> None:
    record = TransformationParameter.from_proto(
        _block(
            "transform_param { scale: 0.5 mirror: True crop_size: 16.0 "
            "mean_value: 104 mean_value: 117 color_order: BGR }"
        )
    )
    assert record.scale == 0.5
    assert record.mirror is True
    assert record.crop_size == 16
    assert record.mean_value == [104.0, 117.0]
    assert record.color_order.value == "BGR"


def test_record_encodes_only_set_or_changed_fields() -> None:
    assert LossParameter().to_proto("loss_param").children == []
    record = DataParameter(source="train.db", backend=DbBackend.LMDB)
    node = record.to_proto("data_param")
    assert [child.name for child in node.children] == ["source", "backend"]
    assert node.find_child("source").value_type == ValueType.STRING
    backend = node.find_child("backend")
    assert backend.value == "LMDB"
    assert backend.value_type == ValueType.UNKNOWN


def test_in_place_list_edits_are_emitted() -> None:
    record = TransformationParameter()
    record.mean_value.append(104.0)
    assert record.to_data() == {"mean_value": [104.0]}
    assert record.to_proto("transform_param").find_array("mean_value", float) == [104.0]


def test_unknown_enum_literal_is_an_unknown_kind() -> None:
    with pytest.raises(UnknownKindError, match="MEDIUM"):
        LossParameter.from_proto(_block("loss_param { normalization: MEDIUM }"))


def test_out_of_range_value_is_a_decode_error() -> None:
    with pytest.raises(LayerDecodeError, match="dropout_ratio"):
        DropoutParameter.from_proto(_block("dropout_param { dropout_ratio: 1.5 }"))


def test_unrecognized_fields_are_ignored() -> None:
    record = DataParameter.from_proto(_block('data_param { source: "a" colour: 3 }'))
    assert record.source == "a"
    assert record.to_data() == {"source": "a"}


def test_clone_is_independent() -> None:
    record = LossParameter(normalization=NormalizationMode.FULL)
    copy = record.clone()
    copy.normalization = NormalizationMode.NONE
    assert record.normalization is NormalizationMode.FULL


def test_format_number() -> None:
    assert format_number(1.0) == "1"
    assert format_number(0.5) == "0.5"
    assert format_number(3) == "3"
