"""Little-endian primitive stream used by the compact layer record format."""

from __future__ import annotations

import struct
from typing import BinaryIO

import ujson as json
from pydantic import ValidationError

from .errors import LayerDecodeError
from .params import ProtoRecord, wrap_validation_error

_INT = struct.Struct("<i")
_DOUBLE = struct.Struct("<d")
_BOOL = struct.Struct("<?")


class BinaryWriter:
    """Append-only writer over a binary stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream

    def write_int(self, value: int) -> None:
        self.stream.write(_INT.pack(value))

    def write_double(self, value: float) -> None:
        self.stream.write(_DOUBLE.pack(value))

    def write_bool(self, value: bool) -> None:
        self.stream.write(_BOOL.pack(value))

    def write_string(self, value: str | None) -> None:
        if value is None:
            self.write_int(-1)
            return
        data = value.encode("utf-8")
        self.write_int(len(data))
        self.stream.write(data)

    def write_strings(self, values: list[str]) -> None:
        self.write_int(len(values))
        for value in values:
            self.write_string(value)

    def write_doubles(self, values: list[float]) -> None:
        self.write_int(len(values))
        for value in values:
            self.write_double(value)

    def write_bools(self, values: list[bool]) -> None:
        self.write_int(len(values))
        for value in values:
            self.write_bool(value)

    def write_record(self, record: ProtoRecord) -> None:
        self.write_string(json.dumps(record.to_data()))

    def write_records(self, records: list[ProtoRecord]) -> None:
        self.write_int(len(records))
        for record in records:
            self.write_record(record)


class BinaryReader:
    """Reader mirroring :class:`BinaryWriter`; truncated input is a decode error."""

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream

    def _take(self, size: int) -> bytes:
        data = self.stream.read(size)
        if len(data) != size:
            msg = f"Truncated layer record: wanted {size} bytes, got {len(data)}"
            raise LayerDecodeError(msg)
        return data

    def read_int(self) -> int:
        return _INT.unpack(self._take(_INT.size))[0]

    def read_double(self) -> float:
        return _DOUBLE.unpack(self._take(_DOUBLE.size))[0]

    def read_bool(self) -> bool:
        return _BOOL.unpack(self._take(_BOOL.size))[0]

    def read_string(self) -> str | None:
        size = self.read_int()
        if size < 0:
            return None
        return self._take(size).decode("utf-8")

    def read_count(self) -> int:
        count = self.read_int()
        if count < 0:
            raise LayerDecodeError(f"Negative element count {count} in layer record")
        return count

    def read_strings(self) -> list[str]:
        return [self.read_string() or "" for _ in range(self.read_count())]

    def read_doubles(self) -> list[float]:
        return [self.read_double() for _ in range(self.read_count())]

    def read_bools(self) -> list[bool]:
        return [self.read_bool() for _ in range(self.read_count())]

    def read_record(self, kind: type[ProtoRecord]) -> ProtoRecord:
        payload = self.read_string() or "{}"
        try:
            return kind.model_validate(json.loads(payload))
        except ValidationError as exc:
            raise wrap_validation_error(exc, kind.__name__) from exc
        except ValueError as exc:
            raise LayerDecodeError(f"Corrupt {kind.__name__} payload") from exc

    def read_records(self, kind: type[ProtoRecord]) -> list[ProtoRecord]:
        return [self.read_record(kind) for _ in range(self.read_count())]
