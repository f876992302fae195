"""Exception taxonomy shared by the parser, layer model and transforms."""

from __future__ import annotations


class NetProtoError(ValueError):
    """Base class for every fatal configuration error."""


class ProtoSyntaxError(NetProtoError):
    """Malformed description text (unbalanced braces, stray tokens, ...)."""

    def __init__(self, message: str, line: int, column: int, snippet: str = "") -> None:
        self.line = line
        self.column = column
        self.snippet = snippet
        detail = f"{message} (line {line}, column {column})"
        if snippet:
            detail += f": {snippet!r}"
        super().__init__(detail)


class UnknownKindError(NetProtoError):
    """An unrecognized discriminant: layer type, phase, enum literal or binary tag."""

    def __init__(self, what: str, value: object) -> None:
        self.what = what
        self.value = value
        super().__init__(f"Unknown '{what}' value: {value}")


class LayerDecodeError(NetProtoError):
    """A layer block is structurally invalid (missing type, bad numeric field)."""
