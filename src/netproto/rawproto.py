"""Raw tree for the nested ``name: value`` / ``name { ... }`` description format.

The tree is intentionally schema-free: every node carries a name, an optional
scalar value with the literal kind it was written as, and an ordered list of
children.  Repeated fields are repeated same-named children.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from enum import Enum
from typing import NamedTuple, TypeVar

from pydantic import BaseModel, Field

from .errors import LayerDecodeError, ProtoSyntaxError

ROOT_NAME = "root"
INDENT = "  "

T = TypeVar("T", str, int, float, bool)

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<comment>\#[^\n]*)
  | (?P<lbrace>\{)
  | (?P<rbrace>\})
  | (?P<colon>:)
  | (?P<string>"(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*')
  | (?P<word>[^\s{}:"'\#]+)
    """,
    re.VERBOSE,
)
_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-\[\]/]*$")
_NUMERIC_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")
_BARE_RE = re.compile(r"^[^\s{}:\"'\#]+$")
_BOOL_LITERALS = {"true", "false"}
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}


class ValueType(str, Enum):
    """Literal kind a scalar value was written as."""

    STRING = "STRING"
    NUMERIC = "NUMERIC"
    BOOL = "BOOL"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def classify(cls, literal: str) -> ValueType:
        """Classify an unquoted literal."""
        if literal.lower() in _BOOL_LITERALS:
            return cls.BOOL
        if _NUMERIC_RE.match(literal):
            return cls.NUMERIC
        return cls.UNKNOWN

    @classmethod
    def infer(cls, value: str) -> ValueType:
        """Type for a programmatically created value; bare words become strings."""
        kind = cls.classify(value)
        return cls.STRING if kind is cls.UNKNOWN else kind


class Node(BaseModel):
    """One element of the raw tree.

    A node with ``value is None`` is a block; otherwise it is a scalar leaf.
    Equality is structural (names, values, value types and child order).
    """

    name: str
    value: str | None = None
    value_type: ValueType = ValueType.UNKNOWN
    children: list[Node] = Field(default_factory=list)

    @classmethod
    def scalar(cls, name: str, value: object, value_type: ValueType | None = None) -> Node:
        if isinstance(value, bool):
            text = "true" if value else "false"
        else:
            text = str(value)
        return cls(name=name, value=text, value_type=value_type or ValueType.infer(text))

    @classmethod
    def block(cls, name: str, children: list[Node] | None = None) -> Node:
        return cls(name=name, children=list(children or []))

    @classmethod
    def root(cls, children: list[Node] | None = None) -> Node:
        return cls.block(ROOT_NAME, children)

    @property
    def is_block(self) -> bool:
        return self.value is None

    # -- queries ---------------------------------------------------------

    def find_child(self, name: str) -> Node | None:
        return next((child for child in self.children if child.name == name), None)

    def find_children(self, *names: str) -> list[Node]:
        return [child for child in self.children if child.name in names]

    def find_value(self, name: str) -> str | None:
        child = self.find_child(name)
        return None if child is None else child.value

    def find_child_index(self, name: str) -> int:
        for idx, child in enumerate(self.children):
            if child.name == name:
                return idx
        return -1

    def index_of(self, node: Node) -> int:
        """Position of ``node`` by identity, or -1."""
        for idx, child in enumerate(self.children):
            if child is node:
                return idx
        return -1

    def find_array(self, name: str, kind: type[T] = str) -> list[T]:  # type: ignore[assignment]
        """Typed values of every same-named scalar child (empty when none)."""
        values: list[T] = []
        for child in self.find_children(name):
            if child.value is None:
                continue
            values.append(_convert(name, child.value, kind))
        return values

    # -- mutation ----------------------------------------------------------

    def append(self, node: Node) -> Node:
        self.children.append(node)
        return node

    def insert(self, index: int, node: Node) -> Node:
        self.children.insert(index, node)
        return node

    def remove_child(self, node: Node) -> bool:
        """Remove ``node`` (by identity); a missing child is a no-op."""
        idx = self.index_of(node)
        if idx < 0:
            return False
        del self.children[idx]
        return True

    def remove_value(self, name: str, value: str, first_only: bool = True) -> int:
        """Remove scalar children matching ``name`` and ``value``; returns the count removed."""
        removed = 0
        kept: list[Node] = []
        for child in self.children:
            if child.name == name and child.value == value and not (first_only and removed):
                removed += 1
                continue
            kept.append(child)
        self.children[:] = kept
        return removed

    def set_value(self, name: str, value: object, value_type: ValueType | None = None) -> Node:
        """Overwrite the first ``name`` child's value, appending the child when absent."""
        child = self.find_child(name)
        if child is None:
            return self.append(Node.scalar(name, value, value_type))
        replacement = Node.scalar(name, value, value_type or child.value_type)
        child.value = replacement.value
        child.value_type = replacement.value_type
        return child

    def copy(self) -> Node:  # type: ignore[override]
        return self.model_copy(deep=True)

    def walk(self) -> Iterator[Node]:
        yield self
        for child in self.children:
            yield from child.walk()

    def to_text(self) -> str:
        return serialize(self)

    def __str__(self) -> str:
        return self.to_text()


Node.model_rebuild()


def _convert(name: str, value: str, kind: type[T]) -> T:
    try:
        if kind is bool:
            lowered = value.lower()
            if lowered not in _BOOL_LITERALS:
                raise ValueError(value)
            return lowered == "true"  # type: ignore[return-value]
        if kind is int:
            return int(value)  # type: ignore[return-value]
        if kind is float:
            return float(value)  # type: ignore[return-value]
        return value  # type: ignore[return-value]
    except ValueError as exc:
        msg = f"Field '{name}' expects {kind.__name__}, found {value!r}"
        raise LayerDecodeError(msg) from exc


# -- parsing ---------------------------------------------------------------


class _Token(NamedTuple):
    kind: str
    text: str
    line: int
    column: int


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    line = 1
    line_start = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        column = pos - line_start + 1
        if match is None:
            snippet = text[pos : pos + 20].splitlines()[0] if text[pos:].strip() else ""
            reason = "Unterminated string" if text[pos] in "\"'" else "Unexpected character"
            raise ProtoSyntaxError(reason, line, column, snippet)
        kind = match.lastgroup or ""
        chunk = match.group()
        if kind not in ("ws", "comment"):
            tokens.append(_Token(kind, chunk, line, column))
        newlines = chunk.count("\n")
        if newlines:
            line += newlines
            line_start = match.start() + chunk.rfind("\n") + 1
        pos = match.end()
    return tokens


def _unquote(literal: str) -> str:
    body = literal[1:-1]
    out: list[str] = []
    idx = 0
    while idx < len(body):
        ch = body[idx]
        if ch == "\\" and idx + 1 < len(body):
            nxt = body[idx + 1]
            out.append(_ESCAPES.get(nxt, nxt))
            idx += 2
            continue
        out.append(ch)
        idx += 1
    return "".join(out)


class _Parser:
    def __init__(self, text: str) -> None:
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self) -> _Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> _Token:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def parse(self) -> Node:
        root = Node.root()
        self.body(root, opener=None)
        return root

    def body(self, parent: Node, opener: _Token | None) -> None:
        while True:
            tok = self.peek()
            if tok is None:
                if opener is not None:
                    msg = f"Unterminated block '{parent.name}'"
                    raise ProtoSyntaxError(msg, opener.line, opener.column, parent.name)
                return
            if tok.kind == "rbrace":
                if opener is None:
                    raise ProtoSyntaxError("Unbalanced '}'", tok.line, tok.column, tok.text)
                self.take()
                return
            parent.children.append(self.field())

    def field(self) -> Node:
        tok = self.take()
        if tok.kind != "word" or not _NAME_RE.match(tok.text):
            raise ProtoSyntaxError("Expected a field name", tok.line, tok.column, tok.text)
        name = tok.text
        nxt = self.peek()
        if nxt is None:
            msg = f"Unexpected end of text after '{name}'"
            raise ProtoSyntaxError(msg, tok.line, tok.column, name)
        if nxt.kind == "colon":
            self.take()
            value = self.peek()
            if value is None:
                raise ProtoSyntaxError(f"Missing value for '{name}'", nxt.line, nxt.column, name)
            if value.kind == "lbrace":
                return self.block(name)
            if value.kind == "string":
                self.take()
                return Node(name=name, value=_unquote(value.text), value_type=ValueType.STRING)
            if value.kind == "word":
                self.take()
                return Node(
                    name=name, value=value.text, value_type=ValueType.classify(value.text)
                )
            msg = f"Expected a value after '{name}:'"
            raise ProtoSyntaxError(msg, value.line, value.column, value.text)
        if nxt.kind == "lbrace":
            return self.block(name)
        msg = f"Expected ':' before the value of '{name}'"
        raise ProtoSyntaxError(msg, nxt.line, nxt.column, nxt.text)

    def block(self, name: str) -> Node:
        opener = self.take()
        node = Node.block(name)
        self.body(node, opener=opener)
        return node


def parse(text: str) -> Node:
    """Parse description text into a root node named ``root``."""
    return _Parser(text).parse()


# -- serialization ---------------------------------------------------------


def _quote(value: str) -> str:
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\t", "\\t")
        .replace("\r", "\\r")
    )
    return f'"{escaped}"'


def _format_scalar(node: Node) -> str:
    value = node.value or ""
    if node.value_type is ValueType.STRING or not _BARE_RE.match(value):
        return _quote(value)
    return value


def _emit(node: Node, depth: int, lines: list[str]) -> None:
    pad = INDENT * depth
    if node.value is not None:
        if node.children:
            msg = f"Node '{node.name}' has both a value and children"
            raise ValueError(msg)
        lines.append(f"{pad}{node.name}: {_format_scalar(node)}")
        return
    if not node.children:
        lines.append(f"{pad}{node.name} {{")
        lines.append(f"{pad}}}")
        return
    lines.append(f"{pad}{node.name} {{")
    for child in node.children:
        _emit(child, depth + 1, lines)
    lines.append(f"{pad}}}")


def serialize(node: Node) -> str:
    """Render a tree as text; a ``root`` node renders only its children."""
    lines: list[str] = []
    if node.name == ROOT_NAME and node.value is None:
        for child in node.children:
            _emit(child, 0, lines)
    else:
        _emit(node, 0, lines)
    return "\n".join(lines) + "\n" if lines else ""
