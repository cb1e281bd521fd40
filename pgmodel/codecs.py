"""
Column type codecs.

A codec bridges the values psycopg hands out for a result column (or expects
for a statement parameter) and the values application code works with. Every
codec is a `ColumnType` with two pure functions:

- `decode(row, index)` converts the driver value at `row[index]`,
- `encode(value)` returns the representation bound to a positional parameter.

Both pass `None` through unchanged, except for the serial pseudo-types which
refuse to encode `None`. Each scalar type automatically gets an array sibling
(`name[]`); arrays are bound as PostgreSQL array literals and decoded from
psycopg's native list unwrap, or from the literal text when psycopg has no
loader for the element type.

Usage:
    from pgmodel.codecs import lookup

    codec = lookup("int8")
    codec.encode(1.9)            # -> 1
    codec.decode((None,), 0)     # -> None
"""

from __future__ import annotations

import ipaddress
import json
import re
import struct
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence
from uuid import UUID

from psycopg.types.json import Json, Jsonb

from pgmodel.domain.values import Box, Circle, Interval, Line, LineSegment, Path, Point, Polygon
from pgmodel.errors import UnknownTypeError

Decoder = Callable[[Sequence[Any], int], Any]
Encoder = Callable[[Any], Any]

_MODIFIER = re.compile(r"\(\s*[\d\s,]*\)")
_WHITESPACE = re.compile(r"\s+")


class ColumnType(NamedTuple):
    """A registered codec: canonical name plus its decode/encode pair."""

    name: str
    decode: Decoder
    encode: Encoder

    def __repr__(self) -> str:
        return f"<ColumnType {self.name}>"


def normalize_type_name(name: str) -> str:
    """
    Reduce a declared column type to its registry key.

    Type modifiers are dropped and whitespace collapsed, so `character(2)`,
    `CHARACTER VARYING(255)` and `varchar(10) []` become `character`,
    `character varying` and `varchar[]`.
    """
    name = _MODIFIER.sub(" ", name.strip().lower())
    name = _WHITESPACE.sub(" ", name).strip()
    return name.replace(" []", "[]")


def _quote_element(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def format_array_literal(
    values: Iterable[Any], literal: Callable[[Any], str], delimiter: str = ","
) -> str:
    """Render a (possibly nested) sequence as a PostgreSQL array literal."""
    parts = []
    for value in values:
        if value is None:
            parts.append("NULL")
        elif isinstance(value, (list, tuple)):
            parts.append(format_array_literal(value, literal, delimiter))
        else:
            parts.append(_quote_element(literal(value)))
    return "{" + delimiter.join(parts) + "}"


def parse_array_literal(
    text: str, convert: Callable[[str], Any] = str, delimiter: str = ","
) -> List[Any]:
    """
    Parse a PostgreSQL array literal into nested lists.

    Unquoted `NULL` elements become `None`; every other element is passed
    through `convert` as text.
    """
    if text.startswith("["):
        # explicit bounds, e.g. "[0:1]={1,2}"
        text = text[text.index("=") + 1:]
    pos = 0

    def parse_array() -> List[Any]:
        nonlocal pos
        if text[pos] != "{":
            raise ValueError(f"Malformed array literal: {text!r}")
        pos += 1
        items: List[Any] = []
        if text[pos] == "}":
            pos += 1
            return items
        while True:
            char = text[pos]
            if char == "{":
                items.append(parse_array())
            elif char == '"':
                pos += 1
                chars = []
                while text[pos] != '"':
                    if text[pos] == "\\":
                        pos += 1
                    chars.append(text[pos])
                    pos += 1
                pos += 1
                items.append(convert("".join(chars)))
            else:
                start = pos
                while text[pos] not in (delimiter, "}"):
                    pos += 1
                token = text[start:pos].strip()
                items.append(None if token.upper() == "NULL" else convert(token))
            char = text[pos]
            pos += 1
            if char == "}":
                return items
            if char != delimiter:
                raise ValueError(f"Malformed array literal: {text!r}")

    try:
        return parse_array()
    except IndexError:
        raise ValueError(f"Malformed array literal: {text!r}") from None


def _map_nested(convert: Callable[[Any], Any], values: Iterable[Any]) -> List[Any]:
    return [
        None if value is None
        else _map_nested(convert, value) if isinstance(value, (list, tuple))
        else convert(value)
        for value in values
    ]


class CodecRegistry:
    """
    Table of codecs keyed by normalised type name.

    Aliases share the descriptor instance of their canonical name.
    """

    def __init__(self) -> None:
        self._types: Dict[str, ColumnType] = {}

    def register(
        self,
        name: str,
        decode: Decoder,
        encode: Encoder,
        aliases: Iterable[str] = (),
    ) -> ColumnType:
        column_type = ColumnType(normalize_type_name(name), decode, encode)
        for key in (name, *aliases):
            self._types[normalize_type_name(key)] = column_type
        return column_type

    def register_scalar(
        self,
        name: str,
        load: Callable[[Any], Any],
        dump: Callable[[Any], Any],
        literal: Optional[Callable[[Any], str]] = None,
        aliases: Iterable[str] = (),
        nullable: bool = True,
        delimiter: str = ",",
    ) -> ColumnType:
        """
        Register a scalar type from value converters, along with its array type.

        `load` converts a driver value (or its text form, when it appears inside
        an array literal) to the application value, `dump` converts an
        application value to the bound representation and `literal` renders it
        as array element text (defaults to `str(dump(value))`).
        """
        aliases = tuple(aliases)
        if literal is None:
            literal = lambda value: str(dump(value))  # noqa: E731

        def decode(row: Sequence[Any], index: int) -> Any:
            value = row[index]
            return None if value is None else load(value)

        def encode(value: Any) -> Any:
            if value is None:
                if not nullable:
                    raise ValueError(f"Type '{name}' does not accept NULL")
                return None
            return dump(value)

        def decode_array(row: Sequence[Any], index: int) -> Any:
            value = row[index]
            if value is None:
                return None
            if isinstance(value, str):
                return parse_array_literal(value, load, delimiter)
            return _map_nested(load, value)

        def encode_array(value: Any) -> Any:
            if value is None:
                return None
            if isinstance(value, str):
                return value
            return format_array_literal(value, literal, delimiter)

        scalar = self.register(name, decode, encode, aliases)
        self.register(f"{name}[]", decode_array, encode_array, [f"{alias}[]" for alias in aliases])
        return scalar

    def lookup(self, name: str) -> ColumnType:
        try:
            return self._types[normalize_type_name(name)]
        except KeyError:
            raise UnknownTypeError(name) from None

    def names(self) -> List[str]:
        return sorted(self._types)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_type_name(name) in self._types


# -- value converters ---------------------------------------------------------


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(Decimal(value))
    return int(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("t", "true", "y", "yes", "on", "1")
    return bool(value)


def _bool_literal(value: Any) -> str:
    return "t" if _to_bool(value) else "f"


def _to_float4(value: Any) -> float:
    return struct.unpack("f", struct.pack("f", float(value)))[0]


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _load_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return bytes.fromhex(value[2:]) if value.startswith("\\x") else value.encode("utf-8")
    return bytes(value)


def _dump_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def _bytes_literal(value: Any) -> str:
    return "\\x" + _dump_bytes(value).hex()


def _load_json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _to_date(value: Any) -> date:
    if isinstance(value, str):
        return date.fromisoformat(value)
    if isinstance(value, datetime):
        return value.date()
    return value


def _to_time(value: Any) -> time:
    if isinstance(value, str):
        return time.fromisoformat(value)
    return value


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time())
    return value


def _load_interval(value: Any) -> Interval:
    if isinstance(value, Interval):
        return value
    if isinstance(value, timedelta):
        return Interval.from_timedelta(value)
    return Interval.parse(str(value))


def _dump_interval(value: Any) -> Any:
    if isinstance(value, Interval):
        return value.to_literal()
    return value


def _interval_literal(value: Any) -> str:
    if isinstance(value, timedelta):
        return Interval.from_timedelta(value).to_literal()
    return str(_dump_interval(value))


def _geometry(record: type) -> tuple:
    def load(value: Any) -> Any:
        return value if isinstance(value, record) else record.parse(str(value))

    def dump(value: Any) -> Any:
        return value.to_literal() if isinstance(value, record) else str(value)

    return load, dump


def _load_uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _load_inet(value: Any) -> Any:
    if isinstance(value, str):
        return ipaddress.ip_interface(value)
    return value


def _load_cidr(value: Any) -> Any:
    if isinstance(value, str):
        return ipaddress.ip_network(value)
    return value


def _identity(value: Any) -> Any:
    return value


def _register_defaults(registry: CodecRegistry) -> None:
    integer = {"load": _to_int, "dump": _to_int}
    registry.register_scalar("bigint", aliases=["int8"], **integer)
    registry.register_scalar("integer", aliases=["int", "int4"], **integer)
    registry.register_scalar("smallint", aliases=["int2"], **integer)
    registry.register_scalar("oid", **integer)
    registry.register_scalar("bigserial", aliases=["serial8"], nullable=False, **integer)
    registry.register_scalar("serial", aliases=["serial4"], nullable=False, **integer)
    registry.register_scalar("smallserial", aliases=["serial2"], nullable=False, **integer)

    registry.register_scalar("boolean", _to_bool, _to_bool, _bool_literal, aliases=["bool"])
    registry.register_scalar("real", float, _to_float4, aliases=["float4"])
    registry.register_scalar("double precision", float, float, aliases=["float8"])
    registry.register_scalar("numeric", _to_decimal, _to_decimal, aliases=["decimal"])

    for name, aliases in (
        ("character", ["char", "bpchar"]),
        ("character varying", ["varchar"]),
        ("text", []),
        ("name", []),
        ("tsvector", []),
        ("bit", []),
        ("bit varying", ["varbit"]),
    ):
        registry.register_scalar(name, str, str, aliases=aliases)

    registry.register_scalar("bytea", _load_bytes, _dump_bytes, _bytes_literal)
    registry.register_scalar("uuid", _load_uuid, _load_uuid)
    registry.register_scalar("inet", _load_inet, str)
    registry.register_scalar("cidr", _load_cidr, str)
    registry.register_scalar("json", _load_json, Json, json.dumps)
    registry.register_scalar("jsonb", _load_json, Jsonb, json.dumps)

    registry.register_scalar("date", _to_date, _to_date)
    registry.register_scalar("time", _to_time, _to_time, aliases=["time without time zone"])
    registry.register_scalar("time with time zone", _to_time, _to_time, aliases=["timetz"])
    registry.register_scalar(
        "timestamp", _to_datetime, _to_datetime, aliases=["timestamp without time zone"]
    )
    registry.register_scalar(
        "timestamp with time zone", _to_datetime, _to_datetime, aliases=["timestamptz"]
    )
    registry.register_scalar("interval", _load_interval, _dump_interval, _interval_literal)

    for name, record in (
        ("point", Point),
        ("line", Line),
        ("lseg", LineSegment),
        ("path", Path),
        ("polygon", Polygon),
        ("circle", Circle),
    ):
        load, dump = _geometry(record)
        registry.register_scalar(name, load, dump)
    load, dump = _geometry(Box)
    # box is the one built-in type whose array elements are ';'-delimited
    registry.register_scalar("box", load, dump, delimiter=";")

    registry.register("unknown", lambda row, index: row[index], _identity)


DEFAULT_REGISTRY = CodecRegistry()
_register_defaults(DEFAULT_REGISTRY)


def register(
    name: str, decode: Decoder, encode: Encoder, aliases: Iterable[str] = ()
) -> ColumnType:
    """Register a codec in the default registry."""
    return DEFAULT_REGISTRY.register(name, decode, encode, aliases)


def lookup(name: str) -> ColumnType:
    """Return the codec registered for `name` in the default registry."""
    return DEFAULT_REGISTRY.lookup(name)


__all__ = [
    "ColumnType",
    "CodecRegistry",
    "DEFAULT_REGISTRY",
    "format_array_literal",
    "lookup",
    "normalize_type_name",
    "parse_array_literal",
    "register",
]
