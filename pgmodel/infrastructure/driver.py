"""
Driver boundary between the codec layer and psycopg.

The SQL template engine needs the declared type of every positional parameter
and of every result column, reported by the server, so it can pick the right
codec. This module asks libpq to describe a statement (without executing it)
and resolves the reported OIDs to type names through the connection's psycopg
type registry. Array types are reported as `<element>[]`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Tuple

import psycopg
from psycopg import pq

if TYPE_CHECKING:  # pragma: no cover - typing only
    from pgmodel.sqltemplate import TemplateDescriptor

# libpq's unnamed prepared statement, replaced by every later parse
_UNNAMED = b""


def type_name(connection: psycopg.Connection, oid: int) -> str:
    """
    Resolve a type OID to its name using the connection's type registry.

    Unregistered OIDs are returned as `oid:<number>`, which no codec matches.
    """
    info = connection.adapters.types.get(oid)
    if info is None:
        return f"oid:{oid}"
    if info.oid != oid and info.array_oid == oid:
        return f"{info.name}[]"
    return info.name


def parameter_types(connection: psycopg.Connection, descriptor: "TemplateDescriptor") -> List[str]:
    """
    Return the server-inferred type name of each positional parameter.

    Raises
    ------
    psycopg.DatabaseError
        If the server cannot prepare the statement (syntax error, unknown
        relation, undeterminable parameter type, ...).
    """
    if not descriptor.param_names:
        return []
    encoding = connection.info.encoding
    pgconn = connection.pgconn
    with connection.lock:
        result = pgconn.prepare(_UNNAMED, descriptor.native_sql.encode(encoding))
        if result.status == pq.ExecStatus.COMMAND_OK:
            result = pgconn.describe_prepared(_UNNAMED)
        if result.status != pq.ExecStatus.COMMAND_OK:
            message = (result.error_message or b"").decode(encoding, "replace").strip()
            raise psycopg.DatabaseError(message or "statement description failed")
        return [type_name(connection, result.param_type(index)) for index in range(result.nparams)]


def column_types(cursor: psycopg.Cursor) -> List[Tuple[str, str]]:
    """Return `(label, type name)` for each column of the cursor's current result."""
    connection = cursor.connection
    return [(column.name, type_name(connection, column.type_code)) for column in cursor.description or ()]


__all__ = ["column_types", "parameter_types", "type_name"]
