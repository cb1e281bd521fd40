"""
Result set mapping.

Turns psycopg result rows into plain dicts keyed by column label, decoding each
column with the codec registered for its server-reported type.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import psycopg

from pgmodel.codecs import DEFAULT_REGISTRY, CodecRegistry, ColumnType
from pgmodel.infrastructure import driver

Column = Tuple[str, ColumnType]


def columns(cursor: psycopg.Cursor, registry: Optional[CodecRegistry] = None) -> List[Column]:
    """
    Return `(label, codec)` pairs for the cursor's current result.

    Raises
    ------
    UnknownTypeError
        If a column has a type without a registered codec.
    """
    registry = registry or DEFAULT_REGISTRY
    return [(label, registry.lookup(type_name)) for label, type_name in driver.column_types(cursor)]


def map_row(row: Sequence[Any], cols: Sequence[Column]) -> Dict[str, Any]:
    return {label: codec.decode(row, index) for index, (label, codec) in enumerate(cols)}


def map_result(
    cursor: psycopg.Cursor,
    row_mapper: Callable[[Sequence[Any], List[Column]], Any],
    registry: Optional[CodecRegistry] = None,
) -> List[Any]:
    """Apply `row_mapper(row, columns)` to every row of the cursor."""
    cols = columns(cursor, registry)
    return [row_mapper(row, cols) for row in cursor.fetchall()]


def map_to_dict(cursor: psycopg.Cursor, registry: Optional[CodecRegistry] = None) -> List[Dict[str, Any]]:
    """The default row mapper: one dict per row."""
    return map_result(cursor, map_row, registry)


__all__ = ["Column", "columns", "map_result", "map_row", "map_to_dict"]
