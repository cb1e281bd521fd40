"""
SQL templates with named parameters.

A template is plain SQL in which every `#{name}` token is a named parameter:

    select * from t_author where aut_id = #{id} and aut_name = #{name}

Parsing turns each token, left to right, into a psycopg positional placeholder
(`%s`) and records the parameter name for that position. Names may repeat, each
occurrence is bound on its own. At execution time the server-declared type of
each position selects the codec that encodes the bound value, and result rows
are decoded column by column through the codec registry.

Usage:
    from pgmodel.sqltemplate import build

    rows = build("select * from t_author where aut_id = #{id}").execute(client, {"id": 1})
"""

from __future__ import annotations

import re
from collections.abc import Mapping as MappingABC
from typing import TYPE_CHECKING, Any, Callable, Iterable, List, Mapping, NamedTuple, Optional, Union

import psycopg

from pgmodel import mapper
from pgmodel.codecs import DEFAULT_REGISTRY, ColumnType, CodecRegistry
from pgmodel.errors import (
    MissingParameterError,
    StatementFailedError,
    TemplateSyntaxError,
    error_reason,
)
from pgmodel.infrastructure import driver
from pgmodel.utils.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - typing only
    from pgmodel.client import Client

log = get_logger(__name__)

PATTERN_PARAM = re.compile(r"#\{([^}]+)\}")

RowMapper = Callable[[psycopg.Cursor], Any]


class TemplateDescriptor(NamedTuple):
    """
    Result of parsing a template.

    `sql` is what psycopg executes (`%s` placeholders, literal `%` escaped),
    `native_sql` is the same statement with `$1..$n` placeholders, used to ask
    the server for parameter types.
    """

    sql: str
    param_names: List[str]
    native_sql: str


def _check_placeholders(template: str, chunk: str, offset: int) -> None:
    # text between placeholders can only hold an empty `#{}` or an unclosed `#{`
    position = chunk.find("#{")
    while position >= 0:
        if not chunk.startswith("#{}", position):
            raise TemplateSyntaxError(template, offset + position)
        position = chunk.find("#{", position + 3)


def parse(template: str) -> TemplateDescriptor:
    """
    Parse a template into positional SQL and the ordered parameter names.

    Raises
    ------
    TemplateSyntaxError
        If a `#{` is never closed. An empty `#{}` is not a placeholder and
        is passed through as text.
    """
    sql_parts: List[str] = []
    native_parts: List[str] = []
    param_names: List[str] = []
    pos = 0
    for match in PATTERN_PARAM.finditer(template):
        chunk = template[pos:match.start()]
        _check_placeholders(template, chunk, pos)
        param_names.append(match.group(1))
        sql_parts.append(chunk.replace("%", "%%") + "%s")
        native_parts.append(chunk + f"${len(param_names)}")
        pos = match.end()
    tail = template[pos:]
    _check_placeholders(template, tail, pos)
    sql_parts.append(tail.replace("%", "%%"))
    native_parts.append(tail)
    return TemplateDescriptor("".join(sql_parts), param_names, "".join(native_parts))


class SqlTemplate:
    """
    An executable, parsed SQL template.

    Parameters
    ----------
    descriptor : TemplateDescriptor
        The parsed template.
    registry : CodecRegistry, optional
        Codec registry used for parameters and result columns.
    """

    def __init__(
        self, descriptor: TemplateDescriptor, registry: Optional[CodecRegistry] = None
    ) -> None:
        self.descriptor = descriptor
        self.registry = registry or DEFAULT_REGISTRY
        self.row_mapper: RowMapper = self._default_mapper
        self._param_codecs: Optional[List[ColumnType]] = None

    def __repr__(self) -> str:
        return f"<SqlTemplate {self.descriptor.sql!r}>"

    @property
    def sql(self) -> str:
        return self.descriptor.sql

    @property
    def param_names(self) -> List[str]:
        return self.descriptor.param_names

    def _default_mapper(self, cursor: psycopg.Cursor) -> List[dict]:
        return mapper.map_to_dict(cursor, self.registry)

    def set_mapper(self, row_mapper: RowMapper) -> "SqlTemplate":
        """Use `row_mapper(cursor)` to turn result sets into return values."""
        if not callable(row_mapper):
            raise TypeError("Row mapper must be callable")
        self.row_mapper = row_mapper
        return self

    def _require(self, params: Any) -> Mapping[str, Any]:
        if params is None:
            params = {}
        if not isinstance(params, MappingABC):
            if self.param_names:
                raise MissingParameterError(self.param_names[0], self.sql)
            return {}
        for name in self.param_names:
            if name not in params:
                raise MissingParameterError(name, self.sql)
        return params

    def _codecs(self, connection: psycopg.Connection) -> List[ColumnType]:
        # statement metadata is fixed for a given text, describe it once
        if self._param_codecs is None:
            types = driver.parameter_types(connection, self.descriptor)
            self._param_codecs = [self.registry.lookup(name) for name in types]
        return self._param_codecs

    def _bind(self, codecs: List[ColumnType], params: Mapping[str, Any]) -> tuple:
        return tuple(codec.encode(params[name]) for codec, name in zip(codecs, self.param_names))

    def _failed(self, exc: Exception) -> StatementFailedError:
        reason = error_reason(exc)
        log.error(
            "Statement '%s' failed: %s",
            self.sql,
            reason,
            extra={"sql": self.sql, "params": list(self.param_names)},
        )
        return StatementFailedError(self.sql, self.param_names, reason)

    def execute(
        self,
        client: "Client",
        params: Optional[Mapping[str, Any]] = None,
        row_mapper: Optional[RowMapper] = None,
    ) -> Any:
        """
        Execute the template and return the mapped rows or the affected-row count.

        `row_mapper` replaces the template's mapper for this call only.

        Raises
        ------
        MissingParameterError
            Before anything is sent, if a named parameter has no value.
        StatementFailedError
            If the backend rejects the statement.
        """
        params = self._require(params)
        log.debug(self.sql, extra={"params": list(self.param_names)})
        with client.connection() as connection:
            try:
                values = self._bind(self._codecs(connection), params)
                with connection.cursor() as cursor:
                    cursor.execute(self.sql, values)
                    if cursor.description is not None:
                        return (row_mapper or self.row_mapper)(cursor)
                    return cursor.rowcount
            except psycopg.Error as exc:
                raise self._failed(exc) from exc

    def execute_batch(
        self,
        client: "Client",
        rows: Iterable[Mapping[str, Any]],
        batch_size: Optional[int] = None,
    ) -> bool:
        """
        Bind every parameter row and send them in batches.

        Rows are flushed every `batch_size` rows, or once at the end when no
        batch size is given. Each flush is one `executemany` round trip.
        """
        rows = [self._require(row) for row in rows]
        log.debug(
            self.sql,
            extra={"params": list(self.param_names), "rows": len(rows), "batch_size": batch_size},
        )
        if not rows:
            return True
        flushes = 0
        with client.connection() as connection:
            try:
                codecs = self._codecs(connection)
                with connection.cursor() as cursor:
                    batch: List[tuple] = []
                    for row in rows:
                        batch.append(self._bind(codecs, row))
                        if batch_size and len(batch) >= batch_size:
                            cursor.executemany(self.sql, batch)
                            flushes += 1
                            batch = []
                    if batch:
                        cursor.executemany(self.sql, batch)
                        flushes += 1
            except psycopg.Error as exc:
                raise self._failed(exc) from exc
        log.debug("Batch complete", extra={"rows": len(rows), "flushes": flushes})
        return True


def build(template: Union[str, TemplateDescriptor], registry: Optional[CodecRegistry] = None) -> SqlTemplate:
    """Parse `template` (unless already parsed) and wrap it in a `SqlTemplate`."""
    if isinstance(template, str):
        template = parse(template)
    return SqlTemplate(template, registry)


__all__ = ["PATTERN_PARAM", "SqlTemplate", "TemplateDescriptor", "build", "parse"]
