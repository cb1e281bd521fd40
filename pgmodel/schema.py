"""
Schema management helpers.

Creates and drops the tables, sequences and indexes described by model
mappings. Every statement runs through `SqlTemplate`, so inside an open
transaction the DDL is part of it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Optional, Union

from pgmodel.domain.mapping import IndexSpec, Mapping, get_fqn, load_mapping
from pgmodel.sqltemplate import build
from pgmodel.utils.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - typing only
    from pgmodel.client import Client

log = get_logger(__name__)


def _column_spec(column: str, type_name: str, constraint: Optional[str]) -> str:
    return " ".join(part for part in (column, type_name, constraint) if part)


def init_model(client: "Client", mapping: Union[Mapping, dict]) -> None:
    """Create the table of a model and, if mapped, its sequence and indexes."""
    mapping = load_mapping(mapping)
    columns = [_column_spec(mapping.id.column, mapping.id.type, mapping.id.constraint)]
    columns += [
        _column_spec(prop.column, prop.type, prop.constraint) for prop in mapping.properties.values()
    ]
    create_table(client, mapping.table, ", ".join(columns), mapping.schema_name)
    if mapping.id.sequence:
        create_sequence(
            client,
            mapping.id.sequence,
            f"{mapping.fqn}.{mapping.id.column}",
            mapping.schema_name,
        )
    for spec in mapping.indexes:
        create_index(client, mapping.table, spec, mapping.schema_name)
    log.info("Model table initialised", extra={"table": mapping.fqn})


def drop_model(client: "Client", mapping: Union[Mapping, dict]) -> None:
    """Drop the table of a model together with its sequences and indexes."""
    mapping = load_mapping(mapping)
    sequences = get_table_sequences(client, mapping.table, mapping.schema_name)
    indexes = get_table_indexes(client, mapping.table, mapping.schema_name)
    drop_table(client, mapping.table, mapping.schema_name)
    for sequence in sequences:
        drop_sequence(client, sequence["name"], sequence["schema"])
    for index in indexes:
        drop_index(client, index["name"], index["schema"])


def create_table(client: "Client", name: str, columns: str, schema: Optional[str] = None) -> None:
    build(f"create table if not exists {get_fqn(name, schema)} ({columns})").execute(client)


def create_sequence(client: "Client", name: str, owner: str, schema: Optional[str] = None) -> None:
    """Create a sequence owned by the column `owner` (`table.column`)."""
    build(f"create sequence if not exists {get_fqn(name, schema)} owned by {owner}").execute(client)


def create_index(
    client: "Client", table: str, spec: Union[IndexSpec, dict], schema: Optional[str] = None
) -> None:
    if not isinstance(spec, IndexSpec):
        spec = IndexSpec.model_validate(spec)
    parts = [
        "create unique index" if spec.unique else "create index",
        f"if not exists {spec.name} on {get_fqn(table, schema)}",
    ]
    if spec.type:
        parts.append(f"using {spec.type}")
    parts.append(f"({', '.join(spec.columns)})")
    if spec.tablespace:
        parts.append(f"tablespace {spec.tablespace}")
    if spec.predicate:
        parts.append(f"where {spec.predicate}")
    build(" ".join(parts)).execute(client)


def get_tables(client: "Client", schema: Optional[str] = None) -> List[Dict[str, str]]:
    """Tables of `schema` (default: every non-system schema) as `{"schema", "name"}` dicts."""
    sql = (
        "select schemaname::text as schema, tablename::text as name from pg_catalog.pg_tables"
        " where schemaname not in ('pg_catalog', 'information_schema')"
    )
    if schema:
        return build(sql + " and schemaname = #{schema}").execute(client, {"schema": schema})
    return build(sql).execute(client)


def get_table_sequences(
    client: "Client", table: str, schema: Optional[str] = None
) -> List[Dict[str, Optional[str]]]:
    """Sequences owned by columns of `table`, as `{"schema", "name"}` dicts."""
    return build(
        "select n.nspname::text as schema, s.relname::text as name"
        " from pg_catalog.pg_class s"
        " join pg_catalog.pg_depend d on d.objid = s.oid and d.deptype in ('a', 'i')"
        " join pg_catalog.pg_class t on t.oid = d.refobjid"
        " join pg_catalog.pg_namespace n on n.oid = s.relnamespace"
        " join pg_catalog.pg_namespace tn on tn.oid = t.relnamespace"
        " where s.relkind = 'S' and t.relname = #{table}"
        " and (#{schema}::text is null or tn.nspname = #{schema}::text)"
    ).execute(client, {"table": table, "schema": schema})


def get_table_indexes(
    client: "Client", table: str, schema: Optional[str] = None
) -> List[Dict[str, str]]:
    """Indexes of `table` as `{"schema", "table", "name"}` dicts."""
    return build(
        "select schemaname::text as schema, tablename::text as table, indexname::text as name"
        " from pg_catalog.pg_indexes where tablename = #{table}"
        " and (#{schema}::text is null or schemaname = #{schema}::text)"
    ).execute(client, {"table": table, "schema": schema})


def drop_table(client: "Client", name: str, schema: Optional[str] = None) -> None:
    build(f"drop table if exists {get_fqn(name, schema)} cascade").execute(client)


def drop_sequence(client: "Client", name: str, schema: Optional[str] = None) -> None:
    build(f"drop sequence if exists {get_fqn(name, schema)} cascade").execute(client)


def drop_index(client: "Client", name: str, schema: Optional[str] = None) -> None:
    build(f"drop index if exists {get_fqn(name, schema)}").execute(client)


def drop_all(client: "Client", schema: Optional[str] = None) -> None:
    """Drop every table of `schema` (default: all non-system schemas) with its sequences and indexes."""
    for table in get_tables(client, schema):
        sequences = get_table_sequences(client, table["name"], table["schema"])
        indexes = get_table_indexes(client, table["name"], table["schema"])
        drop_table(client, table["name"], table["schema"])
        for sequence in sequences:
            drop_sequence(client, sequence["name"], sequence["schema"])
        for index in indexes:
            drop_index(client, index["name"], index["schema"])


__all__ = [
    "create_index",
    "create_sequence",
    "create_table",
    "drop_all",
    "drop_index",
    "drop_model",
    "drop_sequence",
    "drop_table",
    "get_tables",
    "get_table_indexes",
    "get_table_sequences",
    "init_model",
]
