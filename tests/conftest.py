"""
Pytest configuration for pgmodel.

Provides fixtures for:
- Settings and DSN for integration tests against PostgreSQL
- An in-memory stand-in for the database used by unit tests: a fake pool,
  connections with per-connection uncommitted writes, and cursors that
  understand the statement shapes generated for mapped models
- Ready-made clients and model classes on top of the fake database
"""

from __future__ import annotations

import copy
import os
import re
import threading
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional, Sequence, Tuple

import psycopg
import pytest

from pgmodel.cache import new_cache
from pgmodel.client import Client
from pgmodel.codecs import parse_array_literal
from pgmodel.config import Settings
from pgmodel.domain.mapping import Mapping, load_mapping
from pgmodel.infrastructure import driver

AUTHOR_MAPPING: Dict[str, Any] = {
    "table": "t_author",
    "id": {"column": "aut_id", "type": "int8", "sequence": "author_id"},
    "properties": {
        "name": {"column": "aut_name", "type": "varchar", "constraint": "not null"},
        "age": {"column": "aut_age", "type": "int4"},
    },
    "indexes": [{"name": "author_name_idx", "columns": ["aut_name"]}],
}

BOOK_MAPPING: Dict[str, Any] = {
    "table": "t_book",
    "schema": "lib",
    "id": {"column": "bk_id", "type": "int4"},
    "properties": {
        "title": {"column": "bk_title", "type": "text"},
        "author": {"column": "bk_author", "type": "int8"},
    },
}

DOC_MAPPING: Dict[str, Any] = {
    "table": "t_doc",
    "id": {"column": "doc_id", "type": "int8", "sequence": "doc_id"},
    "properties": {"body": {"column": "doc_body", "type": "jsonb"}},
}


# -- settings / integration ---------------------------------------------------


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "pgmodel"),
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    """
    Database connection string for tests.
    """
    return (
        f"postgresql://{test_settings.db_user}:{test_settings.db_password}"
        f"@{test_settings.db_host}:{test_settings.db_port}/{test_settings.db_name}"
    )


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except psycopg.Error:
        return False


# -- in-memory database -------------------------------------------------------

_TABLE = re.compile(r"\b(?:into|from|update)\s+([\w.]+)", re.IGNORECASE)
_INSERT = re.compile(r"^insert into ([\w.]+) \(([^)]*)\) values \((.*)\) returning \*$")
_UPDATE = re.compile(r"^update ([\w.]+) set (.*) where (\w+) = %s returning \*$")
_DELETE = re.compile(r"^delete from ([\w.]+) where (\w+) = %s$")
_SELECT = re.compile(r"^select (.*?) from ([\w.]+)(?: (.*))?$")
_GET_MANY = re.compile(r"^where (\w+) = any\(%s\) order by array_position\(%s, \w+\)$")
_WHERE_EQ = re.compile(r"^where (\w+) = %s$")
_ORDER_BY = re.compile(r"^order by (\w+)( desc)?$")
_NEXTVAL = re.compile(r"^nextval\('([\w.]+)'\)$")


class FakeDatabase:
    """Committed table contents plus the statement log."""

    def __init__(self, *mappings: Mapping) -> None:
        self.mappings = {mapping.fqn: mapping for mapping in mappings}
        self.tables: Dict[str, Dict[Any, Dict[str, Any]]] = {fqn: {} for fqn in self.mappings}
        self.sequences: Dict[str, int] = {}
        self.statements: List[str] = []
        self.batches: List[int] = []
        self.fail_on: Optional[str] = None
        self.fail_commit = False
        self.lock = threading.Lock()

    def nextval(self, name: str) -> int:
        with self.lock:
            self.sequences[name] = self.sequences.get(name, 0) + 1
            return self.sequences[name]

    def selects(self) -> List[str]:
        return [sql for sql in self.statements if sql.startswith("select")]

    def mapping_for(self, sql: str) -> Optional[Mapping]:
        match = _TABLE.search(sql)
        return self.mappings.get(match.group(1)) if match else None

    def column_type(self, mapping: Mapping, column: str) -> str:
        if column == mapping.id.column:
            return mapping.id.type
        for prop in mapping.properties.values():
            if prop.column == column:
                return prop.type
        return "unknown"

    # driver boundary replacements

    def parameter_types(self, connection: Any, descriptor: Any) -> List[str]:
        mapping = self.mapping_for(descriptor.sql)
        types = []
        for name in descriptor.param_names:
            if mapping is None:
                types.append("unknown")
            elif name == "id":
                types.append(mapping.id.type)
            elif name == "ids":
                types.append(mapping.id.type + "[]")
            elif name in mapping.properties:
                types.append(mapping.properties[name].type)
            else:
                types.append("unknown")
        return types

    @staticmethod
    def column_types(cursor: "FakeCursor") -> List[Tuple[str, str]]:
        return list(cursor.columns)


def _unwrap(value: Any) -> Any:
    # psycopg Json/Jsonb wrappers keep the python value in `.obj`
    return getattr(value, "obj", value)


class FakeCursor:
    def __init__(self, connection: "FakeConnection") -> None:
        self.connection = connection
        self.description: Optional[List[Tuple[str]]] = None
        self.columns: List[Tuple[str, str]] = []
        self.rowcount = -1
        self._rows: List[tuple] = []

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        return None

    def fetchall(self) -> List[tuple]:
        rows, self._rows = self._rows, []
        return rows

    def executemany(self, sql: str, params_seq: Sequence[tuple]) -> None:
        self.connection.db.batches.append(len(params_seq))
        for params in params_seq:
            self.execute(sql, params)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        db = self.connection.db
        db.statements.append(sql)
        if db.fail_on and db.fail_on in sql:
            raise psycopg.DatabaseError(f"relation does not accept '{db.fail_on}'")
        mapping = db.mapping_for(sql)
        if mapping is None:
            raise psycopg.DatabaseError("unknown relation")
        values = [copy.deepcopy(_unwrap(value)) for value in params]
        for pattern, handler in (
            (_INSERT, self._insert),
            (_UPDATE, self._update),
            (_DELETE, self._delete),
            (_SELECT, self._select),
        ):
            match = pattern.match(sql)
            if match:
                handler(mapping, match, values)
                return
        raise psycopg.DatabaseError(f"unsupported statement: {sql}")

    def _result(self, mapping: Mapping, rows: List[Dict[str, Any]], columns: List[str]) -> None:
        self.columns = [(column, self.connection.db.column_type(mapping, column)) for column in columns]
        self.description = [(column,) for column in columns]
        self._rows = [tuple(copy.deepcopy(row.get(column)) for column in columns) for row in rows]
        self.rowcount = len(rows)

    def _insert(self, mapping: Mapping, match: Any, values: List[Any]) -> None:
        db = self.connection.db
        columns = [column.strip() for column in match.group(2).split(",")]
        tokens = [token.strip() for token in match.group(3).split(",")]
        row: Dict[str, Any] = {column: None for column in mapping.columns()}
        remaining = iter(values)
        for column, token in zip(columns, tokens):
            sequence = _NEXTVAL.match(token)
            row[column] = db.nextval(sequence.group(1)) if sequence else next(remaining)
        id_column = mapping.id.column
        if id_column not in columns:
            row[id_column] = db.nextval(f"{mapping.table}_{id_column}_seq")
        table = self.connection.tables(write=True)[mapping.fqn]
        if row[id_column] in table:
            raise psycopg.DatabaseError("duplicate key value violates unique constraint")
        table[row[id_column]] = row
        self._result(mapping, [row], mapping.columns())

    def _update(self, mapping: Mapping, match: Any, values: List[Any]) -> None:
        columns = [part.split("=")[0].strip() for part in match.group(2).split(",")]
        table = self.connection.tables(write=True)[mapping.fqn]
        row = table.get(values[-1])
        if row is None:
            self._result(mapping, [], mapping.columns())
            return
        row.update(zip(columns, values[:-1]))
        self._result(mapping, [row], mapping.columns())

    def _delete(self, mapping: Mapping, match: Any, values: List[Any]) -> None:
        table = self.connection.tables(write=True)[mapping.fqn]
        self.description = None
        self.rowcount = 1 if table.pop(values[0], None) is not None else 0

    def _select(self, mapping: Mapping, match: Any, values: List[Any]) -> None:
        rows = sorted(self.connection.tables()[mapping.fqn].values(), key=lambda row: row[mapping.id.column])
        rest = (match.group(3) or "").strip()
        if rest:
            get_many = _GET_MANY.match(rest)
            where = _WHERE_EQ.match(rest)
            order = _ORDER_BY.match(rest)
            if get_many:
                ids = values[0]
                if isinstance(ids, str):
                    ids = parse_array_literal(ids, int)
                by_id = {row[get_many.group(1)]: row for row in rows}
                rows = [by_id[id] for id in ids if id in by_id]
            elif where:
                rows = [row for row in rows if row.get(where.group(1)) == values[0]]
            elif order:
                rows = sorted(rows, key=lambda row: row[order.group(1)], reverse=bool(order.group(2)))
            else:
                raise psycopg.DatabaseError(f"unsupported clause: {rest}")
        selected = match.group(1)
        if selected.startswith("count("):
            self.columns = [("count", "int8")]
            self.description = [("count",)]
            self._rows = [(len(rows),)]
            self.rowcount = 1
            return
        self._result(mapping, rows, [column.strip() for column in selected.split(",")])


class FakeConnection:
    """A connection whose writes stay private until commit."""

    def __init__(self, db: FakeDatabase) -> None:
        self.db = db
        self.pending: Optional[Dict[str, Dict[Any, Dict[str, Any]]]] = None
        self.autocommit = True
        self.isolation_level = None
        self.read_only = None
        self.commits = 0
        self.rollbacks = 0

    def tables(self, write: bool = False) -> Dict[str, Dict[Any, Dict[str, Any]]]:
        if write and self.pending is None:
            self.pending = {
                fqn: copy.deepcopy(rows) for fqn, rows in self.db.tables.items()
            }
        return self.pending if self.pending is not None else self.db.tables

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        if self.db.fail_commit:
            self.pending = None
            raise psycopg.OperationalError("server closed the connection unexpectedly")
        if self.pending is not None:
            with self.db.lock:
                self.db.tables = self.pending
        self.pending = None
        self.commits += 1

    def rollback(self) -> None:
        self.pending = None
        self.rollbacks += 1


class FakePool:
    """`psycopg_pool.ConnectionPool` lookalike handing out `FakeConnection`s."""

    def __init__(self, db: FakeDatabase) -> None:
        self.db = db
        self.borrowed: List[FakeConnection] = []
        self.returned: List[FakeConnection] = []
        self.closed = False

    def getconn(self) -> FakeConnection:
        connection = FakeConnection(self.db)
        self.borrowed.append(connection)
        return connection

    def putconn(self, connection: FakeConnection) -> None:
        self.returned.append(connection)

    @contextmanager
    def connection(self) -> Generator[FakeConnection, None, None]:
        connection = self.getconn()
        try:
            yield connection
        except BaseException:
            connection.rollback()
            raise
        else:
            connection.commit()
        finally:
            self.putconn(connection)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_db(monkeypatch: pytest.MonkeyPatch) -> FakeDatabase:
    db = FakeDatabase(*(load_mapping(m) for m in (AUTHOR_MAPPING, BOOK_MAPPING, DOC_MAPPING)))
    monkeypatch.setattr(driver, "parameter_types", db.parameter_types)
    monkeypatch.setattr(driver, "column_types", db.column_types)
    return db


@pytest.fixture
def fake_pool(fake_db: FakeDatabase) -> FakePool:
    return FakePool(fake_db)


@pytest.fixture
def client(fake_pool: FakePool) -> Client:
    return Client(fake_pool, cache=new_cache(100))


@pytest.fixture
def uncached_client(fake_pool: FakePool) -> Client:
    return Client(fake_pool)


@pytest.fixture
def Author(client: Client):
    return client.define_model("Author", AUTHOR_MAPPING)


@pytest.fixture
def Book(client: Client):
    return client.define_model("Book", BOOK_MAPPING)


@pytest.fixture
def Doc(client: Client):
    return client.define_model("Doc", DOC_MAPPING)


@pytest.fixture
def author_mapping() -> Dict[str, Any]:
    return copy.deepcopy(AUTHOR_MAPPING)


@pytest.fixture
def book_mapping() -> Dict[str, Any]:
    return copy.deepcopy(BOOK_MAPPING)
