"""
The pgmodel client.

A `Client` ties together a connection pool, the optional shared model cache,
the per-context transactions and the commit listeners. Every model and every
ad-hoc query runs through a client.

Usage:
    from pgmodel import Client, new_cache
    from pgmodel.infrastructure import get_pool

    client = Client(get_pool(), cache=new_cache(1000))
    Author = client.define_model("Author", mapping)

    with client.transaction():
        Author(name="Jane Foo").save()

    client.query("select count(*) as n from t_author")   # -> [{"n": 1}]
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import (
    Any,
    Callable,
    Dict,
    Generator,
    Hashable,
    List,
    Mapping as MappingType,
    Optional,
    Type,
    Union,
)

import psycopg

from pgmodel.cache import Cache
from pgmodel.domain.mapping import Mapping
from pgmodel.errors import PgModelError
from pgmodel.model import Model, define_model
from pgmodel.sqltemplate import RowMapper, build
from pgmodel.transaction import Transaction, TransactionManager
from pgmodel.utils.logging import get_logger

log = get_logger(__name__)

Listener = Callable[[Any], None]


class Client:
    """
    Entry point to a PostgreSQL database.

    Parameters
    ----------
    connection_pool
        A `psycopg_pool.ConnectionPool` (or anything with `getconn()`,
        `putconn()`, `connection()` and `close()`).
    cache : Cache, optional
        Shared model cache. Without one every lookup hits the database.
    context_key : callable, optional
        Identity of the current execution context for binding transactions;
        defaults to the calling thread.
    """

    def __init__(
        self,
        connection_pool: Any,
        cache: Optional[Cache] = None,
        context_key: Optional[Callable[[], Hashable]] = None,
    ) -> None:
        self.connection_pool = connection_pool
        self.cache = cache
        self.transactions = TransactionManager(
            connection_pool, cache=cache, emitter=self, context_key=context_key
        )
        self._listeners: Dict[str, List[Listener]] = {}
        self._listeners_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<Client pool={self.connection_pool!r} cache={self.cache!r}>"

    @contextmanager
    def connection(self) -> Generator[psycopg.Connection, None, None]:
        """
        Connection for one statement.

        Inside a transaction this is the transaction's connection, left open.
        Otherwise a pooled connection is borrowed for the statement and
        committed on success or rolled back on error when it is returned.
        """
        transaction = self.transactions.current()
        if transaction is not None:
            yield transaction.get_connection()
            return
        with self.connection_pool.connection() as connection:
            yield connection

    # -- transactions ------------------------------------------------------------

    def begin_transaction(self) -> Transaction:
        """Start a transaction in the current context, or return the open one."""
        return self.transactions.begin()

    def get_transaction(self) -> Optional[Transaction]:
        return self.transactions.current()

    def has_transaction(self) -> bool:
        return self.transactions.current() is not None

    def commit_transaction(self) -> None:
        """
        Raises
        ------
        NoActiveTransactionError
            If the current context has no open transaction.
        """
        self.transactions.commit()

    def abort_transaction(self) -> None:
        """
        Raises
        ------
        NoActiveTransactionError
            If the current context has no open transaction.
        """
        self.transactions.rollback()

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """
        Run the block in a transaction: commit on success, roll back on error.

        Nested use joins the enclosing transaction; only the outermost block
        commits or rolls back. A failing rollback is logged and the block's
        own exception propagates.
        """
        if self.has_transaction():
            yield self.transactions.current()
            return
        transaction = self.begin_transaction()
        try:
            yield transaction
        except BaseException:
            if self.transactions.current() is transaction:
                try:
                    self.abort_transaction()
                except PgModelError:
                    log.warning("Rollback after a failed transaction block failed", exc_info=True)
            raise
        if self.transactions.current() is transaction:
            self.commit_transaction()

    # -- models and queries --------------------------------------------------------

    def define_model(
        self, type_name: str, mapping: Union[Mapping, MappingType[str, Any]]
    ) -> Type[Model]:
        """Create a model class bound to this client, see `pgmodel.model.define_model`."""
        return define_model(self, type_name, mapping)

    def query(
        self,
        sql: str,
        params: Optional[MappingType[str, Any]] = None,
        mapper: Optional[RowMapper] = None,
    ) -> Any:
        """
        Execute an ad-hoc template.

        Returns a list of dicts for statements producing rows (or whatever
        `mapper` returns) and the affected-row count otherwise.
        """
        template = build(sql)
        if mapper is not None:
            template.set_mapper(mapper)
        return template.execute(self, params)

    @staticmethod
    def map_to_model(model: Type[Model]) -> RowMapper:
        """Row mapper turning a result set into instances of `model`."""
        return model.map_to

    # -- listeners -----------------------------------------------------------------

    def add_listener(self, event: str, listener: Listener) -> None:
        if not callable(listener):
            raise TypeError("Listener must be callable")
        with self._listeners_lock:
            self._listeners.setdefault(event, []).append(listener)

    def remove_listener(self, event: str, listener: Listener) -> None:
        with self._listeners_lock:
            listeners = self._listeners.get(event)
            if listeners and listener in listeners:
                listeners.remove(listener)

    def listeners(self, event: str) -> List[Listener]:
        with self._listeners_lock:
            return list(self._listeners.get(event, ()))

    def emit(self, event: str, payload: Any) -> None:
        for listener in self.listeners(event):
            listener(payload)

    def close(self) -> None:
        """Close the connection pool; the client is unusable afterwards."""
        self.connection_pool.close()


__all__ = ["Client", "Listener"]
