"""
Transactions and the shared-cache consistency protocol.

A transaction is bound to one execution context (by default the calling thread)
and owns a single pooled connection from its first statement until commit or
rollback. Models saved or deleted inside it are kept in the transaction's
`inserted`, `updated` and `deleted` overlays instead of touching the shared
cache, so nothing it does is visible to other contexts before commit.

Visibility of an entity key `k` when reading:

1. the active transaction's overlays, if they hold `k` (read-your-own-writes),
2. the shared cache, if it holds `k`,
3. the database; the fetched row is cached unless the active transaction has
   touched `k`, or a commit reached the cache after the select started.

`TransactionManager` is the only code that writes to the shared cache.
"""

from __future__ import annotations

import copy
import threading
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Hashable,
    Iterable,
    List,
    Optional,
    Tuple,
    TypedDict,
)

import psycopg
from psycopg import IsolationLevel

from pgmodel.cache import Cache
from pgmodel.domain.state import State
from pgmodel.errors import NoActiveTransactionError, StatementFailedError, error_reason
from pgmodel.utils.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - typing only
    from pgmodel.client import Client
    from pgmodel.model import Model

log = get_logger(__name__)

COMMIT_EVENT = "commit"


class CommitEvent(TypedDict):
    """Payload of the `commit` event, delivered once per commit."""

    inserted: Dict[str, "Model"]
    updated: Dict[str, "Model"]
    deleted: Dict[str, "Model"]


class TransactionBinding:
    """
    Map of execution context -> transaction.

    `context_key` identifies the calling context; it defaults to the thread
    identity. Runtimes that multiplex logical units of work on one thread pass
    their own key function.
    """

    def __init__(self, context_key: Optional[Callable[[], Hashable]] = None) -> None:
        self.context_key = context_key or threading.get_ident
        self._transactions: Dict[Hashable, "Transaction"] = {}
        self._lock = threading.Lock()

    def get(self) -> Optional["Transaction"]:
        key = self.context_key()
        with self._lock:
            return self._transactions.get(key)

    def bind(self, transaction: "Transaction") -> None:
        with self._lock:
            self._transactions[transaction.context] = transaction

    def unbind(self, transaction: "Transaction") -> None:
        with self._lock:
            if self._transactions.get(transaction.context) is transaction:
                del self._transactions[transaction.context]


class Transaction:
    """
    A unit of work owning one connection and three overlay maps.

    Do not create instances directly, use `Client.begin_transaction()`; commit
    and roll back through `Client.commit_transaction()` and
    `Client.abort_transaction()`.
    """

    def __init__(self, manager: "TransactionManager", context: Hashable) -> None:
        self.manager = manager
        self.context = context
        self.inserted: Dict[str, "Model"] = {}
        self.updated: Dict[str, "Model"] = {}
        self.deleted: Dict[str, "Model"] = {}
        self.keys: List[str] = []
        self._connection: Optional[psycopg.Connection] = None

    def __repr__(self) -> str:
        return (
            f"<Transaction ({len(self.inserted)} inserted, {len(self.updated)} updated, "
            f"{len(self.deleted)} deleted)>"
        )

    def get_connection(self) -> psycopg.Connection:
        """Return the transaction's connection, acquiring it on first use."""
        if self._connection is None:
            connection = self.manager.connection_pool.getconn()
            try:
                connection.autocommit = False
                connection.isolation_level = IsolationLevel.READ_COMMITTED
                connection.read_only = False
            except BaseException:
                self.manager.release(connection)
                raise
            self._connection = connection
            log.debug("Transaction connection acquired", extra={"transaction": repr(self)})
        return self._connection

    def _add(self, overlay: Dict[str, "Model"], model: "Model") -> None:
        key = model.key
        overlay[key] = model
        if key not in self.keys:
            self.keys.append(key)

    def add_inserted(self, model: "Model") -> None:
        self._add(self.inserted, model)

    def add_updated(self, model: "Model") -> None:
        # saving again a model inserted in this transaction is still an insert
        if model.key in self.inserted:
            self.inserted[model.key] = model
            return
        self._add(self.updated, model)

    def add_deleted(self, model: "Model") -> None:
        self._add(self.deleted, model)

    def contains_key(self, key: str) -> bool:
        return key in self.keys

    def pending_row(self, key: str) -> Optional[Dict[str, Any]]:
        """The uncommitted row for `key`, or None if it was deleted."""
        if key in self.deleted:
            return None
        model = self.inserted.get(key) or self.updated.get(key)
        return None if model is None else copy.deepcopy(model.data)

    def _end(self, action: str) -> None:
        connection = self._connection
        if connection is None:
            return
        try:
            getattr(connection, action)()
        except psycopg.Error as exc:
            log.error("Transaction %s failed: %s", action, error_reason(exc))
            raise StatementFailedError(action.upper(), reason=error_reason(exc)) from exc

    def _revert(self) -> None:
        # lowest precedence first: a model both inserted and deleted ends up NEW
        for model in self.deleted.values():
            model._state = State.CLEAN
        for model in self.updated.values():
            model._state = State.DIRTY
        for model in self.inserted.values():
            model._state = State.NEW

    def _close(self) -> None:
        self.manager.binding.unbind(self)
        connection, self._connection = self._connection, None
        if connection is not None:
            self.manager.release(connection)

    def _reset(self) -> None:
        self.inserted = {}
        self.updated = {}
        self.deleted = {}
        self.keys.clear()

    def commit(self) -> None:
        """
        Commit, publish the overlays to the shared cache and listeners, release.

        If the physical commit fails, model states are reverted as on rollback
        before the error propagates.
        """
        log.debug("Committing transaction", extra={"transaction": repr(self)})
        try:
            self._end("commit")
        except BaseException:
            self._revert()
            self._reset()
            self._close()
            raise
        inserted, updated, deleted = self.inserted, self.updated, self.deleted
        self._close()
        try:
            self.manager.publish(inserted, updated, deleted)
        finally:
            self._reset()

    def rollback(self) -> None:
        """
        Roll back and revert touched models: inserted ones become NEW, updated
        ones DIRTY and deleted ones CLEAN.
        """
        log.debug("Rolling back transaction", extra={"transaction": repr(self)})
        try:
            self._end("rollback")
        finally:
            self._revert()
            self._reset()
            self._close()


class TransactionManager:
    """
    Per-client transaction lifecycle plus the shared-cache protocol.

    Parameters
    ----------
    connection_pool
        Pool with `getconn()` / `putconn(connection)`.
    cache : Cache, optional
        Shared model cache.
    emitter : Client, optional
        Receives the `commit` event when it has listeners.
    context_key : callable, optional
        Execution-context identity, see `TransactionBinding`.
    """

    def __init__(
        self,
        connection_pool: Any,
        cache: Optional[Cache] = None,
        emitter: Optional["Client"] = None,
        context_key: Optional[Callable[[], Hashable]] = None,
    ) -> None:
        self.connection_pool = connection_pool
        self.cache = cache
        self.emitter = emitter
        self.binding = TransactionBinding(context_key)
        # bumped on every cache write made for saved or deleted models
        self._generation = 0
        self._cache_lock = threading.Lock()

    def begin(self) -> Transaction:
        """Return the context's transaction, creating and binding one if needed."""
        transaction = self.binding.get()
        if transaction is None:
            transaction = Transaction(self, self.binding.context_key())
            self.binding.bind(transaction)
            log.debug("Transaction started", extra={"context": str(transaction.context)})
        return transaction

    def current(self) -> Optional[Transaction]:
        return self.binding.get()

    def commit(self) -> None:
        transaction = self.current()
        if transaction is None:
            raise NoActiveTransactionError("No open transaction to commit")
        transaction.commit()

    def rollback(self) -> None:
        transaction = self.current()
        if transaction is None:
            raise NoActiveTransactionError("No open transaction to abort")
        transaction.rollback()

    def release(self, connection: psycopg.Connection) -> None:
        try:
            self.connection_pool.putconn(connection)
        except Exception:
            log.warning("Failed to return connection to the pool", exc_info=True)

    # -- shared cache protocol -------------------------------------------------

    def lookup(self, key: str) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """
        Resolve `key` without touching the database.

        Returns `(True, row)` when the transaction overlays or the cache are
        authoritative for `key` (`row` is None for a key deleted in the
        transaction) and `(False, None)` when the database must be asked.
        """
        transaction = self.current()
        if transaction is not None and transaction.contains_key(key):
            return True, transaction.pending_row(key)
        if self.cache is not None:
            row = self.cache.get(key)
            if row is not None:
                return True, row
        return False, None

    def generation(self) -> int:
        """Cache write counter; pass it to `remember` for rows read afterwards."""
        with self._cache_lock:
            return self._generation

    def remember(
        self, key: str, row: Dict[str, Any], since: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Store a freshly fetched row unless the transaction touched `key`;
        return the authoritative row.

        `since` is the `generation()` taken before the select ran. If a save or
        delete reached the cache in between, the row may predate it and is not
        stored.
        """
        transaction = self.current()
        if self.cache is None or (transaction is not None and transaction.contains_key(key)):
            return row
        with self._cache_lock:
            if since is not None and since != self._generation:
                return row
            cached = self.cache.get(key)
            if cached is not None:
                return cached
            self.cache.put(key, row)
        return row

    def _write(self, rows: Dict[str, "Model"], removed: Iterable[str]) -> None:
        if self.cache is None:
            return
        with self._cache_lock:
            self._generation += 1
            for key, model in rows.items():
                self.cache.put(key, model.data)
            for key in removed:
                self.cache.remove(key)

    def saved(self, model: "Model", inserted: bool) -> None:
        transaction = self.current()
        if transaction is not None:
            if inserted:
                transaction.add_inserted(model)
            else:
                transaction.add_updated(model)
            return
        key = model.key
        self._write({key: model}, ())
        if inserted:
            self.notify({key: model}, {}, {})
        else:
            self.notify({}, {key: model}, {})

    def deleted(self, model: "Model") -> None:
        transaction = self.current()
        if transaction is not None:
            transaction.add_deleted(model)
            return
        key = model.key
        self._write({}, (key,))
        self.notify({}, {}, {key: model})

    def publish(
        self,
        inserted: Dict[str, "Model"],
        updated: Dict[str, "Model"],
        deleted: Dict[str, "Model"],
    ) -> None:
        """Apply committed overlays to the shared cache and notify listeners."""
        self._write({**inserted, **updated}, deleted)
        self.notify(inserted, updated, deleted)

    def notify(
        self,
        inserted: Dict[str, "Model"],
        updated: Dict[str, "Model"],
        deleted: Dict[str, "Model"],
    ) -> None:
        if self.emitter is None or not self.emitter.listeners(COMMIT_EVENT):
            return
        self.emitter.emit(
            COMMIT_EVENT, CommitEvent(inserted=inserted, updated=updated, deleted=deleted)
        )


__all__ = [
    "COMMIT_EVENT",
    "CommitEvent",
    "Transaction",
    "TransactionBinding",
    "TransactionManager",
]
