"""
Database connection factory utilities for pgmodel.

Provides the process-wide psycopg connection pool handed to `Client`, with
lifecycle management: the PoolManager singleton closes the pool on
application exit. Every connection the pool opens is configured so the codec
layer sees `interval` values as text.

Waiting for a new pool to open its first connections is retried with tenacity.
"""

from __future__ import annotations

import atexit
import threading
from typing import Optional

from psycopg import Connection
from psycopg.types.string import TextLoader
from psycopg_pool import ConnectionPool, PoolTimeout
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from pgmodel.config import get_settings
from pgmodel.utils.logging import get_logger

log = get_logger(__name__)


def dsn() -> str:
    """Compose a DSN string from settings."""
    settings = get_settings()
    return (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


def configure_connection(connection: Connection) -> None:
    """
    Per-connection setup run by the pool.

    psycopg loads `interval` into `timedelta`, which cannot hold months or
    years; loading it as text leaves the conversion to the interval codec.
    """
    connection.adapters.register_loader("interval", TextLoader)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(PoolTimeout),
    reraise=True,
)
def _wait_ready(pool: ConnectionPool, timeout: float) -> None:
    pool.wait(timeout=timeout)


def new_pool(
    conninfo: Optional[str] = None,
    min_size: Optional[int] = None,
    max_size: Optional[int] = None,
    timeout: Optional[float] = None,
) -> ConnectionPool:
    """
    Open a connection pool and wait until it holds `min_size` connections.

    Parameters default to the values from settings.

    Raises
    ------
    psycopg_pool.PoolTimeout
        If the pool cannot fill up after all retry attempts.
    """
    settings = get_settings()
    timeout = settings.pool_timeout if timeout is None else timeout
    pool = ConnectionPool(
        conninfo=conninfo or dsn(),
        min_size=settings.pool_min_size if min_size is None else min_size,
        max_size=settings.pool_max_size if max_size is None else max_size,
        timeout=timeout,
        kwargs=settings.connection_kwargs(),
        configure=configure_connection,
        open=True,
    )
    try:
        _wait_ready(pool, timeout)
    except BaseException:
        pool.close()
        raise
    log.debug("Connection pool ready", extra={"min_size": pool.min_size, "max_size": pool.max_size})
    return pool


class PoolManager:
    """
    Thread-safe singleton for the process-wide connection pool.

    Handles lifecycle management with automatic cleanup via atexit hook.
    """

    _instance: Optional["PoolManager"] = None
    _lock = threading.RLock()

    def __new__(cls) -> "PoolManager":
        """Create or return the singleton instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._pool = None
                atexit.register(cls._instance.close_all)
            return cls._instance

    def get_pool(self, min_size: Optional[int] = None, max_size: Optional[int] = None) -> ConnectionPool:
        """
        Get or create the connection pool.

        Parameters
        ----------
        min_size : int, optional
            Minimum number of idle connections to keep.
        max_size : int, optional
            Maximum total connections in the pool.

        Returns
        -------
        ConnectionPool
            The managed pool instance.
        """
        with self._lock:
            if self._pool is None:
                self._pool = new_pool(min_size=min_size, max_size=max_size)
            return self._pool

    def close_all(self) -> None:
        """
        Close the managed pool.

        This is called automatically on exit via atexit hook.
        """
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            try:
                pool.close()
            except Exception:
                log.warning("Failed to close connection pool", exc_info=True)


def get_pool(min_size: Optional[int] = None, max_size: Optional[int] = None) -> ConnectionPool:
    """Get or create the process-wide pool via PoolManager."""
    return PoolManager().get_pool(min_size=min_size, max_size=max_size)


__all__ = [
    "PoolManager",
    "configure_connection",
    "dsn",
    "get_pool",
    "new_pool",
]
