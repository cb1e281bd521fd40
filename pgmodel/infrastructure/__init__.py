"""
Infrastructure package for pgmodel.

Centralizes database connectivity concerns: the connection pool factory and
the driver boundary used to describe statements and result columns.
"""

from pgmodel.infrastructure.db_factory import (
    PoolManager,
    configure_connection,
    dsn,
    get_pool,
    new_pool,
)

__all__ = [
    "PoolManager",
    "configure_connection",
    "dsn",
    "get_pool",
    "new_pool",
]
