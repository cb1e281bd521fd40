"""
pgmodel - a small object mapper for PostgreSQL.

Models are defined from a mapping of named properties to table columns and
persisted through SQL templates with named `#{param}` placeholders. The
package provides:

- A codec registry converting between PostgreSQL types and Python values
- SQL templates with server-described parameter types
- Models with a NEW / CLEAN / DIRTY / DELETED lifecycle
- Per-context transactions kept consistent with a shared LRU model cache
- Commit events for cache invalidation across processes
- Schema helpers to create and drop mapped tables
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from pgmodel.cache import Cache, new_cache
from pgmodel.client import Client
from pgmodel.codecs import ColumnType, CodecRegistry, lookup, register
from pgmodel.config import Settings, get_settings
from pgmodel.domain.mapping import Mapping, load_mapping
from pgmodel.domain.state import State
from pgmodel.errors import (
    MappingError,
    MissingParameterError,
    NoActiveTransactionError,
    PgModelError,
    StatementFailedError,
    TemplateSyntaxError,
    UnknownTypeError,
)
from pgmodel.model import Model
from pgmodel.sqltemplate import SqlTemplate, build, parse
from pgmodel.transaction import COMMIT_EVENT, CommitEvent, Transaction
from pgmodel.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Client and models
    "Client",
    "Model",
    "State",
    "Mapping",
    "load_mapping",
    # Templates and codecs
    "SqlTemplate",
    "build",
    "parse",
    "ColumnType",
    "CodecRegistry",
    "lookup",
    "register",
    # Cache and transactions
    "Cache",
    "new_cache",
    "Transaction",
    "CommitEvent",
    "COMMIT_EVENT",
    # Errors
    "PgModelError",
    "UnknownTypeError",
    "TemplateSyntaxError",
    "MissingParameterError",
    "StatementFailedError",
    "NoActiveTransactionError",
    "MappingError",
    # Configuration and logging
    "Settings",
    "get_settings",
    "configure_logging",
    "get_logger",
]
