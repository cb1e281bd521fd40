"""
Exception taxonomy for pgmodel.

Every error raised by the library derives from `PgModelError`. Backend errors
are wrapped exactly once, at the statement boundary, into `StatementFailedError`
which keeps the original psycopg exception as its `__cause__`.
"""

from __future__ import annotations

from typing import Optional, Sequence


class PgModelError(Exception):
    """Base class of all pgmodel errors."""


class UnknownTypeError(PgModelError, LookupError):
    """Raised when no codec is registered for a column type name."""

    def __init__(self, type_name: str) -> None:
        super().__init__(f"Unknown data type '{type_name}'")
        self.type_name = type_name


class TemplateSyntaxError(PgModelError, ValueError):
    """Raised when a `#{` placeholder is never closed."""

    def __init__(self, template: str, position: int) -> None:
        super().__init__(f"Unterminated parameter placeholder at position {position}")
        self.template = template
        self.position = position


class MissingParameterError(PgModelError, KeyError):
    """A named placeholder has no value in the bound parameters."""

    def __init__(self, name: str, sql: Optional[str] = None) -> None:
        super().__init__(name)
        self.name = name
        self.sql = sql

    def __str__(self) -> str:
        return f"Missing required parameter '{self.name}'"


class StatementFailedError(PgModelError):
    """
    The backend rejected a statement.

    Only the SQL text and the parameter names are kept, parameter values never
    end up in the message.
    """

    def __init__(self, sql: str, param_names: Sequence[str] = (), reason: str = "") -> None:
        names = ", ".join(param_names) if param_names else "(no params)"
        message = f"Statement '{sql}' failed [params: {names}]"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.sql = sql
        self.param_names = list(param_names)


class NoActiveTransactionError(PgModelError, RuntimeError):
    """Commit or rollback requested without a bound transaction."""


class MappingError(PgModelError, ValueError):
    """Invalid mapping descriptor or unknown model property."""


def error_reason(exc: BaseException) -> str:
    """
    Primary message of a backend error.

    The DETAIL part of a server error may quote row values, so only the
    primary message is kept.
    """
    diag = getattr(exc, "diag", None)
    primary = getattr(diag, "message_primary", None)
    if primary:
        return primary
    lines = str(exc).strip().splitlines()
    return lines[0] if lines else type(exc).__name__


__all__ = [
    "PgModelError",
    "UnknownTypeError",
    "TemplateSyntaxError",
    "MissingParameterError",
    "StatementFailedError",
    "NoActiveTransactionError",
    "MappingError",
    "error_reason",
]
