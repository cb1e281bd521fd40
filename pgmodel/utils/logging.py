"""
Logging helpers for pgmodel.

Library modules only call `get_logger(__name__)`; all of them live below the
`pgmodel` logger, which carries a `NullHandler` so an unconfigured application
stays silent. Statements are logged at DEBUG by `pgmodel.sqltemplate` with the
parameter names (never the values) in the record's extra fields.

`configure_logging()` is what the CLI uses, and applications may call it too:

    from pgmodel.utils.logging import configure_logging, get_logger

    configure_logging(level="INFO", json_logs=True, log_sql=True)
    log = get_logger(__name__)
    log.info("Model table initialised", extra={"table": "public.t_author"})
"""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LIBRARY_LOGGER = "pgmodel"
STATEMENT_LOGGER = "pgmodel.sqltemplate"

# attributes every LogRecord carries; anything else came in through `extra=`
_RECORD_FIELDS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}

logging.getLogger(LIBRARY_LOGGER).addHandler(logging.NullHandler())


def _json_formatter(record: logging.LogRecord) -> str:
    """Render a log record as a single JSON line."""
    payload: Dict[str, Any] = {
        "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
    }
    payload.update(
        (key, value)
        for key, value in record.__dict__.items()
        if key not in _RECORD_FIELDS and key != "extra"
    )
    nested = getattr(record, "extra", None)
    if isinstance(nested, dict):
        payload.update(nested)
    if record.exc_info:
        payload["exc_info"] = logging.Formatter().formatException(record.exc_info)
    if record.stack_info:
        payload["stack_info"] = record.stack_info
    return json.dumps(payload, default=str)


class JsonFormatter(logging.Formatter):
    """Formats records as JSON, promoting `extra=` fields to top-level keys."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        return _json_formatter(record)


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_sql: bool = False,
) -> None:
    """
    Configure root logging for an application using pgmodel.

    Parameters
    ----------
    level : str
        Root logging level name ("DEBUG", "INFO", ...).
    json_logs : bool
        Emit one JSON object per record instead of the console format.
    log_sql : bool
        Log every executed statement, whatever `level` is.
    """
    formatter = "json" if json_logs else "console"
    loggers: Dict[str, Any] = {}
    if log_sql:
        loggers[STATEMENT_LOGGER] = {"level": "DEBUG"}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "console": {
                    "format": "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
                "json": {"()": JsonFormatter},
            },
            "handlers": {
                "stderr": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stderr",
                    "formatter": formatter,
                }
            },
            "loggers": loggers,
            "root": {"handlers": ["stderr"], "level": level},
        }
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "JsonFormatter", "LIBRARY_LOGGER", "STATEMENT_LOGGER"]
