"""
Cross-cutting helpers for pgmodel.

Keep this package lightweight and free of mapping or database logic.
"""

from pgmodel.utils.logging import configure_logging, get_logger

__all__ = [
    "configure_logging",
    "get_logger",
]
