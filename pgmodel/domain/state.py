"""Lifecycle states of a model instance."""
from __future__ import annotations

from enum import Enum


class State(str, Enum):
    """
    NEW --save()--> CLEAN --set--> DIRTY --save()--> CLEAN
    CLEAN/DIRTY --delete()--> DELETED
    """

    NEW = "new"
    CLEAN = "clean"
    DIRTY = "dirty"
    DELETED = "deleted"


__all__ = ["State"]
