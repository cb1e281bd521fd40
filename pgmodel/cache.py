"""
Process-wide model data cache.

A bounded key -> row map with least-recently-used eviction, safe to share
between threads. Create one instance per process and hand it to every `Client`
that should share cached rows. Only the transaction layer writes to it.
"""

from __future__ import annotations

import copy
import threading
from collections import OrderedDict
from typing import Any, Dict, Optional

DEFAULT_CAPACITY = 1000


class Cache:
    """
    Thread-safe LRU cache of model rows keyed by entity key (`Type#id`).

    Rows are deep-copied on the way in and out, so nested values (json
    documents, arrays) are never shared with models.

    Parameters
    ----------
    capacity : int
        Maximum number of entries; anything not a positive integer falls back
        to 1000.
    """

    def __init__(self, capacity: Any = DEFAULT_CAPACITY) -> None:
        try:
            capacity = int(capacity)
        except (TypeError, ValueError, OverflowError):
            capacity = DEFAULT_CAPACITY
        self.capacity = capacity if capacity > 0 else DEFAULT_CAPACITY
        self._entries: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<Cache {len(self)}/{self.capacity}>"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._entries.get(key)
            if row is None:
                return None
            self._entries.move_to_end(key)
            return copy.deepcopy(row)

    def put(self, key: str, row: Dict[str, Any]) -> None:
        with self._lock:
            self._entries[key] = copy.deepcopy(row)
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def contains_key(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    __contains__ = contains_key

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def new_cache(size: Any = DEFAULT_CAPACITY) -> Cache:
    """Create a model cache; hand the same instance to every client that should share it."""
    return Cache(size)


__all__ = ["Cache", "DEFAULT_CAPACITY", "new_cache"]
