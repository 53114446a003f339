from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Hashable
from dataclasses import dataclass
from typing import Any, Protocol


class _Miss:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISS"


MISS: Any = _Miss()


@dataclass(frozen=True, slots=True)
class CacheKey:
    """Address of a cached value: the aggregate type it summarizes plus a key within that type."""

    entity_type: str
    name: str
    arg: Hashable = None

    def __str__(self) -> str:
        if self.arg is None:
            return f"{self.entity_type}:{self.name}"
        return f"{self.entity_type}:{self.name}:{self.arg}"


class Cache(Protocol):
    def get(self, key: CacheKey) -> Any: ...

    def put(self, key: CacheKey, value: Any) -> None: ...

    def evict_all_for_type(self, entity_type: str) -> int: ...


class InMemoryCache:
    """Process-local cache partitioned by aggregate type. Entries never expire on their own."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[CacheKey, Any]] = defaultdict(dict)
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Any:
        with self._lock:
            return self._entries.get(key.entity_type, {}).get(key, MISS)

    def put(self, key: CacheKey, value: Any) -> None:
        with self._lock:
            self._entries[key.entity_type][key] = value

    def evict_all_for_type(self, entity_type: str) -> int:
        with self._lock:
            evicted = self._entries.pop(entity_type, {})
        return len(evicted)

    def keys_for_type(self, entity_type: str) -> list[CacheKey]:
        with self._lock:
            return list(self._entries.get(entity_type, {}).keys())

    def clear(self) -> int:
        with self._lock:
            count = sum(len(entries) for entries in self._entries.values())
            self._entries.clear()
        return count
