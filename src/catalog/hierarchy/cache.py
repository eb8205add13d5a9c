"""Generation-guarded TTL cache for traversal results."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Tuple

from catalog.utils.logging import get_logger

from .codec import DEFAULT_CODEC, PathCodec


@dataclass(frozen=True)
class CacheKey:
    """Identity of a cached traversal query."""

    operation: str
    node_id: str | None = None
    path: str | None = None
    options: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def build(cls, operation: str, node_id: str | None = None, path: str | None = None, **options: Any) -> "CacheKey":
        return cls(operation, node_id, path, tuple(sorted(options.items())))


@dataclass
class _Entry:
    value: Any
    scope: str
    stored_at: float


class TraversalCache:
    """Memoises traversal results keyed by :class:`CacheKey`.

    Every entry records the path scope its answer depends on. Invalidating a
    mutated path drops every entry whose scope overlaps it and bumps the
    generation; :meth:`put` refuses values computed against an older
    generation so a read racing a mutation never repopulates stale data.
    """

    def __init__(
        self,
        codec: PathCodec = DEFAULT_CODEC,
        *,
        ttl_seconds: float = 300.0,
        max_entries: int = 10_000,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._codec = codec
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.enabled = enabled
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: "OrderedDict[CacheKey, _Entry]" = OrderedDict()
        self._generation = 0
        self._stats = {"hits": 0, "misses": 0, "invalidated": 0, "stale_writes": 0}
        self._logger = get_logger(component="traversal_cache")

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: CacheKey) -> Any | None:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None
            if self._clock() - entry.stored_at >= self.ttl_seconds:
                del self._entries[key]
                self._stats["misses"] += 1
                return None
            self._entries.move_to_end(key)
            self._stats["hits"] += 1
            return entry.value

    def put(self, key: CacheKey, value: Any, *, scope: str, generation: int) -> bool:
        """Store *value* unless an invalidation happened after *generation* was read."""

        if not self.enabled:
            return False
        with self._lock:
            if generation != self._generation:
                self._stats["stale_writes"] += 1
                return False
            self._entries[key] = _Entry(value=value, scope=scope, stored_at=self._clock())
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
            return True

    def invalidate(self, paths: Iterable[str]) -> int:
        """Drop entries overlapping any of *paths*; always advances the generation."""

        targets = list(dict.fromkeys(paths))
        with self._lock:
            self._generation += 1
            doomed = [
                key
                for key, entry in self._entries.items()
                if any(self._codec.overlaps(entry.scope, target) for target in targets)
            ]
            for key in doomed:
                del self._entries[key]
            self._stats["invalidated"] += len(doomed)
        if doomed:
            self._logger.debug("Invalidated cache entries", paths=targets, dropped=len(doomed))
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)


__all__ = ["CacheKey", "TraversalCache"]
