"""Centralised counter registry for hierarchy observability."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from threading import RLock
from typing import Any, Dict, Mapping

from .determinism import stable_sorted

COMPONENT_COUNTERS: Mapping[str, tuple[str, ...]] = {
    "Traversal": ("queries", "cache_hits", "cache_misses"),
    "Mutations": (
        "created",
        "renamed",
        "moved",
        "reordered",
        "deleted",
        "merged",
        "repaired",
        "orphans_resolved",
        "committed",
        "rejected",
        "nodes_rewritten",
        "rejected_by_error",
    ),
    "Consistency": ("nodes_checked", "anomalies", "repaired", "unrepairable"),
}

# Counters that support labelled increments (e.g. rejection breakdowns).
_LABELLED_COUNTERS: Mapping[str, frozenset[str]] = {
    "Mutations": frozenset({"rejected_by_error"}),
}


@dataclass(frozen=True)
class CounterSnapshot:
    """Immutable snapshot of the registry state."""

    counters: Mapping[str, Mapping[str, Any]]


class CounterRegistry:
    """Thread-safe registry for canonical hierarchy counters."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._data: Dict[str, Dict[str, Any]] = {
            component: {counter: 0 for counter in counters}
            for component, counters in COMPONENT_COUNTERS.items()
        }
        for component, labelled in _LABELLED_COUNTERS.items():
            for counter in labelled:
                self._data[component][counter] = Counter()

    def increment(
        self,
        component: str,
        counter: str,
        value: int = 1,
        *,
        label: str | None = None,
    ) -> None:
        """Increment *counter* within *component* by *value*.

        When *label* is provided the counter must be configured to accept
        labelled values (e.g. ``rejected_by_error``).
        """

        if component not in COMPONENT_COUNTERS:
            raise KeyError(f"Unknown observability component '{component}'")
        if counter not in COMPONENT_COUNTERS[component]:
            raise KeyError(f"Unknown counter '{counter}' for component '{component}'")

        with self._lock:
            slot = self._data[component][counter]
            if isinstance(slot, Counter):
                if label is None:
                    raise ValueError(f"Counter '{counter}' requires a label but none was provided")
                slot[label] += value
            else:
                if label is not None:
                    raise ValueError(f"Counter '{counter}' does not support labelled increments")
                self._data[component][counter] = int(slot) + int(value)

    def get(self, component: str, counter: str) -> Any:
        with self._lock:
            value = self._data[component][counter]
            return dict(value) if isinstance(value, Counter) else int(value)

    def snapshot(self) -> CounterSnapshot:
        """Return an immutable snapshot of the registry state."""

        with self._lock:
            frozen: Dict[str, Dict[str, Any]] = {}
            for component in stable_sorted(self._data):
                counters = {}
                for name in COMPONENT_COUNTERS[component]:
                    value = self._data[component][name]
                    if isinstance(value, Counter):
                        counters[name] = {label: value[label] for label in stable_sorted(value)}
                    else:
                        counters[name] = int(value)
                frozen[component] = counters
        return CounterSnapshot(counters=frozen)

    def as_dict(self) -> Dict[str, Any]:
        """Convenience: return the snapshot as a plain dictionary."""

        return {component: dict(counters) for component, counters in self.snapshot().counters.items()}

    def reset(self) -> None:
        """Clear all counters back to their initial state."""

        with self._lock:
            for component, counters in COMPONENT_COUNTERS.items():
                for counter in counters:
                    if isinstance(self._data[component][counter], Counter):
                        self._data[component][counter].clear()
                    else:
                        self._data[component][counter] = 0

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"CounterRegistry(counters={self._data!r})"
