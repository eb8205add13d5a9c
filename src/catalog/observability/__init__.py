"""Observability infrastructure for the catalog hierarchy."""
from __future__ import annotations

from .determinism import canonical_json, stable_hash, stable_sorted
from .registry import COMPONENT_COUNTERS, CounterRegistry, CounterSnapshot

__all__ = [
    "CounterRegistry",
    "CounterSnapshot",
    "COMPONENT_COUNTERS",
    "canonical_json",
    "stable_hash",
    "stable_sorted",
]
