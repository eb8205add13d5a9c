"""Top-level package for the catalog category hierarchy."""

from __future__ import annotations

from importlib.metadata import version

try:
    __version__ = version("catalog-hierarchy")
except Exception:  # pragma: no cover - fallback during local development
    __version__ = "0.1.0"

from .config.settings import Settings, get_settings
from .entities import (
    Anomaly,
    AnomalyKind,
    CategoryNode,
    DomainEvent,
    EventType,
    OrphanResolution,
    RepairReport,
)

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "CategoryNode",
    "Anomaly",
    "AnomalyKind",
    "RepairReport",
    "DomainEvent",
    "EventType",
    "OrphanResolution",
]
