"""Domain entities for the catalog hierarchy."""

from .core import (
    Anomaly,
    AnomalyKind,
    CategoryNode,
    DomainEvent,
    EventType,
    MutationRecord,
    MutationState,
    OrphanResolution,
    RepairReport,
)

__all__ = [
    "CategoryNode",
    "Anomaly",
    "AnomalyKind",
    "RepairReport",
    "DomainEvent",
    "EventType",
    "OrphanResolution",
    "MutationState",
    "MutationRecord",
]
