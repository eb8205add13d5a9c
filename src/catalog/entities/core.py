"""Core domain entities for the category hierarchy."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CategoryNode(BaseModel):
    """One category in the forest, addressed by id and materialized path.

    ``materialized_path`` and ``depth`` are derived values owned by the
    hierarchy manager. The model deliberately accepts drifted values so that
    corrupted records can still be loaded, validated and repaired.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(..., min_length=1, description="Opaque, immutable node identifier")
    parent_id: str | None = Field(default=None, description="Parent node id; None for roots")
    name: str = Field(..., min_length=1, description="Display label the path segment derives from")
    materialized_path: str = Field(..., description="Delimited root-to-node segment chain")
    depth: int = Field(..., ge=0, description="Number of ancestors; 0 for roots")
    sort_order: int = Field(default=0, ge=0, description="Position among siblings")

    @field_validator("id", "name")
    @classmethod
    def _strip(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("value must contain non-whitespace characters")
        return cleaned

    @field_validator("parent_id")
    @classmethod
    def _normalize_parent(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class AnomalyKind(str, Enum):
    """Closed set of consistency findings produced by the validator."""

    PATH_MISMATCH = "path_mismatch"
    DEPTH_MISMATCH = "depth_mismatch"
    ORPHAN_NODE = "orphan_node"
    SORT_ORDER_COLLISION = "sort_order_collision"


class Anomaly(BaseModel):
    """Deviation between a stored node and the invariant it should satisfy."""

    model_config = ConfigDict(frozen=True)

    kind: AnomalyKind
    node_id: str
    expected: str | None = None
    actual: str | None = None
    parent_id: str | None = None
    detail: str | None = None

    @property
    def auto_repairable(self) -> bool:
        if self.kind is AnomalyKind.ORPHAN_NODE:
            return False
        if self.kind is AnomalyKind.SORT_ORDER_COLLISION:
            return True
        return self.expected is not None


class RepairReport(BaseModel):
    """Outcome of a repair pass."""

    repaired_count: int = Field(default=0, ge=0)
    repaired: List[Anomaly] = Field(default_factory=list)
    unrepairable: List[Anomaly] = Field(default_factory=list)
    rewritten_node_ids: List[str] = Field(default_factory=list)
    rewritten_paths: List[str] = Field(
        default_factory=list,
        description="Old and new paths touched by the repair, used for cache invalidation.",
    )
    completed_at: datetime = Field(default_factory=_utcnow)


class EventType(str, Enum):
    """Domain events emitted after a mutation commits."""

    NODE_CREATED = "node_created"
    NODE_RENAMED = "node_renamed"
    NODE_MOVED = "node_moved"
    NODE_DELETED = "node_deleted"
    CHILDREN_REORDERED = "children_reordered"
    FOREST_REPAIRED = "forest_repaired"
    ORPHAN_RESOLVED = "orphan_resolved"
    CATEGORIES_MERGED = "categories_merged"


class DomainEvent(BaseModel):
    """Notification handed to the external event publisher."""

    model_config = ConfigDict(frozen=True)

    event_type: EventType
    node_ids: List[str] = Field(default_factory=list)
    old_path: str | None = None
    new_path: str | None = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)


class OrphanResolution(str, Enum):
    """Operator decisions available for an orphaned node."""

    REPARENT = "reparent"
    DELETE = "delete"


class MutationState(str, Enum):
    """Lifecycle of a single hierarchy mutation."""

    VALIDATING = "validating"
    LOCKED = "locked"
    APPLYING = "applying"
    INVALIDATING = "invalidating"
    COMMITTED = "committed"
    REJECTED = "rejected"


_TRANSITIONS: Dict[MutationState, frozenset[MutationState]] = {
    MutationState.VALIDATING: frozenset({MutationState.LOCKED, MutationState.REJECTED}),
    MutationState.LOCKED: frozenset({MutationState.APPLYING, MutationState.REJECTED}),
    MutationState.APPLYING: frozenset({MutationState.INVALIDATING, MutationState.REJECTED}),
    MutationState.INVALIDATING: frozenset({MutationState.COMMITTED}),
    MutationState.COMMITTED: frozenset(),
    MutationState.REJECTED: frozenset(),
}


@dataclass(slots=True)
class MutationRecord:
    """Journal entry tracking a mutation through its state machine."""

    operation: str
    node_ids: List[str] = field(default_factory=list)
    state: MutationState = MutationState.VALIDATING
    error: str | None = None
    rewritten: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None
    history: List[MutationState] = field(default_factory=lambda: [MutationState.VALIDATING])

    def advance(self, state: MutationState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal mutation transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        if state in (MutationState.COMMITTED, MutationState.REJECTED):
            self.finished_at = _utcnow()

    def reject(self, error: BaseException) -> None:
        self.error = f"{type(error).__name__}: {error}"
        self.advance(MutationState.REJECTED)

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "node_ids": list(self.node_ids),
            "state": self.state.value,
            "error": self.error,
            "rewritten": self.rewritten,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "history": [state.value for state in self.history],
        }


__all__ = [
    "CategoryNode",
    "AnomalyKind",
    "Anomaly",
    "RepairReport",
    "EventType",
    "DomainEvent",
    "OrphanResolution",
    "MutationState",
    "MutationRecord",
]
