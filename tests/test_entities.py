"""Unit tests for catalog.entities.core."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from catalog.entities import (
    Anomaly,
    AnomalyKind,
    CategoryNode,
    DomainEvent,
    EventType,
    MutationRecord,
    MutationState,
)


def test_category_node_normalizes_fields() -> None:
    node = CategoryNode(
        id="  phones ",
        parent_id="",
        name=" Phones ",
        materialized_path="phones",
        depth=0,
    )
    assert node.id == "phones"
    assert node.name == "Phones"
    assert node.parent_id is None
    assert node.is_root
    assert node.sort_order == 0


@pytest.mark.parametrize(
    "overrides",
    [
        {"depth": -1},
        {"sort_order": -1},
        {"name": "   "},
        {"id": ""},
    ],
)
def test_category_node_rejects_invalid_values(overrides: dict) -> None:
    payload = {"id": "a", "name": "A", "materialized_path": "a", "depth": 0}
    payload.update(overrides)
    with pytest.raises(ValidationError):
        CategoryNode(**payload)


def test_category_node_accepts_drifted_paths_for_repair() -> None:
    node = CategoryNode(id="x", parent_id="p", name="X", materialized_path="wrong//path", depth=7)
    assert node.materialized_path == "wrong//path"
    assert not node.is_root


def test_anomaly_repairability() -> None:
    orphan = Anomaly(kind=AnomalyKind.ORPHAN_NODE, node_id="n", parent_id="gone")
    mismatch = Anomaly(kind=AnomalyKind.PATH_MISMATCH, node_id="n", expected="a/n", actual="b/n")
    uncomputable = Anomaly(kind=AnomalyKind.PATH_MISMATCH, node_id="n", actual="b/n")
    collision = Anomaly(kind=AnomalyKind.SORT_ORDER_COLLISION, node_id="n")

    assert not orphan.auto_repairable
    assert mismatch.auto_repairable
    assert not uncomputable.auto_repairable
    assert collision.auto_repairable
    with pytest.raises(ValidationError):
        orphan.node_id = "other"  # type: ignore[misc]


def test_domain_event_defaults() -> None:
    event = DomainEvent(event_type=EventType.NODE_CREATED, node_ids=["a"], new_path="a")
    assert event.old_path is None
    assert event.payload == {}
    assert event.occurred_at.tzinfo is not None


def test_mutation_record_follows_state_machine() -> None:
    record = MutationRecord(operation="move", node_ids=["phones"])
    for state in (
        MutationState.LOCKED,
        MutationState.APPLYING,
        MutationState.INVALIDATING,
        MutationState.COMMITTED,
    ):
        record.advance(state)

    assert record.finished_at is not None
    payload = record.to_dict()
    assert payload["state"] == "committed"
    assert payload["history"] == ["validating", "locked", "applying", "invalidating", "committed"]


def test_mutation_record_rejects_illegal_transitions() -> None:
    record = MutationRecord(operation="create")
    with pytest.raises(RuntimeError):
        record.advance(MutationState.COMMITTED)

    record.reject(ValueError("bad name"))
    assert record.state is MutationState.REJECTED
    assert record.error == "ValueError: bad name"
    with pytest.raises(RuntimeError):
        record.advance(MutationState.LOCKED)
