from __future__ import annotations

import pytest

from catalog.entities.core import AnomalyKind, CategoryNode, EventType, OrphanResolution
from catalog.hierarchy import (
    ConsistencyValidator,
    Deadline,
    HierarchyManager,
    InMemoryEventPublisher,
    InMemoryTreeStore,
    PathRepairer,
)
from catalog.hierarchy.errors import (
    CyclicMoveError,
    DeadlineExceededError,
    HierarchyValidationError,
    NodeHasChildrenError,
)


def make_node(
    node_id: str,
    parent_id: str | None,
    path: str,
    *,
    depth: int | None = None,
    name: str | None = None,
    sort_order: int = 0,
) -> CategoryNode:
    return CategoryNode(
        id=node_id,
        parent_id=parent_id,
        name=name or node_id.upper(),
        materialized_path=path,
        depth=path.count("/") if depth is None else depth,
        sort_order=sort_order,
    )


def _kinds(anomalies):
    return [(anomaly.kind, anomaly.node_id) for anomaly in anomalies]


def _validator(*nodes: CategoryNode) -> ConsistencyValidator:
    return ConsistencyValidator(InMemoryTreeStore(nodes))


# ----------------------------------------------------------------------
# Detection
# ----------------------------------------------------------------------
def test_consistent_forest_has_no_anomalies(manager, catalog):
    assert manager.validate_forest() == []
    report = manager.consistency_report()
    assert report.passed
    assert report.statistics["node_count"] == 6


def test_detects_path_mismatch():
    validator = _validator(make_node("a", None, "a"), make_node("b", "a", "x/b"))

    [anomaly] = validator.validate_forest()
    assert anomaly.kind is AnomalyKind.PATH_MISMATCH
    assert anomaly.node_id == "b"
    assert anomaly.expected == "a/b"
    assert anomaly.actual == "x/b"
    assert anomaly.auto_repairable


def test_detects_depth_mismatch():
    validator = _validator(make_node("a", None, "a"), make_node("b", "a", "a/b", depth=3))

    [anomaly] = validator.validate_forest()
    assert anomaly.kind is AnomalyKind.DEPTH_MISMATCH
    assert (anomaly.expected, anomaly.actual) == ("1", "3")


def test_malformed_path_is_compared_with_parent_chain():
    validator = _validator(make_node("a", None, "a"), make_node("b", "a", "a//b", depth=4))

    assert _kinds(validator.validate_forest()) == [
        (AnomalyKind.PATH_MISMATCH, "b"),
        (AnomalyKind.DEPTH_MISMATCH, "b"),
    ]


def test_uncomputable_expected_path_is_unrepairable():
    store = InMemoryTreeStore(
        [make_node("q", None, "q", name="???"), make_node("c", "q", "q/c")]
    )
    anomalies = ConsistencyValidator(store).validate_forest()

    assert _kinds(anomalies) == [(AnomalyKind.PATH_MISMATCH, "q"), (AnomalyKind.PATH_MISMATCH, "c")]
    assert all(anomaly.expected is None for anomaly in anomalies)

    report = PathRepairer(store).repair()
    assert report.repaired_count == 0
    assert len(report.unrepairable) == 2
    assert store.get("c").materialized_path == "q/c"


def test_missing_parent_makes_an_orphan(manager, catalog, store):
    with store.transaction() as txn:
        txn.delete("phones")

    anomalies = manager.validate_forest()

    assert _kinds(anomalies) == [(AnomalyKind.ORPHAN_NODE, "smartphones")]
    assert anomalies[0].parent_id == "phones"
    report = manager.repair()
    assert report.repaired_count == 0
    assert _kinds(report.unrepairable) == [(AnomalyKind.ORPHAN_NODE, "smartphones")]
    assert store.get("smartphones").materialized_path == "electronics/phones/smartphones"


def test_orphan_subtree_is_checked_relative_to_orphan():
    validator = _validator(
        make_node("s", "gone", "e/p/s"),
        make_node("c", "s", "e/p/s/c"),
        make_node("d", "s", "x/d", sort_order=1),
    )

    anomalies = validator.validate_forest()

    assert _kinds(anomalies) == [(AnomalyKind.ORPHAN_NODE, "s"), (AnomalyKind.PATH_MISMATCH, "d")]
    assert anomalies[1].expected == "e/p/s/d"


def test_parent_cycle_marks_members_as_orphans():
    validator = _validator(make_node("x", "y", "x"), make_node("y", "x", "x/y"))

    assert sorted(_kinds(validator.validate_forest())) == [
        (AnomalyKind.ORPHAN_NODE, "x"),
        (AnomalyKind.ORPHAN_NODE, "y"),
    ]


def test_sort_order_collision_reported_once_per_group():
    validator = _validator(
        make_node("a", None, "a"),
        make_node("b", "a", "a/b"),
        make_node("c", "a", "a/c"),
        make_node("d", "a", "a/d", sort_order=1),
    )

    [anomaly] = validator.validate_forest()
    assert anomaly.kind is AnomalyKind.SORT_ORDER_COLLISION
    assert anomaly.node_id == "b"
    assert anomaly.actual == "b,c"
    assert anomaly.parent_id == "a"


def test_report_serializes_counts():
    validator = _validator(make_node("a", None, "a"), make_node("b", "a", "x/b"))

    payload = validator.report().to_dict()

    assert payload["passed"] is False
    assert payload["counts_by_kind"] == {
        "path_mismatch": 1,
        "depth_mismatch": 0,
        "orphan_node": 0,
        "sort_order_collision": 0,
    }
    assert payload["anomalies"][0]["kind"] == "path_mismatch"


# ----------------------------------------------------------------------
# Repair
# ----------------------------------------------------------------------
@pytest.fixture()
def drifted() -> InMemoryTreeStore:
    return InMemoryTreeStore(
        [
            make_node("a", None, "a"),
            make_node("b", "a", "wrong/b"),
            make_node("c", "b", "wrong/b/c"),
            make_node("d", "a", "a/d", depth=5, sort_order=1),
        ]
    )


def test_repair_rewrites_drifted_subtree(drifted):
    publisher = InMemoryEventPublisher()
    manager = HierarchyManager(drifted, publisher=publisher)
    assert manager.descendants("a") == [drifted.get("d")]

    report = manager.repair()

    assert report.repaired_count == 3
    assert report.rewritten_node_ids == ["b", "c", "d"]
    assert "wrong/b" in report.rewritten_paths
    assert drifted.get("c").materialized_path == "a/b/c"
    assert drifted.get("d").depth == 1
    assert manager.validate_forest() == []
    assert [node.id for node in manager.descendants("a")] == ["b", "c", "d"]
    [event] = publisher.of_type(EventType.FOREST_REPAIRED)
    assert event.payload == {"repaired": 3, "unrepairable": 0}


def test_repair_is_idempotent(drifted):
    manager = HierarchyManager(drifted)
    stale = manager.validate_forest()

    manager.repair(stale)
    generation = drifted.generation
    again = manager.repair(stale)

    assert again.repaired_count == 0
    assert again.rewritten_node_ids == []
    assert manager.repair().repaired_count == 0
    assert drifted.generation == generation


def test_repair_renumbers_colliding_siblings():
    store = InMemoryTreeStore(
        [
            make_node("a", None, "a"),
            make_node("b", "a", "a/b"),
            make_node("c", "a", "a/c"),
            make_node("d", "a", "a/d", sort_order=1),
        ]
    )
    manager = HierarchyManager(store)

    report = manager.repair()

    assert report.repaired_count == 1
    assert [(node.id, node.sort_order) for node in manager.children("a")] == [("b", 0), ("c", 1), ("d", 2)]
    assert manager.validate_forest() == []
    assert manager.counters.get("Consistency", "repaired") == 1


def test_repair_with_expired_deadline_changes_nothing(drifted):
    manager = HierarchyManager(drifted)

    with pytest.raises(DeadlineExceededError):
        manager.repair(deadline=Deadline(0.0, clock=lambda: 1.0))

    assert drifted.get("b").materialized_path == "wrong/b"


def test_standalone_repairer(drifted):
    report = PathRepairer(drifted).repair()

    assert report.repaired_count == 3
    assert ConsistencyValidator(drifted).validate_forest() == []


# ----------------------------------------------------------------------
# Orphan resolution
# ----------------------------------------------------------------------
@pytest.fixture()
def orphaned(manager, catalog, store):
    manager.create("smartphones", "Cases", node_id="cases")
    with store.transaction() as txn:
        txn.delete("phones")
    return manager


def test_resolve_orphan_by_reparenting(orphaned, publisher):
    publisher.clear()

    node = orphaned.resolve_orphan("smartphones", OrphanResolution.REPARENT, "archive")

    assert node.materialized_path == "archive/smartphones"
    assert orphaned.get("cases").materialized_path == "archive/smartphones/cases"
    assert orphaned.validate_forest() == []
    [event] = publisher.events
    assert event.event_type is EventType.ORPHAN_RESOLVED
    assert event.payload == {"action": "reparent", "new_parent_id": "archive"}


def test_resolve_orphan_as_new_root(orphaned):
    node = orphaned.resolve_orphan("smartphones", "reparent")

    assert node.materialized_path == "smartphones"
    assert node.depth == 0
    assert orphaned.validate_forest() == []


def test_deleting_orphan_with_children_is_refused(orphaned):
    with pytest.raises(NodeHasChildrenError):
        orphaned.resolve_orphan("smartphones", OrphanResolution.DELETE)

    assert orphaned.store.get("smartphones") is not None
    assert orphaned.store.get("cases") is not None


def test_resolve_orphan_by_deleting(orphaned):
    orphaned.delete("cases")
    orphaned.resolve_orphan("smartphones", "delete")

    assert orphaned.store.get("smartphones") is None
    assert orphaned.validate_forest() == []


def test_resolve_orphan_rejects_healthy_nodes_and_cycles(orphaned):
    with pytest.raises(HierarchyValidationError):
        orphaned.resolve_orphan("laptops", "delete")
    with pytest.raises(CyclicMoveError):
        orphaned.resolve_orphan("smartphones", "reparent", "cases")
