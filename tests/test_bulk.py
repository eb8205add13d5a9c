from __future__ import annotations

import itertools

import pytest

from catalog.config.policies import Policies
from catalog.entities.core import EventType
from catalog.hierarchy import Deadline, HierarchyManager
from catalog.hierarchy.errors import (
    CyclicMoveError,
    DeadlineExceededError,
    DependentItemsExistError,
    DuplicateSiblingNameError,
    HierarchyValidationError,
    IncompleteReorderSetError,
    NodeHasChildrenError,
    NodeNotFoundError,
    OverlappingMoveBatchError,
)


def _paths(manager):
    return {node.id: node.materialized_path for node in manager.store.nodes()}


def test_bulk_move_applies_every_pair(manager, catalog, publisher):
    moved = manager.bulk_move([("phones", "archive"), ("laptops", "books")])

    assert [node.materialized_path for node in moved] == ["archive/phones", "books/laptops"]
    assert manager.get("smartphones").materialized_path == "archive/phones/smartphones"
    assert len(publisher.of_type(EventType.NODE_MOVED)) == 2
    assert manager.validate_forest() == []


@pytest.mark.parametrize(
    "pairs",
    [
        [("electronics", "books"), ("phones", "archive")],
        [("electronics", "phones"), ("phones", "archive")],
        [("phones", "archive"), ("phones", "books")],
        [("smartphones", "books"), ("electronics", "archive")],
    ],
)
def test_bulk_move_rejects_overlapping_batches(manager, catalog, pairs):
    before = _paths(manager)

    with pytest.raises(OverlappingMoveBatchError):
        manager.bulk_move(pairs)

    assert _paths(manager) == before


def test_bulk_move_is_all_or_nothing(manager, catalog):
    before = _paths(manager)

    with pytest.raises(NodeNotFoundError):
        manager.bulk_move([("laptops", "books"), ("ghost", "archive")])

    assert _paths(manager) == before


def test_bulk_move_sees_earlier_moves_in_the_batch(manager, catalog):
    manager.create("phones", "Cases", node_id="phone-cases")
    manager.create("laptops", "Cases", node_id="laptop-cases")
    before = _paths(manager)

    with pytest.raises(DuplicateSiblingNameError):
        manager.bulk_move([("phone-cases", "books"), ("laptop-cases", "books")])

    assert _paths(manager) == before


def test_bulk_move_enforces_batch_limit(store, catalog):
    policies = Policies.model_validate({"hierarchy": {"bulk_batch_limit": 1}})
    limited = HierarchyManager(store, policies=policies)

    with pytest.raises(HierarchyValidationError):
        limited.bulk_move([("phones", "archive"), ("laptops", "books")])


def test_bulk_move_with_expired_deadline(manager, catalog):
    expired = Deadline(0.0, clock=lambda: 1.0)

    with pytest.raises(DeadlineExceededError) as excinfo:
        manager.bulk_move([("phones", "archive")], deadline=expired)

    assert excinfo.value.retryable
    assert manager.get("phones").parent_id == "electronics"


def test_deadline_expiring_mid_rewrite_rolls_back(manager):
    source = manager.create(None, "Source", node_id="source")
    manager.create(None, "Target", node_id="target")
    for index in range(20):
        manager.create(source.id, f"Child {index}", node_id=f"child-{index}")
    before = _paths(manager)

    ticks = itertools.count()
    deadline = Deadline.after(10, clock=lambda: float(next(ticks)))

    with pytest.raises(DeadlineExceededError):
        manager.bulk_reparent("source", "target", deadline=deadline)

    assert _paths(manager) == before
    assert manager.journal()[-1].error.startswith("DeadlineExceededError")


def test_bulk_reparent_moves_all_children(manager, catalog):
    moved = manager.bulk_reparent("electronics", "archive")

    assert sorted(node.id for node in moved) == ["laptops", "phones"]
    assert manager.children("electronics") == []
    assert [node.id for node in manager.children("archive")] == ["phones", "laptops"]
    assert manager.get("smartphones").materialized_path == "archive/phones/smartphones"


def test_bulk_reparent_into_own_subtree_is_cyclic(manager, catalog):
    with pytest.raises(CyclicMoveError):
        manager.bulk_reparent("electronics", "smartphones")


def test_bulk_reorder_applies_all_parents(manager, catalog, publisher):
    result = manager.bulk_reorder(
        {
            "electronics": ["laptops", "phones"],
            None: ["books", "archive", "electronics"],
        }
    )

    assert [node.id for node in result["electronics"]] == ["laptops", "phones"]
    assert [node.id for node in manager.children()] == ["books", "archive", "electronics"]
    assert len(publisher.of_type(EventType.CHILDREN_REORDERED)) == 2


def test_bulk_reorder_is_all_or_nothing(manager, catalog):
    with pytest.raises(IncompleteReorderSetError):
        manager.bulk_reorder(
            {
                "electronics": ["laptops", "phones"],
                None: ["books"],
            }
        )

    assert [node.id for node in manager.children("electronics")] == ["phones", "laptops"]


# ----------------------------------------------------------------------
# merge
# ----------------------------------------------------------------------
def test_merge_moves_children_and_removes_source(manager, catalog, publisher):
    target = manager.merge("electronics", "books")

    assert target.id == "books"
    assert manager.store.get("electronics") is None
    assert [node.id for node in manager.children("books")] == ["phones", "laptops"]
    assert [node.sort_order for node in manager.children("books")] == [0, 1]
    assert manager.get("smartphones").materialized_path == "books/phones/smartphones"
    assert len(publisher.of_type(EventType.NODE_MOVED)) == 2
    [merged] = publisher.of_type(EventType.CATEGORIES_MERGED)
    assert merged.node_ids == ["electronics", "books"]
    assert merged.payload == {"moved_children": ["phones", "laptops"]}
    assert manager.journal()[-1].rewritten == 4
    assert manager.counters.get("Mutations", "merged") == 1
    assert manager.validate_forest() == []


def test_merge_appends_after_target_children(manager, catalog):
    manager.create("books", "Fiction", node_id="fiction")

    manager.merge("electronics", "books")

    assert [node.id for node in manager.children("books")] == ["fiction", "phones", "laptops"]


def test_merge_leaf_source(manager, catalog):
    manager.merge("laptops", "phones")

    assert manager.store.get("laptops") is None
    assert [node.id for node in manager.children("electronics")] == ["phones"]


@pytest.mark.parametrize(
    "source, target",
    [("electronics", "electronics"), ("phones", "books"), ("smartphones", "archive")],
)
def test_merge_requires_distinct_nodes_at_same_depth(manager, catalog, source, target):
    before = _paths(manager)

    with pytest.raises(HierarchyValidationError):
        manager.merge(source, target)

    assert _paths(manager) == before


def test_merge_rejects_child_name_collisions(manager, catalog):
    manager.create("books", "Laptops", node_id="laptop-books")
    before = _paths(manager)

    with pytest.raises(DuplicateSiblingNameError):
        manager.merge("electronics", "books")

    assert _paths(manager) == before


def test_merge_refuses_source_with_dependents(store, catalog):
    guarded = HierarchyManager(store, dependency_checker=lambda node: 1 if node.id == "electronics" else 0)

    with pytest.raises(DependentItemsExistError):
        guarded.merge("electronics", "books")
    assert store.get("electronics") is not None


# ----------------------------------------------------------------------
# bulk delete
# ----------------------------------------------------------------------
def test_bulk_delete_removes_subtree_listed_in_batch(manager, catalog, publisher):
    removed = manager.bulk_delete(["phones", "smartphones", "archive"])

    assert [node.id for node in removed] == ["phones", "smartphones", "archive"]
    assert manager.store.get("phones") is None
    assert manager.store.get("smartphones") is None
    deleted = publisher.of_type(EventType.NODE_DELETED)
    assert [event.node_ids[0] for event in deleted] == ["smartphones", "phones", "archive"]
    assert manager.counters.get("Mutations", "deleted") == 3
    assert manager.validate_forest() == []


def test_bulk_delete_is_all_or_nothing(manager, catalog):
    before = _paths(manager)

    with pytest.raises(NodeHasChildrenError):
        manager.bulk_delete(["archive", "phones"])
    with pytest.raises(NodeNotFoundError):
        manager.bulk_delete(["archive", "ghost"])

    assert _paths(manager) == before


def test_bulk_delete_checks_dependents_for_every_node(store, catalog):
    guarded = HierarchyManager(store, dependency_checker=lambda node: 2 if node.id == "books" else 0)

    with pytest.raises(DependentItemsExistError):
        guarded.bulk_delete(["archive", "books"])
    assert store.get("archive") is not None


@pytest.mark.parametrize("node_ids", [[], ["archive", "archive"]])
def test_bulk_delete_rejects_empty_or_repeated_batches(manager, catalog, node_ids):
    with pytest.raises(HierarchyValidationError):
        manager.bulk_delete(node_ids)
    assert manager.get("archive") is not None


def test_bulk_delete_enforces_batch_limit(store, catalog):
    policies = Policies.model_validate({"hierarchy": {"bulk_batch_limit": 1}})
    limited = HierarchyManager(store, policies=policies)

    with pytest.raises(HierarchyValidationError):
        limited.bulk_delete(["archive", "books"])
