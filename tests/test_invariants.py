from __future__ import annotations

import random

import pytest

from catalog.hierarchy import HierarchyManager, InMemoryTreeStore
from catalog.hierarchy.errors import HierarchyError

NAMES = ["Alpha", "Beta", "Gamma", "Delta", "Omega"]


def _random_step(manager: HierarchyManager, rng: random.Random, step: int) -> None:
    node_ids = sorted(node.id for node in manager.store.nodes())
    action = rng.choice(["create", "create", "move", "reorder", "delete", "rename"]) if node_ids else "create"
    parent = rng.choice(node_ids + [None]) if node_ids else None

    if action == "create":
        manager.create(parent, rng.choice(NAMES), node_id=f"n{step}")
    elif action == "move":
        manager.move(rng.choice(node_ids), parent)
    elif action == "rename":
        manager.rename(rng.choice(node_ids), rng.choice(NAMES))
    elif action == "reorder":
        children = [child.id for child in manager.children(parent)]
        rng.shuffle(children)
        manager.reorder(parent, children)
    else:
        manager.delete(rng.choice(node_ids))


def _assert_consistent(manager: HierarchyManager) -> None:
    assert manager.validate_forest() == []
    for node in manager.store.nodes():
        assert manager.store.get_by_path(node.materialized_path).id == node.id
        chain = [ancestor.id for ancestor in manager.ancestors(node.id)]
        assert chain == ([*chain[:-1], node.parent_id] if node.parent_id else [])
        below = {child.id for child in manager.descendants(node.id)}
        assert {child.id for child in manager.children(node.id)} <= below


@pytest.mark.parametrize("seed", [3, 17, 42, 1234])
def test_random_mutation_sequences_keep_forest_consistent(seed):
    rng = random.Random(seed)
    manager = HierarchyManager(InMemoryTreeStore())
    committed = 0

    for step in range(150):
        try:
            _random_step(manager, rng, step)
        except HierarchyError:
            pass
        else:
            committed += 1
        _assert_consistent(manager)

    assert committed > 0
