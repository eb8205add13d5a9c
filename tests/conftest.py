from __future__ import annotations

from typing import Dict

import pytest

from catalog.entities.core import CategoryNode
from catalog.hierarchy import HierarchyManager, InMemoryEventPublisher, InMemoryTreeStore


@pytest.fixture()
def store() -> InMemoryTreeStore:
    return InMemoryTreeStore()


@pytest.fixture()
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture()
def manager(store: InMemoryTreeStore, publisher: InMemoryEventPublisher) -> HierarchyManager:
    return HierarchyManager(store, publisher=publisher)


@pytest.fixture()
def catalog(manager: HierarchyManager, publisher: InMemoryEventPublisher) -> Dict[str, CategoryNode]:
    """Electronics > {Phones > Smartphones, Laptops}; Books; Archive."""

    nodes = {
        "electronics": manager.create(None, "Electronics", node_id="electronics"),
        "books": manager.create(None, "Books", node_id="books"),
        "archive": manager.create(None, "Archive", node_id="archive"),
    }
    nodes["phones"] = manager.create("electronics", "Phones", node_id="phones")
    nodes["laptops"] = manager.create("electronics", "Laptops", node_id="laptops")
    nodes["smartphones"] = manager.create("phones", "Smartphones", node_id="smartphones")
    publisher.clear()
    return nodes
