"""Persistence abstraction for category nodes.

Stores keep nodes in a flat arena addressed by id, with secondary indexes on
``parent_id`` and on ``materialized_path`` (kept sorted so descendant queries
are prefix range scans). Writes only happen inside :meth:`TreeStore.transaction`;
staged changes become visible to other readers atomically on commit.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from bisect import bisect_left, insort
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import ContextManager, Dict, Iterable, Iterator, List, Mapping, MutableMapping, Set

from catalog.entities.core import CategoryNode
from catalog.observability.determinism import stable_hash
from catalog.utils.helpers import serialize_json
from catalog.utils.logging import get_logger

from .codec import DEFAULT_DELIMITER

_LOGGER = get_logger(module=__name__)
_PREFIX_CEILING = "\U0010ffff"


def _child_order(node: CategoryNode) -> tuple[int, str]:
    return (node.sort_order, node.id)


class TreeReader(ABC):
    """Read operations shared by stores and open transactions."""

    @abstractmethod
    def get(self, node_id: str) -> CategoryNode | None:
        """Return a copy of the node with *node_id*, if any."""

    @abstractmethod
    def paths_index(self, path: str) -> List[CategoryNode]:
        """Return every node stored under exactly *path*."""

    @abstractmethod
    def children(self, parent_id: str | None) -> List[CategoryNode]:
        """Return direct children ordered by ``(sort_order, id)``; roots for None."""

    @abstractmethod
    def find_by_prefix(self, path: str) -> List[CategoryNode]:
        """Return nodes whose path lies strictly below *path*."""

    @abstractmethod
    def nodes(self) -> List[CategoryNode]:
        """Return every node."""

    def get_many(self, node_ids: Iterable[str]) -> List[CategoryNode]:
        found: List[CategoryNode] = []
        for node_id in node_ids:
            node = self.get(node_id)
            if node is not None:
                found.append(node)
        return found

    def get_by_path(self, path: str) -> CategoryNode | None:
        matches = self.paths_index(path)
        if not matches:
            return None
        return min(matches, key=lambda node: node.id)

    def get_by_paths(self, paths: Iterable[str]) -> List[CategoryNode]:
        """Batch path lookup preserving the order of *paths*; missing paths are skipped."""

        resolved: List[CategoryNode] = []
        for path in paths:
            node = self.get_by_path(path)
            if node is not None:
                resolved.append(node)
        return resolved

    def count(self) -> int:
        return len(self.nodes())


class TreeTransaction(TreeReader):
    """Unit of work: reads see committed state overlaid with staged writes."""

    @abstractmethod
    def insert(self, node: CategoryNode) -> None:
        """Stage a new node."""

    @abstractmethod
    def update(self, node: CategoryNode) -> None:
        """Stage a replacement for an existing node."""

    @abstractmethod
    def delete(self, node_id: str) -> None:
        """Stage removal of an existing node."""


class TreeStore(TreeReader):
    """Durable owner of category nodes."""

    @property
    @abstractmethod
    def delimiter(self) -> str:
        """Separator used by every stored materialized path."""

    @property
    @abstractmethod
    def generation(self) -> int:
        """Number of committed transactions."""

    @abstractmethod
    def transaction(self) -> ContextManager[TreeTransaction]:
        """Context manager yielding a transaction; commits on clean exit, rolls back on error."""


class InMemoryTreeStore(TreeStore):
    """Thread-safe in-memory store with copy-on-read semantics."""

    def __init__(
        self,
        nodes: Iterable[CategoryNode] = (),
        *,
        delimiter: str = DEFAULT_DELIMITER,
    ) -> None:
        self._lock = RLock()
        self._delimiter = delimiter
        self._nodes: Dict[str, CategoryNode] = {}
        self._by_path: MutableMapping[str, Set[str]] = defaultdict(set)
        self._by_parent: MutableMapping[str | None, Set[str]] = defaultdict(set)
        self._sorted_paths: List[str] = []
        self._generation = 0
        for node in nodes:
            if node.id in self._nodes:
                raise ValueError(f"duplicate node id '{node.id}' in seed data")
            self._index(node.model_copy())

    # ------------------------------------------------------------------
    # Index maintenance (callers hold the lock)
    # ------------------------------------------------------------------
    def _index(self, node: CategoryNode) -> None:
        self._nodes[node.id] = node
        bucket = self._by_path[node.materialized_path]
        if not bucket:
            insort(self._sorted_paths, node.materialized_path)
        bucket.add(node.id)
        self._by_parent[node.parent_id].add(node.id)

    def _unindex(self, node_id: str) -> None:
        node = self._nodes.pop(node_id)
        bucket = self._by_path[node.materialized_path]
        bucket.discard(node_id)
        if not bucket:
            del self._by_path[node.materialized_path]
            position = bisect_left(self._sorted_paths, node.materialized_path)
            del self._sorted_paths[position]
        siblings = self._by_parent[node.parent_id]
        siblings.discard(node_id)
        if not siblings:
            del self._by_parent[node.parent_id]

    # ------------------------------------------------------------------
    # Committed reads
    # ------------------------------------------------------------------
    @property
    def delimiter(self) -> str:
        return self._delimiter

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, node_id: str) -> CategoryNode | None:
        with self._lock:
            node = self._nodes.get(node_id)
            return node.model_copy() if node is not None else None

    def paths_index(self, path: str) -> List[CategoryNode]:
        with self._lock:
            return [self._nodes[node_id].model_copy() for node_id in sorted(self._by_path.get(path, ()))]

    def children(self, parent_id: str | None) -> List[CategoryNode]:
        with self._lock:
            found = [self._nodes[node_id].model_copy() for node_id in self._by_parent.get(parent_id, ())]
        return sorted(found, key=_child_order)

    def find_by_prefix(self, path: str) -> List[CategoryNode]:
        low = path + self._delimiter
        high = low + _PREFIX_CEILING
        with self._lock:
            start = bisect_left(self._sorted_paths, low)
            stop = bisect_left(self._sorted_paths, high)
            return [
                self._nodes[node_id].model_copy()
                for matched in self._sorted_paths[start:stop]
                for node_id in sorted(self._by_path[matched])
            ]

    def nodes(self) -> List[CategoryNode]:
        with self._lock:
            return [node.model_copy() for node in self._nodes.values()]

    def count(self) -> int:
        with self._lock:
            return len(self._nodes)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    @contextmanager
    def transaction(self) -> Iterator["_InMemoryTransaction"]:
        txn = _InMemoryTransaction(self)
        try:
            yield txn
        except BaseException:
            _LOGGER.debug("Rolled back transaction", staged=len(txn.staged))
            txn.close()
            raise
        staged = txn.close()
        self._commit(staged)

    def _commit(self, staged: Mapping[str, CategoryNode | None]) -> None:
        if not staged:
            return
        with self._lock:
            previous = {node_id: self._nodes.get(node_id) for node_id in staged}
            self._apply(staged)
            try:
                self._after_commit()
            except BaseException:
                self._apply(previous)
                raise
            self._generation += 1
        _LOGGER.debug("Committed transaction", staged=len(staged), generation=self._generation)

    def _apply(self, changes: Mapping[str, CategoryNode | None]) -> None:
        for node_id, node in changes.items():
            if node_id in self._nodes:
                self._unindex(node_id)
            if node is not None:
                self._index(node)

    def _after_commit(self) -> None:
        """Hook for durable adapters; runs under the store lock before the commit is visible."""


class _InMemoryTransaction(TreeTransaction):
    def __init__(self, store: InMemoryTreeStore) -> None:
        self._store = store
        self._delimiter = store._delimiter
        self.staged: Dict[str, CategoryNode | None] = {}
        self._closed = False

    def close(self) -> Dict[str, CategoryNode | None]:
        self._closed = True
        return self.staged

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("transaction is already closed")

    def _live_staged(self) -> List[CategoryNode]:
        return [node for node in self.staged.values() if node is not None]

    # reads ------------------------------------------------------------
    def get(self, node_id: str) -> CategoryNode | None:
        if node_id in self.staged:
            node = self.staged[node_id]
            return node.model_copy() if node is not None else None
        return self._store.get(node_id)

    def paths_index(self, path: str) -> List[CategoryNode]:
        found = [node for node in self._store.paths_index(path) if node.id not in self.staged]
        found.extend(node.model_copy() for node in self._live_staged() if node.materialized_path == path)
        return sorted(found, key=lambda node: node.id)

    def children(self, parent_id: str | None) -> List[CategoryNode]:
        found = [node for node in self._store.children(parent_id) if node.id not in self.staged]
        found.extend(node.model_copy() for node in self._live_staged() if node.parent_id == parent_id)
        return sorted(found, key=_child_order)

    def find_by_prefix(self, path: str) -> List[CategoryNode]:
        low = path + self._delimiter
        found = [node for node in self._store.find_by_prefix(path) if node.id not in self.staged]
        found.extend(
            node.model_copy() for node in self._live_staged() if node.materialized_path.startswith(low)
        )
        return found

    def nodes(self) -> List[CategoryNode]:
        found = [node for node in self._store.nodes() if node.id not in self.staged]
        found.extend(node.model_copy() for node in self._live_staged())
        return found

    # writes -----------------------------------------------------------
    def insert(self, node: CategoryNode) -> None:
        self._ensure_open()
        if self.get(node.id) is not None:
            raise ValueError(f"node '{node.id}' already exists")
        self.staged[node.id] = node.model_copy()

    def update(self, node: CategoryNode) -> None:
        self._ensure_open()
        if self.get(node.id) is None:
            raise ValueError(f"node '{node.id}' does not exist")
        self.staged[node.id] = node.model_copy()

    def delete(self, node_id: str) -> None:
        self._ensure_open()
        if self.get(node_id) is None:
            raise ValueError(f"node '{node_id}' does not exist")
        self.staged[node_id] = None


def snapshot_payload(nodes: Iterable[CategoryNode]) -> dict:
    """Serialisable snapshot with a checksum over the ordered node records."""

    records = [node.model_dump(mode="json") for node in sorted(nodes, key=lambda node: node.id)]
    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "checksum": stable_hash(records),
        "nodes": records,
    }


class JsonFileTreeStore(InMemoryTreeStore):
    """In-memory store that persists a JSON snapshot on every commit."""

    def __init__(
        self,
        path: str | Path,
        *,
        delimiter: str = DEFAULT_DELIMITER,
        verify_checksum: bool = True,
    ) -> None:
        self._path = Path(path)
        super().__init__(self._load(verify_checksum), delimiter=delimiter)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self, verify_checksum: bool) -> List[CategoryNode]:
        if not self._path.exists():
            return []
        payload = json.loads(self._path.read_text(encoding="utf-8"))
        records = payload.get("nodes", [])
        if verify_checksum and "checksum" in payload:
            ordered = sorted(records, key=lambda record: record["id"])
            if stable_hash(ordered) != payload["checksum"]:
                raise ValueError(f"snapshot checksum mismatch for {self._path}")
        nodes = [CategoryNode.model_validate(record) for record in records]
        _LOGGER.info("Loaded category snapshot", path=str(self._path), nodes=len(nodes))
        return nodes

    def _after_commit(self) -> None:
        serialize_json(snapshot_payload(self._nodes.values()), self._path)


__all__ = [
    "TreeReader",
    "TreeTransaction",
    "TreeStore",
    "InMemoryTreeStore",
    "JsonFileTreeStore",
    "snapshot_payload",
]
