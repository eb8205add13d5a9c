"""Public orchestrator for hierarchy traversal and mutation."""

from __future__ import annotations

import threading
import time
import uuid
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from typing import AbstractSet, Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from catalog.config.policies import Policies
from catalog.entities.core import (
    Anomaly,
    CategoryNode,
    DomainEvent,
    EventType,
    MutationRecord,
    MutationState,
    OrphanResolution,
    RepairReport,
)
from catalog.observability.registry import CounterRegistry
from catalog.utils.helpers import normalize_whitespace
from catalog.utils.logging import get_logger, logging_context

from .cache import CacheKey, TraversalCache
from .codec import ROOT_SCOPE, PathCodec
from .errors import (
    ConcurrentModificationError,
    CyclicMoveError,
    DependentItemsExistError,
    DuplicateSiblingNameError,
    HierarchyValidationError,
    IncompleteReorderSetError,
    InvalidSegmentError,
    NoCommonAncestorError,
    NodeHasChildrenError,
    NodeNotFoundError,
    OverlappingMoveBatchError,
)
from .events import EventPublisher, dispatch
from .locks import Deadline, SubtreeLockManager
from .repair import PathRepairer
from .store import TreeReader, TreeStore, TreeTransaction
from .validator import ConsistencyReport, ConsistencyValidator, PathResolver, forest_statistics

_LOGGER = get_logger(module=__name__)

DependencyChecker = Callable[[CategoryNode], int]
MovePair = Tuple[str, Optional[str]]

_OPERATION_COUNTERS: Mapping[str, str] = {
    "create": "created",
    "rename": "renamed",
    "move": "moved",
    "bulk_move": "moved",
    "bulk_reparent": "moved",
    "reorder": "reordered",
    "bulk_reorder": "reordered",
    "delete": "deleted",
    "bulk_delete": "deleted",
    "merge": "merged",
    "repair": "repaired",
    "resolve_orphan": "orphans_resolved",
}


@dataclass(slots=True)
class _Plan:
    """Validated intent: the lock scopes a mutation needs plus what it decided."""

    scopes: Tuple[str, ...]
    data: Any = None


@dataclass(slots=True)
class _Outcome:
    result: Any
    invalidate: List[str] = field(default_factory=list)
    events: List[DomainEvent] = field(default_factory=list)
    rewritten: int = 0
    affected: int = 1


def _scopes(paths: Iterable[str]) -> Tuple[str, ...]:
    unique = set(paths)
    if ROOT_SCOPE in unique:
        return (ROOT_SCOPE,)
    return tuple(sorted(unique))


def _no_dependents(_: CategoryNode) -> int:
    return 0


class HierarchyManager:
    """Traverses and mutates a category forest stored in a :class:`TreeStore`.

    Every mutation runs ``VALIDATING -> LOCKED -> APPLYING -> INVALIDATING ->
    COMMITTED`` (or ends ``REJECTED``): it is planned against committed state,
    the affected path scopes are locked, the plan is re-checked inside a store
    transaction, writes are applied and committed atomically, cache scopes are
    invalidated and only then are domain events published. Any failure rolls
    the transaction back; nothing is retried internally.
    """

    def __init__(
        self,
        store: TreeStore,
        *,
        policies: Policies | None = None,
        codec: PathCodec | None = None,
        cache: TraversalCache | None = None,
        locks: SubtreeLockManager | None = None,
        publisher: EventPublisher | None = None,
        dependency_checker: DependencyChecker | None = None,
        counters: CounterRegistry | None = None,
    ) -> None:
        self._policies = policies or Policies()
        hierarchy = self._policies.hierarchy
        if hierarchy.delimiter != store.delimiter:
            raise ValueError(
                f"policy delimiter {hierarchy.delimiter!r} does not match store delimiter {store.delimiter!r}"
            )
        if codec is not None and codec.delimiter != store.delimiter:
            raise ValueError(
                f"codec delimiter {codec.delimiter!r} does not match store delimiter {store.delimiter!r}"
            )
        self._store = store
        self._codec = codec or PathCodec(store.delimiter)
        self._cache = cache or TraversalCache(
            self._codec,
            ttl_seconds=self._policies.cache.ttl_seconds,
            max_entries=self._policies.cache.max_entries,
            enabled=self._policies.cache.enabled,
        )
        self._locks = locks or SubtreeLockManager(self._codec, timeout=hierarchy.lock_timeout_seconds)
        self._publisher = publisher
        self._dependency_checker = dependency_checker or _no_dependents
        if counters is None and self._policies.observability.counter_registry_enabled:
            counters = CounterRegistry()
        self._counters = counters
        self._validator = ConsistencyValidator(store, self._codec)
        self._repairer = PathRepairer(store, self._validator, self._codec)
        self._journal: deque[MutationRecord] = deque(maxlen=hierarchy.journal_size)
        self._journal_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def store(self) -> TreeStore:
        return self._store

    @property
    def codec(self) -> PathCodec:
        return self._codec

    @property
    def cache(self) -> TraversalCache:
        return self._cache

    @property
    def counters(self) -> CounterRegistry | None:
        return self._counters

    @property
    def validator(self) -> ConsistencyValidator:
        return self._validator

    def journal(self, limit: int | None = None) -> List[MutationRecord]:
        """Most recent mutation records, oldest first."""

        with self._journal_lock:
            records = list(self._journal)
        return records[-limit:] if limit else records

    def _count(self, component: str, counter: str, value: int = 1, *, label: str | None = None) -> None:
        if self._counters is not None and value:
            self._counters.increment(component, counter, value, label=label)

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------
    def _require(self, reader: TreeReader, node_id: str) -> CategoryNode:
        node = reader.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def _cached(self, key: CacheKey, scope: str, compute: Callable[[], List[CategoryNode]]) -> List[CategoryNode]:
        self._count("Traversal", "queries")
        generation = self._cache.generation
        cached = self._cache.get(key)
        if cached is not None:
            self._count("Traversal", "cache_hits")
            return [node.model_copy() for node in cached]
        self._count("Traversal", "cache_misses")
        result = compute()
        self._cache.put(key, [node.model_copy() for node in result], scope=scope, generation=generation)
        return result

    def _scope_of_parent(self, parent: CategoryNode | None) -> str:
        return parent.materialized_path if parent is not None else ROOT_SCOPE

    def get(self, node_id: str) -> CategoryNode:
        self._count("Traversal", "queries")
        return self._require(self._store, node_id)

    def get_by_path(self, path: str) -> CategoryNode:
        self._count("Traversal", "queries")
        node = self._store.get_by_path(path)
        if node is None:
            raise NodeNotFoundError(None, path=path)
        return node

    def ancestors(self, node_id: str, *, include_self: bool = False) -> List[CategoryNode]:
        """Ancestor chain of *node_id*, root first, resolved through its stored path."""

        node = self._require(self._store, node_id)

        def compute() -> List[CategoryNode]:
            chain = self._store.get_by_paths(self._codec.ancestor_paths(node.materialized_path))
            if include_self:
                chain.append(node)
            return chain

        key = CacheKey.build("ancestors", node_id, node.materialized_path, include_self=include_self)
        return self._cached(key, node.materialized_path, compute)

    def root_path(self, node_id: str) -> List[CategoryNode]:
        return self.ancestors(node_id, include_self=True)

    def descendants(self, node_id: str, max_depth: int | None = None) -> List[CategoryNode]:
        """Every node below *node_id* in pre-order, optionally limited to *max_depth* levels."""

        if max_depth is not None and max_depth < 0:
            raise ValueError("max_depth must be non-negative")
        node = self._require(self._store, node_id)

        def compute() -> List[CategoryNode]:
            found = self._store.find_by_prefix(node.materialized_path)
            if max_depth is not None:
                limit = node.depth + max_depth
                found = [candidate for candidate in found if candidate.depth <= limit]
            return sorted(found, key=lambda item: (self._codec.sort_key(item.materialized_path), item.id))

        key = CacheKey.build("descendants", node_id, node.materialized_path, max_depth=max_depth)
        return self._cached(key, node.materialized_path, compute)

    def siblings(self, node_id: str, *, include_self: bool = False) -> List[CategoryNode]:
        node = self._require(self._store, node_id)
        parent = self._store.get(node.parent_id) if node.parent_id else None

        def compute() -> List[CategoryNode]:
            return [
                sibling
                for sibling in self._store.children(node.parent_id)
                if include_self or sibling.id != node_id
            ]

        key = CacheKey.build("siblings", node_id, node.materialized_path, include_self=include_self)
        return self._cached(key, self._scope_of_parent(parent), compute)

    def children(self, parent_id: str | None = None) -> List[CategoryNode]:
        """Direct children of *parent_id* (roots when None) by ``(sort_order, id)``."""

        parent = self._require(self._store, parent_id) if parent_id is not None else None
        key = CacheKey.build("children", parent_id, parent.materialized_path if parent else None)
        return self._cached(key, self._scope_of_parent(parent), lambda: self._store.children(parent_id))

    def common_ancestor(self, first_id: str, second_id: str) -> CategoryNode:
        """Deepest node whose path prefixes both nodes' paths (a node counts as its own ancestor)."""

        self._count("Traversal", "queries")
        first = self._require(self._store, first_id)
        second = self._require(self._store, second_id)
        prefix = self._codec.common_prefix(first.materialized_path, second.materialized_path)
        if prefix is None:
            raise NoCommonAncestorError(f"'{first_id}' and '{second_id}' live under disjoint roots")
        shared = self._store.get_by_path(prefix)
        if shared is None:
            raise NodeNotFoundError(None, path=prefix)
        return shared

    def common_ancestors(self, node_ids: Sequence[str]) -> List[CategoryNode]:
        """Ancestors shared by every node in *node_ids*, root first; empty for disjoint roots."""

        if not node_ids:
            raise ValueError("node_ids must not be empty")
        self._count("Traversal", "queries")
        nodes = [self._require(self._store, node_id) for node_id in node_ids]
        prefix: str | None = nodes[0].materialized_path
        for node in nodes[1:]:
            prefix = self._codec.common_prefix(prefix, node.materialized_path)
            if prefix is None:
                return []
        return self._store.get_by_paths(self._codec.ancestor_paths(prefix, include_self=True))

    def distance(self, first_id: str, second_id: str) -> int:
        """Number of edges on the tree path between two nodes."""

        shared = self.common_ancestor(first_id, second_id)
        first = self._require(self._store, first_id)
        second = self._require(self._store, second_id)
        return first.depth + second.depth - 2 * shared.depth

    def full_name(self, node_id: str, *, separator: str = " > ") -> str:
        return separator.join(node.name for node in self.root_path(node_id))

    def find_by_path_prefix(self, prefix: str) -> List[CategoryNode]:
        """Node at *prefix* (if any) followed by its subtree, in pre-order."""

        self._count("Traversal", "queries")
        found = self._store.paths_index(prefix) + self._store.find_by_prefix(prefix)
        return sorted(found, key=lambda item: (self._codec.sort_key(item.materialized_path), item.id))

    def find_by_pattern(self, pattern: str) -> List[CategoryNode]:
        """Nodes whose path matches a segment glob such as ``electronics/*`` or ``**/cases``."""

        self._count("Traversal", "queries")
        found = [
            node for node in self._store.nodes() if self._codec.matches_pattern(node.materialized_path, pattern)
        ]
        return sorted(found, key=lambda item: (self._codec.sort_key(item.materialized_path), item.id))

    def tree(self, root_id: str | None = None) -> List[Dict[str, Any]]:
        """Nested ``{id, name, path, depth, sort_order, children}`` structure."""

        self._count("Traversal", "queries")
        nodes = self._store.nodes()
        by_parent: Dict[str | None, List[CategoryNode]] = defaultdict(list)
        for node in nodes:
            by_parent[node.parent_id].append(node)

        def build(node: CategoryNode, seen: frozenset[str]) -> Dict[str, Any]:
            kids = sorted(by_parent.get(node.id, []), key=lambda item: (item.sort_order, item.id))
            return {
                "id": node.id,
                "name": node.name,
                "path": node.materialized_path,
                "depth": node.depth,
                "sort_order": node.sort_order,
                "children": [build(kid, seen | {node.id}) for kid in kids if kid.id not in seen],
            }

        if root_id is not None:
            return [build(self._require(self._store, root_id), frozenset())]
        roots = sorted(by_parent.get(None, []), key=lambda item: (item.sort_order, item.id))
        return [build(root, frozenset()) for root in roots]

    def statistics(self) -> Dict[str, Any]:
        stats = forest_statistics(self._store.nodes())
        stats["generation"] = self._store.generation
        return stats

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------
    def validate_forest(self) -> List[Anomaly]:
        anomalies = self._validator.validate_forest()
        self._count("Consistency", "nodes_checked", self._store.count())
        self._count("Consistency", "anomalies", len(anomalies))
        return anomalies

    def consistency_report(self) -> ConsistencyReport:
        report = self._validator.report()
        self._count("Consistency", "nodes_checked", int(report.statistics.get("node_count", 0)))
        self._count("Consistency", "anomalies", len(report.anomalies))
        return report

    # ------------------------------------------------------------------
    # Mutation pipeline
    # ------------------------------------------------------------------
    def _execute(
        self,
        operation: str,
        node_ids: Iterable[str | None],
        plan_fn: Callable[[TreeReader], _Plan],
        apply_fn: Callable[[TreeTransaction, _Plan], _Outcome],
        *,
        deadline: Deadline | None = None,
    ) -> Any:
        record = MutationRecord(operation=operation, node_ids=[node_id for node_id in node_ids if node_id])
        with self._journal_lock:
            self._journal.append(record)
        started = time.perf_counter()

        with logging_context(operation=operation):
            try:
                if deadline is not None:
                    deadline.check(operation)
                planned = plan_fn(self._store)
                with self._locks.acquire(planned.scopes, deadline=deadline):
                    record.advance(MutationState.LOCKED)
                    with self._store.transaction() as txn:
                        current = plan_fn(txn)
                        if current.scopes != planned.scopes:
                            raise ConcurrentModificationError(
                                f"{operation} scope moved from {list(planned.scopes)} to {list(current.scopes)}"
                            )
                        record.advance(MutationState.APPLYING)
                        outcome = apply_fn(txn, current)
                        if deadline is not None:
                            deadline.check(operation)
            except Exception as exc:
                record.reject(exc)
                self._count("Mutations", "rejected")
                self._count("Mutations", "rejected_by_error", label=type(exc).__name__)
                _LOGGER.info(
                    "Mutation rejected",
                    node_ids=record.node_ids,
                    error=record.error,
                    retryable=getattr(exc, "retryable", False),
                )
                raise

            record.advance(MutationState.INVALIDATING)
            self._cache.invalidate(outcome.invalidate)
            record.rewritten = outcome.rewritten
            record.advance(MutationState.COMMITTED)

            self._count("Mutations", "committed")
            self._count("Mutations", _OPERATION_COUNTERS[operation], outcome.affected)
            self._count("Mutations", "nodes_rewritten", outcome.rewritten)
            if self._policies.observability.log_mutations:
                _LOGGER.info(
                    "Mutation committed",
                    node_ids=record.node_ids,
                    rewritten=outcome.rewritten,
                    seconds=round(time.perf_counter() - started, 6),
                )
            dispatch(self._publisher, outcome.events)
        return outcome.result

    # ------------------------------------------------------------------
    # Shared validation helpers
    # ------------------------------------------------------------------
    def _validate_name(self, name: str) -> Tuple[str, str]:
        cleaned = normalize_whitespace(name or "")
        limit = self._policies.hierarchy.max_name_length
        if len(cleaned) > limit:
            raise HierarchyValidationError(f"name exceeds {limit} characters")
        return cleaned, self._codec.segment_for(cleaned)

    def _segment_of(self, node: CategoryNode) -> str | None:
        try:
            return self._codec.segment_for(node.name)
        except InvalidSegmentError:
            return None

    def _ensure_unique_sibling(
        self,
        reader: TreeReader,
        parent_id: str | None,
        segment: str,
        candidate_path: str,
        *,
        exclude_id: str | None = None,
    ) -> None:
        for sibling in reader.children(parent_id):
            if sibling.id != exclude_id and self._segment_of(sibling) == segment:
                raise DuplicateSiblingNameError(segment, parent_id)
        occupant = reader.get_by_path(candidate_path)
        if occupant is not None and occupant.id != exclude_id:
            raise DuplicateSiblingNameError(segment, parent_id)

    def _next_sort_order(self, reader: TreeReader, parent_id: str | None, *, exclude_id: str | None = None) -> int:
        orders = [child.sort_order for child in reader.children(parent_id) if child.id != exclude_id]
        return max(orders, default=-1) + 1

    def _rewrite_subtree(
        self,
        txn: TreeTransaction,
        old_path: str,
        new_path: str,
        deadline: Deadline | None,
    ) -> int:
        """Rewrite every node under *old_path* to live under *new_path*."""

        rewritten = 0
        for descendant in txn.find_by_prefix(old_path):
            if deadline is not None:
                deadline.check("subtree rewrite")
            path = self._codec.replace_prefix(descendant.materialized_path, old_path, new_path)
            txn.update(
                descendant.model_copy(update={"materialized_path": path, "depth": self._codec.depth_of(path)})
            )
            rewritten += 1
        return rewritten

    # ------------------------------------------------------------------
    # create / rename / delete
    # ------------------------------------------------------------------
    def create(
        self,
        parent_id: str | None,
        name: str,
        sort_order: int | None = None,
        *,
        node_id: str | None = None,
    ) -> CategoryNode:
        """Insert a new node under *parent_id* (a root when None).

        ``sort_order=None`` appends after the existing siblings; an explicit
        position that is already taken shifts the later siblings up by one.
        """

        new_id = (node_id or "").strip() or uuid.uuid4().hex

        def plan(reader: TreeReader) -> _Plan:
            if sort_order is not None and sort_order < 0:
                raise HierarchyValidationError("sort_order must be non-negative")
            cleaned, segment = self._validate_name(name)
            parent = self._require(reader, parent_id) if parent_id is not None else None
            if reader.get(new_id) is not None:
                raise HierarchyValidationError(f"node id '{new_id}' already exists")
            path = self._codec.child_path(parent.materialized_path if parent else None, segment)
            self._ensure_unique_sibling(reader, parent_id, segment, path)
            return _Plan(
                _scopes([self._scope_of_parent(parent)]),
                {"parent": parent, "path": path, "name": cleaned},
            )

        def apply(txn: TreeTransaction, planned: _Plan) -> _Outcome:
            parent: CategoryNode | None = planned.data["parent"]
            path: str = planned.data["path"]
            rewritten = 0
            siblings = txn.children(parent_id)
            if sort_order is None:
                position = self._next_sort_order(txn, parent_id)
            else:
                position = sort_order
                if any(sibling.sort_order == position for sibling in siblings):
                    for sibling in siblings:
                        if sibling.sort_order >= position:
                            txn.update(sibling.model_copy(update={"sort_order": sibling.sort_order + 1}))
                            rewritten += 1
            node = CategoryNode(
                id=new_id,
                parent_id=parent_id,
                name=planned.data["name"],
                materialized_path=path,
                depth=parent.depth + 1 if parent else 0,
                sort_order=position,
            )
            txn.insert(node)
            event = DomainEvent(
                event_type=EventType.NODE_CREATED,
                node_ids=[node.id],
                new_path=path,
                payload={"parent_id": parent_id, "sort_order": position},
            )
            return _Outcome(node, invalidate=[path], events=[event], rewritten=rewritten + 1)

        return self._execute("create", [new_id, parent_id], plan, apply)

    def rename(self, node_id: str, name: str) -> CategoryNode:
        """Change a node's name, cascading the new segment through its subtree."""

        def plan(reader: TreeReader) -> _Plan:
            cleaned, segment = self._validate_name(name)
            node = self._require(reader, node_id)
            parent_path: str | None = None
            if node.parent_id is not None:
                parent = reader.get(node.parent_id)
                if parent is not None:
                    parent_path = parent.materialized_path
                else:
                    parent_path = self._codec.parent_path(node.materialized_path)
            new_path = self._codec.child_path(parent_path, segment)
            self._ensure_unique_sibling(reader, node.parent_id, segment, new_path, exclude_id=node_id)
            return _Plan(
                _scopes([node.materialized_path, new_path]),
                {"node": node, "new_path": new_path, "name": cleaned},
            )

        def apply(txn: TreeTransaction, planned: _Plan) -> _Outcome:
            node: CategoryNode = planned.data["node"]
            new_path: str = planned.data["new_path"]
            cleaned: str = planned.data["name"]
            old_path = node.materialized_path
            updated = node.model_copy(
                update={"name": cleaned, "materialized_path": new_path, "depth": self._codec.depth_of(new_path)}
            )
            txn.update(updated)
            rewritten = 1
            if new_path != old_path:
                rewritten += self._rewrite_subtree(txn, old_path, new_path, None)
            event = DomainEvent(
                event_type=EventType.NODE_RENAMED,
                node_ids=[node_id],
                old_path=old_path,
                new_path=new_path,
                payload={"old_name": node.name, "new_name": cleaned},
            )
            return _Outcome(updated, invalidate=[old_path, new_path], events=[event], rewritten=rewritten)

        return self._execute("rename", [node_id], plan, apply)

    def _check_deletable(
        self,
        reader: TreeReader,
        node: CategoryNode,
        batch: AbstractSet[str] = frozenset(),
    ) -> None:
        if any(child.id not in batch for child in reader.children(node.id)):
            raise NodeHasChildrenError(f"category '{node.id}' still has children")
        dependents = self._dependency_checker(node)
        if dependents > 0:
            raise DependentItemsExistError(f"category '{node.id}' still has {dependents} dependent items")

    def delete(self, node_id: str) -> CategoryNode:
        """Remove a leaf without dependent items; returns the removed node."""

        def plan(reader: TreeReader) -> _Plan:
            node = self._require(reader, node_id)
            self._check_deletable(reader, node)
            return _Plan(_scopes([node.materialized_path]), node)

        def apply(txn: TreeTransaction, planned: _Plan) -> _Outcome:
            node: CategoryNode = planned.data
            txn.delete(node.id)
            event = DomainEvent(
                event_type=EventType.NODE_DELETED,
                node_ids=[node.id],
                old_path=node.materialized_path,
                payload={"parent_id": node.parent_id},
            )
            return _Outcome(node, invalidate=[node.materialized_path], events=[event], rewritten=1)

        return self._execute("delete", [node_id], plan, apply)

    def bulk_delete(self, node_ids: Sequence[str], *, deadline: Deadline | None = None) -> List[CategoryNode]:
        """Delete several categories in one all-or-nothing transaction.

        A node may only have children that are deleted in the same batch;
        every node must be free of dependent items. Removed nodes are returned
        in request order.
        """

        requested = list(node_ids)

        def plan(reader: TreeReader) -> _Plan:
            if not requested:
                raise HierarchyValidationError("bulk delete needs at least one node id")
            self._check_batch_size(len(requested))
            repeated = sorted(node_id for node_id, seen in Counter(requested).items() if seen > 1)
            if repeated:
                raise HierarchyValidationError(f"nodes requested more than once: {repeated}")
            batch = frozenset(requested)
            nodes = [self._require(reader, node_id) for node_id in requested]
            for node in nodes:
                self._check_deletable(reader, node, batch)
            return _Plan(_scopes(node.materialized_path for node in nodes), nodes)

        def apply(txn: TreeTransaction, planned: _Plan) -> _Outcome:
            nodes: List[CategoryNode] = planned.data
            events: List[DomainEvent] = []
            for node in sorted(nodes, key=lambda item: (-item.depth, item.id)):
                if deadline is not None:
                    deadline.check("bulk delete")
                txn.delete(node.id)
                events.append(
                    DomainEvent(
                        event_type=EventType.NODE_DELETED,
                        node_ids=[node.id],
                        old_path=node.materialized_path,
                        payload={"parent_id": node.parent_id},
                    )
                )
            return _Outcome(
                nodes,
                invalidate=[node.materialized_path for node in nodes],
                events=events,
                rewritten=len(nodes),
                affected=len(nodes),
            )

        return self._execute("bulk_delete", requested, plan, apply, deadline=deadline)

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------
    def _validate_move(
        self,
        reader: TreeReader,
        node_id: str,
        new_parent_id: str | None,
    ) -> Tuple[CategoryNode, CategoryNode | None, str]:
        node = self._require(reader, node_id)
        if new_parent_id == node_id:
            raise CyclicMoveError(f"cannot move '{node_id}' under itself")
        parent = self._require(reader, new_parent_id) if new_parent_id is not None else None
        if parent is not None and (
            parent.materialized_path == node.materialized_path
            or self._codec.is_descendant_path(parent.materialized_path, node.materialized_path)
        ):
            raise CyclicMoveError(f"cannot move '{node_id}' under its descendant '{new_parent_id}'")
        if node.parent_id == new_parent_id:
            return node, parent, node.materialized_path
        segment = self._segment_of(node) or self._codec.last_segment(node.materialized_path)
        new_path = self._codec.child_path(parent.materialized_path if parent else None, segment)
        self._ensure_unique_sibling(reader, new_parent_id, segment, new_path, exclude_id=node_id)
        return node, parent, new_path

    def _move_scopes(self, node: CategoryNode, parent: CategoryNode | None) -> List[str]:
        return [node.materialized_path, self._scope_of_parent(parent)]

    def _apply_move(
        self,
        txn: TreeTransaction,
        node_id: str,
        new_parent_id: str | None,
        deadline: Deadline | None,
    ) -> Tuple[CategoryNode, _Outcome]:
        node, parent, new_path = self._validate_move(txn, node_id, new_parent_id)
        if node.parent_id == new_parent_id:
            return node, _Outcome(node, affected=0)
        old_path = node.materialized_path
        moved = node.model_copy(
            update={
                "parent_id": new_parent_id,
                "materialized_path": new_path,
                "depth": self._codec.depth_of(new_path),
                "sort_order": self._next_sort_order(txn, new_parent_id, exclude_id=node_id),
            }
        )
        txn.update(moved)
        rewritten = 1 + self._rewrite_subtree(txn, old_path, new_path, deadline)
        event = DomainEvent(
            event_type=EventType.NODE_MOVED,
            node_ids=[node_id],
            old_path=old_path,
            new_path=new_path,
            payload={"old_parent_id": node.parent_id, "new_parent_id": new_parent_id, "rewritten": rewritten},
        )
        return moved, _Outcome(moved, invalidate=[old_path, new_path], events=[event], rewritten=rewritten)

    def move(self, node_id: str, new_parent_id: str | None) -> CategoryNode:
        """Re-home *node_id* (and its subtree) under *new_parent_id*; None promotes it to a root."""

        def plan(reader: TreeReader) -> _Plan:
            node, parent, _ = self._validate_move(reader, node_id, new_parent_id)
            return _Plan(_scopes(self._move_scopes(node, parent)))

        def apply(txn: TreeTransaction, planned: _Plan) -> _Outcome:
            _, outcome = self._apply_move(txn, node_id, new_parent_id, None)
            return outcome

        return self._execute("move", [node_id, new_parent_id], plan, apply)

    def _check_batch_size(self, size: int) -> None:
        limit = self._policies.hierarchy.bulk_batch_limit
        if size > limit:
            raise HierarchyValidationError(f"batch of {size} exceeds the limit of {limit}")

    def _plan_moves(self, reader: TreeReader, pairs: Sequence[MovePair]) -> _Plan:
        self._check_batch_size(len(pairs))
        counts = Counter(node_id for node_id, _ in pairs)
        repeated = sorted(node_id for node_id, seen in counts.items() if seen > 1)
        if repeated:
            raise OverlappingMoveBatchError(f"nodes requested more than once: {repeated}")

        moved = [self._require(reader, node_id) for node_id, _ in pairs]
        ordered = sorted(moved, key=lambda item: self._codec.sort_key(item.materialized_path))
        enclosing: CategoryNode | None = None
        for node in ordered:
            if enclosing is not None and (
                node.materialized_path == enclosing.materialized_path
                or self._codec.is_descendant_path(node.materialized_path, enclosing.materialized_path)
            ):
                raise OverlappingMoveBatchError(
                    f"'{node.id}' lies inside '{enclosing.id}', which is moved in the same batch"
                )
            enclosing = node

        scopes: List[str] = []
        for node_id, new_parent_id in pairs:
            node, parent, _ = self._validate_move(reader, node_id, new_parent_id)
            scopes.extend(self._move_scopes(node, parent))
        return _Plan(_scopes(scopes), list(pairs))

    def _apply_moves(self, txn: TreeTransaction, pairs: Sequence[MovePair], deadline: Deadline | None) -> _Outcome:
        moved_nodes: List[CategoryNode] = []
        combined = _Outcome(moved_nodes, affected=0)
        for node_id, new_parent_id in pairs:
            if deadline is not None:
                deadline.check("bulk move")
            moved, outcome = self._apply_move(txn, node_id, new_parent_id, deadline)
            moved_nodes.append(moved)
            combined.invalidate.extend(outcome.invalidate)
            combined.events.extend(outcome.events)
            combined.rewritten += outcome.rewritten
            combined.affected += outcome.affected
        return combined

    def bulk_move(self, pairs: Sequence[MovePair], *, deadline: Deadline | None = None) -> List[CategoryNode]:
        """Apply several moves in one all-or-nothing transaction.

        Batches that name a node twice, or a node together with one of its
        ancestors, are refused with :class:`OverlappingMoveBatchError`.
        """

        requested = [(node_id, new_parent_id) for node_id, new_parent_id in pairs]
        return self._execute(
            "bulk_move",
            [node_id for node_id, _ in requested],
            lambda reader: self._plan_moves(reader, requested),
            lambda txn, planned: self._apply_moves(txn, planned.data, deadline),
            deadline=deadline,
        )

    def bulk_reparent(
        self,
        old_parent_id: str,
        new_parent_id: str | None,
        *,
        deadline: Deadline | None = None,
    ) -> List[CategoryNode]:
        """Move every child of *old_parent_id* under *new_parent_id* in one batch."""

        def plan(reader: TreeReader) -> _Plan:
            self._require(reader, old_parent_id)
            if old_parent_id == new_parent_id:
                return _Plan(_scopes([reader.get(old_parent_id).materialized_path]), [])
            pairs = [(child.id, new_parent_id) for child in reader.children(old_parent_id)]
            return self._plan_moves(reader, pairs)

        return self._execute(
            "bulk_reparent",
            [old_parent_id, new_parent_id],
            plan,
            lambda txn, planned: self._apply_moves(txn, planned.data, deadline),
            deadline=deadline,
        )

    def merge(self, source_id: str, target_id: str, *, deadline: Deadline | None = None) -> CategoryNode:
        """Fold *source_id* into *target_id*: its children move under the target, then it is deleted.

        Both categories must sit at the same depth. Children keep their
        relative order and are appended after the target's own children.
        Returns the target.
        """

        def plan(reader: TreeReader) -> _Plan:
            if source_id == target_id:
                raise HierarchyValidationError("cannot merge a category with itself")
            source = self._require(reader, source_id)
            target = self._require(reader, target_id)
            if source.depth != target.depth:
                raise HierarchyValidationError(
                    f"cannot merge '{source_id}' (depth {source.depth}) into '{target_id}' (depth {target.depth})"
                )
            for child in reader.children(source_id):
                self._validate_move(reader, child.id, target_id)
            dependents = self._dependency_checker(source)
            if dependents > 0:
                raise DependentItemsExistError(f"category '{source_id}' still has {dependents} dependent items")
            return _Plan(_scopes([source.materialized_path, target.materialized_path]), source)

        def apply(txn: TreeTransaction, planned: _Plan) -> _Outcome:
            source: CategoryNode = planned.data
            combined = _Outcome(None)
            moved_ids: List[str] = []
            for child in txn.children(source_id):
                if deadline is not None:
                    deadline.check("merge")
                _, outcome = self._apply_move(txn, child.id, target_id, deadline)
                moved_ids.append(child.id)
                combined.invalidate.extend(outcome.invalidate)
                combined.events.extend(outcome.events)
                combined.rewritten += outcome.rewritten
            txn.delete(source_id)
            combined.rewritten += 1
            target = self._require(txn, target_id)
            combined.result = target
            combined.invalidate.extend([source.materialized_path, target.materialized_path])
            combined.events.append(
                DomainEvent(
                    event_type=EventType.CATEGORIES_MERGED,
                    node_ids=[source_id, target_id],
                    old_path=source.materialized_path,
                    new_path=target.materialized_path,
                    payload={"moved_children": moved_ids},
                )
            )
            return combined

        return self._execute("merge", [source_id, target_id], plan, apply, deadline=deadline)

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------
    def _plan_reorder(
        self,
        reader: TreeReader,
        parent_id: str | None,
        ordered_child_ids: Sequence[str],
    ) -> Tuple[str, List[str]]:
        parent = self._require(reader, parent_id) if parent_id is not None else None
        current = {child.id for child in reader.children(parent_id)}
        requested = list(ordered_child_ids)
        counts = Counter(requested)
        duplicates = [child_id for child_id, seen in counts.items() if seen > 1]
        missing = current - set(requested)
        unexpected = set(requested) - current
        if duplicates or missing or unexpected:
            raise IncompleteReorderSetError(
                parent_id, missing=missing, unexpected=unexpected, duplicates=duplicates
            )
        return self._scope_of_parent(parent), requested

    def _apply_reorder(self, txn: TreeTransaction, parent_id: str | None, ordered: Sequence[str]) -> _Outcome:
        rewritten = 0
        for position, child_id in enumerate(ordered):
            child = self._require(txn, child_id)
            if child.sort_order != position:
                txn.update(child.model_copy(update={"sort_order": position}))
                rewritten += 1
        children = txn.children(parent_id)
        parent = txn.get(parent_id) if parent_id is not None else None
        scope = self._scope_of_parent(parent)
        event = DomainEvent(
            event_type=EventType.CHILDREN_REORDERED,
            node_ids=list(ordered),
            old_path=parent.materialized_path if parent else None,
            new_path=parent.materialized_path if parent else None,
            payload={"parent_id": parent_id},
        )
        return _Outcome(children, invalidate=[scope], events=[event], rewritten=rewritten)

    def reorder(self, parent_id: str | None, ordered_child_ids: Sequence[str]) -> List[CategoryNode]:
        """Assign ``sort_order`` 0..n-1 following *ordered_child_ids*, which must list every child once."""

        def plan(reader: TreeReader) -> _Plan:
            scope, ordered = self._plan_reorder(reader, parent_id, ordered_child_ids)
            return _Plan(_scopes([scope]), ordered)

        return self._execute(
            "reorder",
            [parent_id],
            plan,
            lambda txn, planned: self._apply_reorder(txn, parent_id, planned.data),
        )

    def bulk_reorder(
        self,
        orderings: Mapping[str | None, Sequence[str]],
        *,
        deadline: Deadline | None = None,
    ) -> Dict[str | None, List[CategoryNode]]:
        """Reorder the children of several parents in one transaction."""

        requested = {parent_id: list(child_ids) for parent_id, child_ids in orderings.items()}

        def plan(reader: TreeReader) -> _Plan:
            self._check_batch_size(len(requested))
            scopes: List[str] = []
            for parent_id, child_ids in requested.items():
                scope, _ = self._plan_reorder(reader, parent_id, child_ids)
                scopes.append(scope)
            return _Plan(_scopes(scopes), requested)

        def apply(txn: TreeTransaction, planned: _Plan) -> _Outcome:
            combined = _Outcome({}, affected=0)
            for parent_id, child_ids in planned.data.items():
                if deadline is not None:
                    deadline.check("bulk reorder")
                outcome = self._apply_reorder(txn, parent_id, child_ids)
                combined.result[parent_id] = outcome.result
                combined.invalidate.extend(outcome.invalidate)
                combined.events.extend(outcome.events)
                combined.rewritten += outcome.rewritten
                combined.affected += 1
            return combined

        return self._execute("bulk_reorder", list(requested), plan, apply, deadline=deadline)

    # ------------------------------------------------------------------
    # Repair and orphan resolution
    # ------------------------------------------------------------------
    def repair(
        self,
        anomalies: Sequence[Anomaly] | None = None,
        *,
        deadline: Deadline | None = None,
    ) -> RepairReport:
        """Repair *anomalies* (a fresh validation pass when omitted) under a forest-wide lock."""

        def apply(txn: TreeTransaction, planned: _Plan) -> _Outcome:
            report = self._repairer.repair_in(txn, anomalies, deadline=deadline)
            event = DomainEvent(
                event_type=EventType.FOREST_REPAIRED,
                node_ids=list(report.rewritten_node_ids),
                payload={"repaired": report.repaired_count, "unrepairable": len(report.unrepairable)},
            )
            return _Outcome(
                report,
                invalidate=list(report.rewritten_paths),
                events=[event],
                rewritten=len(report.rewritten_node_ids),
                affected=report.repaired_count,
            )

        report: RepairReport = self._execute(
            "repair",
            [anomaly.node_id for anomaly in anomalies or ()],
            lambda reader: _Plan((ROOT_SCOPE,)),
            apply,
            deadline=deadline,
        )
        self._count("Consistency", "repaired", report.repaired_count)
        self._count("Consistency", "unrepairable", len(report.unrepairable))
        return report

    def _ensure_orphan(self, reader: TreeReader, node: CategoryNode) -> None:
        if not PathResolver(reader, self._codec).resolve(node).orphan:
            raise HierarchyValidationError(f"category '{node.id}' is not an orphan")

    def _ensure_outside_chain(self, reader: TreeReader, node_id: str, new_parent_id: str | None) -> None:
        seen: set[str] = set()
        cursor = new_parent_id
        while cursor is not None and cursor not in seen:
            if cursor == node_id:
                raise CyclicMoveError(f"'{new_parent_id}' descends from '{node_id}' through its parent chain")
            seen.add(cursor)
            ancestor = reader.get(cursor)
            cursor = ancestor.parent_id if ancestor is not None else None

    def resolve_orphan(
        self,
        node_id: str,
        action: OrphanResolution | str,
        new_parent_id: str | None = None,
    ) -> CategoryNode:
        """Apply an operator decision to an orphan: reparent it (None makes it a root) or delete it."""

        action = OrphanResolution(action)

        def plan(reader: TreeReader) -> _Plan:
            node = self._require(reader, node_id)
            self._ensure_orphan(reader, node)
            if action is OrphanResolution.REPARENT:
                self._validate_move(reader, node_id, new_parent_id)
                self._ensure_outside_chain(reader, node_id, new_parent_id)
            else:
                self._check_deletable(reader, node)
            return _Plan((ROOT_SCOPE,), node)

        def apply(txn: TreeTransaction, planned: _Plan) -> _Outcome:
            node: CategoryNode = planned.data
            if action is OrphanResolution.REPARENT:
                result, outcome = self._apply_move(txn, node_id, new_parent_id, None)
            else:
                txn.delete(node_id)
                result = node
                outcome = _Outcome(node, invalidate=[node.materialized_path], rewritten=1)
            event = DomainEvent(
                event_type=EventType.ORPHAN_RESOLVED,
                node_ids=[node_id],
                old_path=node.materialized_path,
                new_path=result.materialized_path if action is OrphanResolution.REPARENT else None,
                payload={"action": action.value, "new_parent_id": new_parent_id},
            )
            outcome.events = [event]
            outcome.affected = 1
            return outcome

        return self._execute("resolve_orphan", [node_id, new_parent_id], plan, apply)


__all__ = ["HierarchyManager", "DependencyChecker"]
