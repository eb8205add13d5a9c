"""Read-only consistency checks over stored category nodes."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Sequence

from catalog.entities.core import Anomaly, AnomalyKind, CategoryNode
from catalog.utils.logging import get_logger, log_timing

from .codec import DEFAULT_CODEC, PathCodec
from .errors import InvalidSegmentError, MalformedPathError
from .store import TreeReader

_LOGGER = get_logger(module=__name__)


@dataclass(slots=True, frozen=True)
class ExpectedPath:
    """What a node's path should be according to its ``parent_id`` chain.

    ``path`` is None when the chain contains a name that cannot be encoded.
    Orphans anchor on their own stored path so their subtree can still be
    checked relative to it.
    """

    path: str | None
    orphan: bool = False
    reason: str | None = None


class PathResolver:
    """Memoising resolver of expected paths for one consistent read view."""

    def __init__(self, reader: TreeReader, codec: PathCodec = DEFAULT_CODEC) -> None:
        self._reader = reader
        self._codec = codec
        self._memo: Dict[str, ExpectedPath] = {}

    def _root(self, node: CategoryNode) -> ExpectedPath:
        try:
            return ExpectedPath(self._codec.segment_for(node.name))
        except InvalidSegmentError as exc:
            return ExpectedPath(None, reason=str(exc))

    def _child(self, node: CategoryNode, parent: ExpectedPath) -> ExpectedPath:
        if parent.path is None:
            return ExpectedPath(None, reason="an ancestor path cannot be computed")
        try:
            return ExpectedPath(self._codec.child_path(parent.path, self._codec.segment_for(node.name)))
        except (InvalidSegmentError, MalformedPathError) as exc:
            return ExpectedPath(None, reason=str(exc))

    def resolve(self, node: CategoryNode) -> ExpectedPath:
        chain: List[CategoryNode] = []
        position: Dict[str, int] = {}
        current = node
        while current.id not in self._memo:
            if current.id in position:
                start = position[current.id]
                for member in chain[start:]:
                    self._memo[member.id] = ExpectedPath(
                        member.materialized_path, orphan=True, reason="parent chain loops back on itself"
                    )
                del chain[start:]
                break
            if current.parent_id is None:
                self._memo[current.id] = self._root(current)
                break
            parent = self._reader.get(current.parent_id)
            if parent is None:
                self._memo[current.id] = ExpectedPath(
                    current.materialized_path,
                    orphan=True,
                    reason=f"parent '{current.parent_id}' does not exist",
                )
                break
            position[current.id] = len(chain)
            chain.append(current)
            current = parent

        resolved = self._memo[current.id]
        for member in reversed(chain):
            resolved = self._child(member, resolved)
            self._memo[member.id] = resolved
        return self._memo[node.id]


@dataclass(slots=True)
class ConsistencyReport:
    """Structured validation output for operators and tooling."""

    passed: bool
    anomalies: List[Anomaly] = field(default_factory=list)
    counts_by_kind: Dict[str, int] = field(default_factory=dict)
    statistics: Dict[str, object] = field(default_factory=dict)
    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def unrepairable(self) -> List[Anomaly]:
        return [anomaly for anomaly in self.anomalies if not anomaly.auto_repairable]

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "anomalies": [anomaly.model_dump(mode="json") for anomaly in self.anomalies],
            "counts_by_kind": dict(self.counts_by_kind),
            "statistics": dict(self.statistics),
            "generated_at": self.generated_at,
        }


def forest_statistics(nodes: Sequence[CategoryNode]) -> Dict[str, object]:
    """Shape summary: node/root/leaf counts and the per-depth histogram."""

    parents = {node.parent_id for node in nodes if node.parent_id is not None}
    depths = Counter(node.depth for node in nodes)
    return {
        "node_count": len(nodes),
        "root_count": sum(1 for node in nodes if node.parent_id is None),
        "leaf_count": sum(1 for node in nodes if node.id not in parents),
        "max_depth": max(depths) if depths else 0,
        "nodes_per_depth": {str(depth): depths[depth] for depth in sorted(depths)},
    }


class ConsistencyValidator:
    """Compares stored paths and depths against the authoritative parent chain."""

    def __init__(self, reader: TreeReader, codec: PathCodec = DEFAULT_CODEC) -> None:
        self._reader = reader
        self._codec = codec

    @property
    def codec(self) -> PathCodec:
        return self._codec

    def with_reader(self, reader: TreeReader) -> "ConsistencyValidator":
        """Return a validator bound to another read view (e.g. an open transaction)."""

        return ConsistencyValidator(reader, self._codec)

    def resolver(self) -> PathResolver:
        return PathResolver(self._reader, self._codec)

    # ------------------------------------------------------------------
    # Node checks
    # ------------------------------------------------------------------
    def validate_node(self, node: CategoryNode, *, resolver: PathResolver | None = None) -> List[Anomaly]:
        expected = (resolver or self.resolver()).resolve(node)
        anomalies: List[Anomaly] = []

        if expected.orphan:
            anomalies.append(
                Anomaly(
                    kind=AnomalyKind.ORPHAN_NODE,
                    node_id=node.id,
                    actual=node.parent_id,
                    parent_id=node.parent_id,
                    detail=expected.reason,
                )
            )
        elif expected.path != node.materialized_path:
            anomalies.append(
                Anomaly(
                    kind=AnomalyKind.PATH_MISMATCH,
                    node_id=node.id,
                    expected=expected.path,
                    actual=node.materialized_path,
                    parent_id=node.parent_id,
                    detail=expected.reason,
                )
            )

        expected_depth = self._expected_depth(node, expected)
        if expected_depth is not None and expected_depth != node.depth:
            anomalies.append(
                Anomaly(
                    kind=AnomalyKind.DEPTH_MISMATCH,
                    node_id=node.id,
                    expected=str(expected_depth),
                    actual=str(node.depth),
                    parent_id=node.parent_id,
                )
            )
        return anomalies

    def _expected_depth(self, node: CategoryNode, expected: ExpectedPath) -> int | None:
        try:
            return self._codec.depth_of(node.materialized_path)
        except MalformedPathError:
            if expected.path is None or expected.orphan:
                return None
            return self._codec.depth_of(expected.path)

    # ------------------------------------------------------------------
    # Forest checks
    # ------------------------------------------------------------------
    def sort_order_collisions(self, nodes: Iterable[CategoryNode]) -> List[Anomaly]:
        groups: Dict[str | None, List[CategoryNode]] = defaultdict(list)
        for node in nodes:
            groups[node.parent_id].append(node)

        anomalies: List[Anomaly] = []
        for parent_id in sorted(groups, key=lambda value: (value is not None, value or "")):
            siblings = sorted(groups[parent_id], key=lambda node: (node.sort_order, node.id))
            counts = Counter(node.sort_order for node in siblings)
            colliding = [node for node in siblings if counts[node.sort_order] > 1]
            if not colliding:
                continue
            anomalies.append(
                Anomaly(
                    kind=AnomalyKind.SORT_ORDER_COLLISION,
                    node_id=colliding[0].id,
                    actual=",".join(node.id for node in colliding),
                    parent_id=parent_id,
                    detail=f"{len(colliding)} siblings share a sort_order",
                )
            )
        return anomalies

    def validate_forest(self) -> List[Anomaly]:
        nodes = sorted(
            self._reader.nodes(),
            key=lambda node: (self._codec.sort_key(node.materialized_path), node.id),
        )
        resolver = self.resolver()
        anomalies: List[Anomaly] = []
        with log_timing("validate_forest", logger_=_LOGGER):
            for node in nodes:
                anomalies.extend(self.validate_node(node, resolver=resolver))
            anomalies.extend(self.sort_order_collisions(nodes))
        _LOGGER.info("Validated forest", nodes=len(nodes), anomalies=len(anomalies))
        return anomalies

    def report(self) -> ConsistencyReport:
        nodes = self._reader.nodes()
        anomalies = self.validate_forest()
        counts = Counter(anomaly.kind.value for anomaly in anomalies)
        return ConsistencyReport(
            passed=not anomalies,
            anomalies=anomalies,
            counts_by_kind={kind.value: counts.get(kind.value, 0) for kind in AnomalyKind},
            statistics=forest_statistics(nodes),
        )


__all__ = [
    "ExpectedPath",
    "PathResolver",
    "ConsistencyReport",
    "ConsistencyValidator",
    "forest_statistics",
]
