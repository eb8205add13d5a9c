"""Transactional repair of anomalies reported by the consistency validator."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Sequence, Set

from catalog.entities.core import Anomaly, AnomalyKind, CategoryNode, RepairReport
from catalog.utils.logging import get_logger

from .codec import DEFAULT_CODEC, PathCodec
from .locks import Deadline
from .store import TreeStore, TreeTransaction
from .validator import ConsistencyValidator

_LOGGER = get_logger(module=__name__)
_PATH_KINDS = (AnomalyKind.PATH_MISMATCH, AnomalyKind.DEPTH_MISMATCH)


class PathRepairer:
    """Rewrites drifted paths, depths and sort orders.

    Orphans are never touched: they need an operator decision and are always
    reported as unrepairable. Anomalies that no longer apply are skipped, so
    running a repair twice yields no additional writes.
    """

    def __init__(
        self,
        store: TreeStore,
        validator: ConsistencyValidator | None = None,
        codec: PathCodec = DEFAULT_CODEC,
    ) -> None:
        self._store = store
        self._codec = codec
        self._validator = validator or ConsistencyValidator(store, codec)

    def repair(
        self,
        anomalies: Sequence[Anomaly] | None = None,
        *,
        deadline: Deadline | None = None,
    ) -> RepairReport:
        """Repair *anomalies* (or a fresh validation pass) in one transaction."""

        with self._store.transaction() as txn:
            return self.repair_in(txn, anomalies, deadline=deadline)

    def repair_in(
        self,
        txn: TreeTransaction,
        anomalies: Sequence[Anomaly] | None = None,
        *,
        deadline: Deadline | None = None,
    ) -> RepairReport:
        validator = self._validator.with_reader(txn)
        if anomalies is None:
            anomalies = validator.validate_forest()

        repaired: List[Anomaly] = []
        unrepairable: List[Anomaly] = []
        rewritten: Set[str] = set()
        touched_paths: List[str] = []

        by_node: Dict[str, List[Anomaly]] = defaultdict(list)
        collisions: List[Anomaly] = []
        for anomaly in anomalies:
            if not anomaly.auto_repairable:
                unrepairable.append(anomaly)
            elif anomaly.kind is AnomalyKind.SORT_ORDER_COLLISION:
                collisions.append(anomaly)
            else:
                by_node[anomaly.node_id].append(anomaly)

        resolver = validator.resolver()
        targets: List[CategoryNode] = []
        for node_id, node_anomalies in by_node.items():
            node = txn.get(node_id)
            if node is None:
                _LOGGER.warning("Skipping anomaly for missing node", node_id=node_id)
                continue
            targets.append(node)
        # Ancestors first: order by the path each node is about to receive.
        plans = []
        for node in targets:
            expected = resolver.resolve(node)
            anchor = expected.path if expected.path is not None else node.materialized_path
            plans.append((self._codec.sort_key(anchor), node.id, node, expected))
        plans.sort(key=lambda plan: (plan[0], plan[1]))

        for _, node_id, node, expected in plans:
            if deadline is not None:
                deadline.check("repair")
            if expected.path is None:
                unrepairable.extend(by_node[node_id])
                continue
            new_path = expected.path
            new_depth = self._codec.depth_of(new_path)
            if node.materialized_path == new_path and node.depth == new_depth:
                continue
            touched_paths.extend([node.materialized_path, new_path])
            txn.update(node.model_copy(update={"materialized_path": new_path, "depth": new_depth}))
            rewritten.add(node_id)
            repaired.extend(by_node[node_id])

        for anomaly in collisions:
            if deadline is not None:
                deadline.check("repair")
            changed = self._renumber(txn, anomaly.parent_id)
            if not changed:
                continue
            for node in changed:
                rewritten.add(node.id)
                touched_paths.append(node.materialized_path)
            repaired.append(anomaly)

        report = RepairReport(
            repaired_count=len(repaired),
            repaired=repaired,
            unrepairable=unrepairable,
            rewritten_node_ids=sorted(rewritten),
            rewritten_paths=list(dict.fromkeys(touched_paths)),
        )
        _LOGGER.info(
            "Repair pass finished",
            repaired=report.repaired_count,
            unrepairable=len(report.unrepairable),
            rewritten=len(report.rewritten_node_ids),
        )
        return report

    def _renumber(self, txn: TreeTransaction, parent_id: str | None) -> List[CategoryNode]:
        """Make sibling orders strictly increasing, keeping ``(sort_order, id)`` order."""

        changed: List[CategoryNode] = []
        previous = -1
        for sibling in txn.children(parent_id):
            order = max(sibling.sort_order, previous + 1)
            if order != sibling.sort_order:
                updated = sibling.model_copy(update={"sort_order": order})
                txn.update(updated)
                changed.append(updated)
            previous = order
        return changed


__all__ = ["PathRepairer"]
