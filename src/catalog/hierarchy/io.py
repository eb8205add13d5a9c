"""I/O utilities for category hierarchies."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List, Sequence

from catalog.entities.core import CategoryNode, RepairReport
from catalog.utils.helpers import ensure_directory, serialize_json
from catalog.utils.logging import get_logger

from .store import snapshot_payload
from .validator import ConsistencyReport

_LOGGER = get_logger(module=__name__)


def load_nodes(input_paths: Sequence[str | Path]) -> List[CategoryNode]:
    """Read nodes from JSON snapshots (``{"nodes": [...]}`` or a list) or JSONL files."""

    nodes: List[CategoryNode] = []
    for path_like in input_paths:
        path = Path(path_like)
        if not path.exists():
            raise FileNotFoundError(f"category file not found: {path}")
        if path.suffix == ".jsonl":
            with path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    if not line.strip():
                        continue
                    nodes.append(CategoryNode.model_validate(json.loads(line)))
            continue
        payload = json.loads(path.read_text(encoding="utf-8"))
        records = payload.get("nodes", []) if isinstance(payload, dict) else payload
        nodes.extend(CategoryNode.model_validate(record) for record in records)
    _LOGGER.info(
        "Loaded category nodes",
        total=len(nodes),
        files=[str(Path(p)) for p in input_paths],
    )
    return nodes


def write_snapshot(nodes: Iterable[CategoryNode], output_path: str | Path) -> Path:
    path = Path(output_path)
    ensure_directory(path.parent)
    payload = snapshot_payload(nodes)
    serialize_json(payload, path)
    _LOGGER.info("Wrote category snapshot", path=str(path), nodes=len(payload["nodes"]))
    return path.resolve()


def export_tree(tree: List[dict], output_path: str | Path, *, format: str = "json") -> Path:
    """Export a nested tree (see ``HierarchyManager.tree``) as JSON or an indented outline."""

    path = Path(output_path)
    ensure_directory(path.parent)
    format = format.lower()
    if format == "json":
        serialize_json({"roots": tree}, path)
    elif format == "outline":
        lines: List[str] = []

        def walk(entry: dict, indent: int) -> None:
            lines.append(f"{'  ' * indent}- {entry['name']} ({entry['path']})")
            for child in entry.get("children", []):
                walk(child, indent + 1)

        for root in tree:
            walk(root, 0)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    else:
        raise ValueError(f"unsupported tree export format: {format}")
    _LOGGER.info("Exported category tree", path=str(path), format=format)
    return path.resolve()


def _write_payload(payload: dict[str, Any], output_path: str | Path) -> Path:
    path = Path(output_path)
    ensure_directory(path.parent)
    serialize_json(payload, path)
    return path.resolve()


def write_consistency_report(report: ConsistencyReport, output_path: str | Path) -> Path:
    return _write_payload(report.to_dict(), output_path)


def write_repair_report(report: RepairReport, output_path: str | Path) -> Path:
    payload = report.model_dump(mode="json")
    payload["written_at"] = datetime.now(timezone.utc).isoformat()
    return _write_payload(payload, output_path)


__all__ = [
    "load_nodes",
    "write_snapshot",
    "export_tree",
    "write_consistency_report",
    "write_repair_report",
]
