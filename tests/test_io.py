from __future__ import annotations

import json
from pathlib import Path

import pytest

from catalog.hierarchy import JsonFileTreeStore
from catalog.hierarchy.io import (
    export_tree,
    load_nodes,
    write_consistency_report,
    write_repair_report,
    write_snapshot,
)

RECORDS = [
    {"id": "electronics", "name": "Electronics", "materialized_path": "electronics", "depth": 0},
    {
        "id": "phones",
        "parent_id": "electronics",
        "name": "Phones",
        "materialized_path": "electronics/phones",
        "depth": 1,
    },
]


def test_load_nodes_from_json_variants(tmp_path: Path) -> None:
    as_list = tmp_path / "list.json"
    as_list.write_text(json.dumps(RECORDS[:1]), encoding="utf-8")
    as_snapshot = tmp_path / "snapshot.json"
    as_snapshot.write_text(json.dumps({"nodes": RECORDS[1:]}), encoding="utf-8")

    nodes = load_nodes([as_list, as_snapshot])

    assert [node.id for node in nodes] == ["electronics", "phones"]
    assert nodes[1].parent_id == "electronics"


def test_load_nodes_from_jsonl(tmp_path: Path) -> None:
    path = tmp_path / "nodes.jsonl"
    path.write_text("\n".join(json.dumps(record) for record in RECORDS) + "\n\n", encoding="utf-8")

    assert [node.materialized_path for node in load_nodes([path])] == ["electronics", "electronics/phones"]


def test_load_nodes_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_nodes([tmp_path / "missing.json"])


def test_written_snapshot_opens_as_store(tmp_path: Path) -> None:
    nodes = load_nodes([_write(tmp_path / "seed.json", RECORDS)])

    target = write_snapshot(nodes, tmp_path / "nested" / "categories.json")
    store = JsonFileTreeStore(target)

    assert store.get_by_path("electronics/phones").id == "phones"


def test_export_tree_formats(manager, catalog, tmp_path: Path) -> None:
    tree = manager.tree()

    json_path = export_tree(tree, tmp_path / "tree.json")
    outline_path = export_tree(tree, tmp_path / "tree.txt", format="outline")

    payload = json.loads(json_path.read_text(encoding="utf-8"))
    assert [root["id"] for root in payload["roots"]] == ["electronics", "books", "archive"]
    lines = outline_path.read_text(encoding="utf-8").splitlines()
    assert lines[:3] == [
        "- Electronics (electronics)",
        "  - Phones (electronics/phones)",
        "    - Smartphones (electronics/phones/smartphones)",
    ]
    with pytest.raises(ValueError):
        export_tree(tree, tmp_path / "tree.csv", format="csv")


def test_report_writers(manager, catalog, tmp_path: Path) -> None:
    consistency = write_consistency_report(manager.consistency_report(), tmp_path / "reports" / "check.json")
    repair = write_repair_report(manager.repair(), tmp_path / "reports" / "repair.json")

    assert json.loads(consistency.read_text(encoding="utf-8"))["passed"] is True
    payload = json.loads(repair.read_text(encoding="utf-8"))
    assert payload["repaired_count"] == 0
    assert "written_at" in payload


def _write(path: Path, records) -> Path:
    path.write_text(json.dumps(records), encoding="utf-8")
    return path
