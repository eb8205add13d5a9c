from __future__ import annotations

import sys
from pathlib import Path

import pytest
from loguru import logger

from catalog.config.settings import Settings
from catalog.observability import CounterRegistry, canonical_json, stable_hash
from catalog.utils.logging import configure_logging, get_logger, logging_context


def test_counter_registry_tracks_increments() -> None:
    registry = CounterRegistry()
    registry.increment("Mutations", "created", 3)
    registry.increment("Mutations", "committed")
    registry.increment("Traversal", "cache_hits", 2)

    snapshot = registry.snapshot()
    assert snapshot.counters["Mutations"]["created"] == 3
    assert snapshot.counters["Mutations"]["committed"] == 1
    assert snapshot.counters["Traversal"]["cache_hits"] == 2
    assert snapshot.counters["Consistency"]["anomalies"] == 0


def test_counter_registry_labelled_counters() -> None:
    registry = CounterRegistry()
    registry.increment("Mutations", "rejected_by_error", label="CyclicMoveError")
    registry.increment("Mutations", "rejected_by_error", 2, label="ConcurrentModificationError")

    assert registry.get("Mutations", "rejected_by_error") == {
        "CyclicMoveError": 1,
        "ConcurrentModificationError": 2,
    }
    assert list(registry.as_dict()["Mutations"]["rejected_by_error"]) == [
        "ConcurrentModificationError",
        "CyclicMoveError",
    ]


def test_counter_registry_validates_names_and_labels() -> None:
    registry = CounterRegistry()

    with pytest.raises(KeyError):
        registry.increment("Billing", "created")
    with pytest.raises(KeyError):
        registry.increment("Mutations", "exploded")
    with pytest.raises(ValueError):
        registry.increment("Mutations", "rejected_by_error")
    with pytest.raises(ValueError):
        registry.increment("Mutations", "created", label="x")


def test_counter_registry_reset() -> None:
    registry = CounterRegistry()
    registry.increment("Mutations", "moved", 5)
    registry.increment("Mutations", "rejected_by_error", label="X")

    registry.reset()

    assert registry.get("Mutations", "moved") == 0
    assert registry.get("Mutations", "rejected_by_error") == {}


def test_stable_hash_ignores_mapping_order() -> None:
    first = {"b": [1, 2], "a": {"y": 1, "x": 2}}
    second = {"a": {"x": 2, "y": 1}, "b": [1, 2]}

    assert canonical_json(first) == canonical_json(second)
    assert stable_hash(first) == stable_hash(second)
    assert stable_hash({"b": [2, 1]}) != stable_hash({"b": [1, 2]})


def test_configure_logging_writes_log_file(tmp_path: Path) -> None:
    settings = Settings(paths={"data_dir": tmp_path / "data", "logs_dir": tmp_path / "logs"})

    configure_logging(settings, level="INFO")
    with logging_context(operation="test"):
        get_logger(module="tests").info("Hello from tests", answer=42)
    logger.complete()
    logger.remove()
    logger.add(sys.stderr, level="WARNING")

    log_file = settings.log_file
    assert log_file.exists()
    assert "Hello from tests" in log_file.read_text(encoding="utf-8")
