"""Deterministic helpers for observability and persistence.

Counter snapshots and persisted forest snapshots must serialise identically
across runs so checksums stay comparable. This module centralises stable
ordering, canonical serialisation and checksum helpers.
"""
from __future__ import annotations

from dataclasses import asdict, is_dataclass
from hashlib import sha256
import json
import re
from typing import Any, Callable, Iterable, Mapping, TypeVar

_T = TypeVar("_T")


_HEX_ADDRESS_RE = re.compile(r"0x[0-9A-Fa-f]+")


def _stable_value_key(value: Any) -> tuple[int, str]:
    """Return a deterministic sort key for *value*."""

    try:
        serialised = json.dumps(value, separators=(",", ":"), sort_keys=True)
    except TypeError:
        serialised = _HEX_ADDRESS_RE.sub("0x", repr(value))
        return (1, serialised)
    return (0, serialised)


def _convert(value: Any) -> Any:
    """Recursively convert *value* into JSON-serialisable primitives.

    - Dataclasses are converted into dictionaries before recursion.
    - Mappings become sorted lists of key/value pairs to guarantee order.
    - Sets become sorted lists; other sequences keep their order.
    """

    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, Mapping):
        return [
            [str(key), _convert(val)]
            for key, val in sorted(value.items(), key=lambda item: str(item[0]))
        ]
    if isinstance(value, (list, tuple)):
        return [_convert(item) for item in value]
    if isinstance(value, (set, frozenset)):
        converted_items = [_convert(item) for item in value]
        return stable_sorted(converted_items, key=_stable_value_key)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def canonical_json(payload: Any) -> str:
    """Serialise *payload* into a canonical JSON string."""

    return json.dumps(_convert(payload), separators=(",", ":"), sort_keys=False)


def stable_hash(payload: Any) -> str:
    """Return a hex digest for *payload* using canonical JSON serialisation."""

    return sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def stable_sorted(
    items: Iterable[_T], *, key: Callable[[_T], Any] | None = None, reverse: bool = False
) -> list[_T]:
    """Stable sorting helper that always materialises into a list."""

    return sorted(list(items), key=key, reverse=reverse)


__all__ = ["canonical_json", "stable_hash", "stable_sorted"]
