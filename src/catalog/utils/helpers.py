"""General-purpose helpers shared by the hierarchy modules."""

from __future__ import annotations

import json
import os
import re
import tempfile
import unicodedata
from pathlib import Path

from .logging import get_logger

_WORD_BOUNDARY_PATTERN = re.compile(r"\s+")
_NON_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")

_LOGGER = get_logger(module=__name__)


def normalize_whitespace(text: str) -> str:
    """Collapse repeated whitespace into single spaces."""

    return _WORD_BOUNDARY_PATTERN.sub(" ", text.strip())


def fold_diacritics(text: str) -> str:
    """Remove diacritics by decomposing unicode characters."""

    normalized = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in normalized if not unicodedata.combining(ch))


def slugify(text: str) -> str:
    """Lower-case, fold diacritics and collapse non-alphanumeric runs into ``-``."""

    lowered = fold_diacritics(text).lower()
    return _NON_SLUG_PATTERN.sub("-", lowered).strip("-")


def ensure_directory(path: Path | str) -> Path:
    """Ensure that a directory exists and return the resolved Path."""

    target = Path(path)
    target.mkdir(parents=True, exist_ok=True)
    return target.resolve()


def serialize_json(data: object, destination: Path | str, *, indent: int = 2) -> Path:
    """Serialize data to JSON with deterministic ordering.

    The payload is written to a sibling temporary file and moved into place so
    readers never observe a truncated document.
    """

    dest_path = Path(destination)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(data, indent=indent, sort_keys=True, ensure_ascii=False) + "\n"
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest_path.name}.", dir=dest_path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, dest_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    _LOGGER.debug("Serialized JSON", path=str(dest_path), size=dest_path.stat().st_size)
    return dest_path


__all__ = [
    "normalize_whitespace",
    "fold_diacritics",
    "slugify",
    "ensure_directory",
    "serialize_json",
]
