"""Typed error taxonomy for hierarchy operations."""

from __future__ import annotations

import time
from typing import Iterable


class HierarchyError(Exception):
    """Base exception for hierarchy failures."""

    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable
        self.timestamp_ms = int(time.time() * 1000)


class HierarchyValidationError(HierarchyError):
    """Caller-fixable request errors; never retried."""


class InvalidSegmentError(HierarchyValidationError):
    """Raised when a path segment is empty or contains the delimiter."""


class MalformedPathError(HierarchyValidationError):
    """Raised when a stored path decodes to an empty segment."""


class DuplicateSiblingNameError(HierarchyValidationError):
    """Raised when a sibling already uses the same normalized segment."""

    def __init__(self, segment: str, parent_id: str | None) -> None:
        scope = f"parent '{parent_id}'" if parent_id else "the root level"
        super().__init__(f"a sibling named '{segment}' already exists under {scope}")
        self.segment = segment
        self.parent_id = parent_id


class IncompleteReorderSetError(HierarchyValidationError):
    """Raised when a reorder request does not list exactly the current children."""

    def __init__(
        self,
        parent_id: str | None,
        *,
        missing: Iterable[str] = (),
        unexpected: Iterable[str] = (),
        duplicates: Iterable[str] = (),
    ) -> None:
        self.parent_id = parent_id
        self.missing = sorted(missing)
        self.unexpected = sorted(unexpected)
        self.duplicates = sorted(duplicates)
        super().__init__(
            f"reorder of '{parent_id}' must list every child exactly once "
            f"(missing={self.missing}, unexpected={self.unexpected}, duplicates={self.duplicates})"
        )


class NodeHasChildrenError(HierarchyValidationError):
    """Raised when deleting a node that still has children."""


class DependentItemsExistError(HierarchyValidationError):
    """Raised when deleting a node that still has dependent catalog items."""


class StructuralConflictError(HierarchyError):
    """Requests that conflict with the tree shape; reissue differently."""


class CyclicMoveError(StructuralConflictError):
    """Raised when a move would place a node under itself or its descendant."""


class OverlappingMoveBatchError(StructuralConflictError):
    """Raised when a bulk move batch contains nested or repeated subtrees."""


class NoCommonAncestorError(StructuralConflictError):
    """Raised when two nodes live under disjoint roots."""


class HierarchyConcurrencyError(HierarchyError):
    """Transient failures that callers may retry with backoff."""

    retryable = True


class ConcurrentModificationError(HierarchyConcurrencyError):
    """Raised when a subtree lock cannot be acquired or the subtree drifted."""


class DeadlineExceededError(HierarchyConcurrencyError):
    """Raised when a caller-supplied deadline expires mid-operation."""


class NodeNotFoundError(HierarchyError, LookupError):
    """Raised when a node id (or path) does not resolve."""

    def __init__(self, node_id: str | None, *, path: str | None = None) -> None:
        target = f"path '{path}'" if path is not None else f"id '{node_id}'"
        super().__init__(f"category node not found for {target}")
        self.node_id = node_id
        self.path = path


__all__ = [
    "HierarchyError",
    "HierarchyValidationError",
    "InvalidSegmentError",
    "MalformedPathError",
    "DuplicateSiblingNameError",
    "IncompleteReorderSetError",
    "NodeHasChildrenError",
    "DependentItemsExistError",
    "StructuralConflictError",
    "CyclicMoveError",
    "OverlappingMoveBatchError",
    "NoCommonAncestorError",
    "HierarchyConcurrencyError",
    "ConcurrentModificationError",
    "DeadlineExceededError",
    "NodeNotFoundError",
]
