"""Materialized-path category hierarchy: codec, store, validation, repair and orchestration."""

from .cache import CacheKey, TraversalCache
from .codec import DEFAULT_CODEC, DEFAULT_DELIMITER, ROOT_SCOPE, PathCodec
from .errors import (
    ConcurrentModificationError,
    CyclicMoveError,
    DeadlineExceededError,
    DependentItemsExistError,
    DuplicateSiblingNameError,
    HierarchyConcurrencyError,
    HierarchyError,
    HierarchyValidationError,
    IncompleteReorderSetError,
    InvalidSegmentError,
    MalformedPathError,
    NoCommonAncestorError,
    NodeHasChildrenError,
    NodeNotFoundError,
    OverlappingMoveBatchError,
    StructuralConflictError,
)
from .events import EventPublisher, InMemoryEventPublisher, LoggingEventPublisher
from .locks import Deadline, SubtreeLockManager
from .manager import DependencyChecker, HierarchyManager
from .repair import PathRepairer
from .store import InMemoryTreeStore, JsonFileTreeStore, TreeReader, TreeStore, TreeTransaction
from .validator import ConsistencyReport, ConsistencyValidator

__all__ = [
    "CacheKey",
    "TraversalCache",
    "PathCodec",
    "DEFAULT_CODEC",
    "DEFAULT_DELIMITER",
    "ROOT_SCOPE",
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
    "EventPublisher",
    "InMemoryEventPublisher",
    "LoggingEventPublisher",
    "Deadline",
    "SubtreeLockManager",
    "DependencyChecker",
    "HierarchyManager",
    "PathRepairer",
    "TreeReader",
    "TreeStore",
    "TreeTransaction",
    "InMemoryTreeStore",
    "JsonFileTreeStore",
    "ConsistencyReport",
    "ConsistencyValidator",
]
