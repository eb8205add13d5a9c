"""Pure conversions between segment chains and materialized path strings."""

from __future__ import annotations

from fnmatch import fnmatchcase
from typing import List, Sequence, Tuple

from catalog.utils.helpers import slugify

from .errors import InvalidSegmentError, MalformedPathError

DEFAULT_DELIMITER = "/"
ROOT_SCOPE = ""


class PathCodec:
    """Encodes ancestor chains as delimited paths (``electronics/phones``).

    Paths carry no leading or trailing delimiter; a root's path is its single
    segment. All methods are pure and safe to share between threads.
    """

    def __init__(self, delimiter: str = DEFAULT_DELIMITER) -> None:
        if not delimiter:
            raise ValueError("delimiter must be a non-empty string")
        self._delimiter = delimiter

    @property
    def delimiter(self) -> str:
        return self._delimiter

    # ------------------------------------------------------------------
    # Segments
    # ------------------------------------------------------------------
    def segment_for(self, name: str) -> str:
        """Derive the normalized path segment for a display name."""

        segment = slugify(name or "")
        if not segment:
            raise InvalidSegmentError(f"name '{name}' does not produce a usable path segment")
        return self._check_segment(segment)

    def _check_segment(self, segment: str) -> str:
        if not segment:
            raise InvalidSegmentError("path segments must not be empty")
        if self._delimiter in segment:
            raise InvalidSegmentError(
                f"segment '{segment}' contains the reserved delimiter '{self._delimiter}'"
            )
        return segment

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------
    def encode(self, ancestor_segments: Sequence[str], own_segment: str) -> str:
        segments = [self._check_segment(segment) for segment in ancestor_segments]
        segments.append(self._check_segment(own_segment))
        return self._delimiter.join(segments)

    def decode(self, path: str) -> List[str]:
        segments = path.split(self._delimiter)
        if any(not segment for segment in segments):
            raise MalformedPathError(f"path '{path}' contains an empty segment")
        return segments

    def child_path(self, parent_path: str | None, own_segment: str) -> str:
        ancestors = self.decode(parent_path) if parent_path else []
        return self.encode(ancestors, own_segment)

    def depth_of(self, path: str) -> int:
        return len(self.decode(path)) - 1

    def last_segment(self, path: str) -> str:
        return self.decode(path)[-1]

    # ------------------------------------------------------------------
    # Prefix relationships
    # ------------------------------------------------------------------
    def is_descendant_path(self, candidate_path: str, ancestor_path: str) -> bool:
        """True iff *candidate_path* lies strictly below *ancestor_path*."""

        if not ancestor_path:
            return False
        return candidate_path.startswith(ancestor_path + self._delimiter)

    def overlaps(self, first: str, second: str) -> bool:
        """True when either scope equals or contains the other.

        :data:`ROOT_SCOPE` overlaps every scope.
        """

        if first == ROOT_SCOPE or second == ROOT_SCOPE:
            return True
        return (
            first == second
            or self.is_descendant_path(first, second)
            or self.is_descendant_path(second, first)
        )

    def parent_path(self, path: str) -> str | None:
        segments = self.decode(path)
        if len(segments) == 1:
            return None
        return self._delimiter.join(segments[:-1])

    def ancestor_paths(self, path: str, *, include_self: bool = False) -> List[str]:
        """Return every prefix path of *path*, root first."""

        segments = self.decode(path)
        stop = len(segments) if include_self else len(segments) - 1
        return [self._delimiter.join(segments[: index + 1]) for index in range(stop)]

    def replace_prefix(self, path: str, old_prefix: str, new_prefix: str) -> str:
        """Swap the *old_prefix* of *path* for *new_prefix*, keeping trailing segments."""

        if path == old_prefix:
            return new_prefix
        if not self.is_descendant_path(path, old_prefix):
            raise ValueError(f"path '{path}' is not within '{old_prefix}'")
        return new_prefix + path[len(old_prefix) :]

    def common_prefix(self, first: str, second: str) -> str | None:
        """Longest shared segment prefix of two paths, or None for disjoint roots."""

        shared: List[str] = []
        for left, right in zip(self.decode(first), self.decode(second)):
            if left != right:
                break
            shared.append(left)
        return self._delimiter.join(shared) if shared else None

    # ------------------------------------------------------------------
    # Ordering and matching
    # ------------------------------------------------------------------
    def sort_key(self, path: str) -> Tuple[str, ...]:
        """Segment tuple ordering; equals pre-order traversal of the tree."""

        return tuple(path.split(self._delimiter))

    def matches_pattern(self, path: str, pattern: str) -> bool:
        """Segment-wise glob match; ``*`` stays within a segment, ``**`` spans any."""

        return _match_segments(path.split(self._delimiter), pattern.split(self._delimiter))


def _match_segments(segments: Sequence[str], patterns: Sequence[str]) -> bool:
    if not patterns:
        return not segments
    head, rest = patterns[0], patterns[1:]
    if head == "**":
        return any(_match_segments(segments[index:], rest) for index in range(len(segments) + 1))
    if not segments:
        return False
    return fnmatchcase(segments[0], head) and _match_segments(segments[1:], rest)


DEFAULT_CODEC = PathCodec()


def encode(ancestor_segments: Sequence[str], own_segment: str) -> str:
    return DEFAULT_CODEC.encode(ancestor_segments, own_segment)


def decode(path: str) -> List[str]:
    return DEFAULT_CODEC.decode(path)


def is_descendant_path(candidate_path: str, ancestor_path: str) -> bool:
    return DEFAULT_CODEC.is_descendant_path(candidate_path, ancestor_path)


def depth_of(path: str) -> int:
    return DEFAULT_CODEC.depth_of(path)


__all__ = [
    "PathCodec",
    "DEFAULT_CODEC",
    "DEFAULT_DELIMITER",
    "ROOT_SCOPE",
    "encode",
    "decode",
    "is_descendant_path",
    "depth_of",
]
