"""Path-prefix subtree locks and caller deadlines."""

from __future__ import annotations

import itertools
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, List, Tuple

from catalog.utils.logging import get_logger

from .codec import DEFAULT_CODEC, PathCodec
from .errors import ConcurrentModificationError, DeadlineExceededError

_LOGGER = get_logger(module=__name__)


class Deadline:
    """Absolute expiry on the monotonic clock."""

    def __init__(self, expires_at: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._expires_at = expires_at
        self._clock = clock

    @classmethod
    def after(cls, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        return cls(clock() + seconds, clock=clock)

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self, operation: str = "operation") -> None:
        if self.expired:
            raise DeadlineExceededError(f"deadline exceeded during {operation}")

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"Deadline(remaining={self.remaining():.3f}s)"


class SubtreeLockManager:
    """Grants exclusive access to sets of path scopes.

    Two scopes conflict when one equals or lies beneath the other, so a lock
    on ``electronics`` excludes ``electronics/phones`` but not ``books``. The
    empty root scope conflicts with everything. Locks are not reentrant.
    """

    def __init__(self, codec: PathCodec = DEFAULT_CODEC, *, timeout: float = 2.0) -> None:
        self._codec = codec
        self._timeout = timeout
        self._condition = threading.Condition()
        self._held: Dict[int, Tuple[str, ...]] = {}
        self._tokens = itertools.count(1)

    def _conflicts(self, scopes: Iterable[str]) -> bool:
        for held in self._held.values():
            for scope in scopes:
                if any(self._codec.overlaps(scope, other) for other in held):
                    return True
        return False

    @contextmanager
    def acquire(
        self,
        scopes: Iterable[str],
        *,
        timeout: float | None = None,
        deadline: Deadline | None = None,
    ) -> Iterator[None]:
        """Hold every scope in *scopes* for the duration of the block.

        Waits at most ``timeout`` seconds (the manager default when omitted)
        and never beyond *deadline*. Raises :class:`ConcurrentModificationError`
        when the wait runs out and :class:`DeadlineExceededError` when the
        deadline is what ran out.
        """

        requested = tuple(sorted(set(scopes)))
        wait = self._timeout if timeout is None else timeout
        if deadline is not None:
            deadline.check("lock acquisition")
            wait = min(wait, deadline.remaining())
        give_up_at = time.monotonic() + wait

        with self._condition:
            while self._conflicts(requested):
                remaining = give_up_at - time.monotonic()
                if remaining <= 0:
                    if deadline is not None and deadline.expired:
                        raise DeadlineExceededError("deadline exceeded while waiting for subtree lock")
                    _LOGGER.debug("Subtree lock timeout", scopes=list(requested))
                    raise ConcurrentModificationError(
                        f"subtree {list(requested)} is locked by a concurrent mutation"
                    )
                self._condition.wait(remaining)
            token = next(self._tokens)
            self._held[token] = requested

        try:
            yield
        finally:
            with self._condition:
                del self._held[token]
                self._condition.notify_all()

    def held_scopes(self) -> List[str]:
        with self._condition:
            return sorted(scope for scopes in self._held.values() for scope in scopes)


__all__ = ["Deadline", "SubtreeLockManager"]
