"""Domain event publishers."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Iterable, List

from catalog.entities.core import DomainEvent, EventType
from catalog.utils.logging import get_logger

_LOGGER = get_logger(module=__name__)


class EventPublisher(ABC):
    """Receives domain events after the originating mutation has committed."""

    @abstractmethod
    def publish(self, event: DomainEvent) -> None:
        """Deliver *event*; failures are the publisher's concern."""


class InMemoryEventPublisher(EventPublisher):
    """Collects events in memory, mostly for tests and the CLI."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[DomainEvent] = []

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[DomainEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: EventType) -> List[DomainEvent]:
        return [event for event in self.events if event.event_type is event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class LoggingEventPublisher(EventPublisher):
    """Writes each event to the structured log."""

    def publish(self, event: DomainEvent) -> None:
        _LOGGER.info(
            "Domain event",
            event_type=event.event_type.value,
            node_ids=event.node_ids,
            old_path=event.old_path,
            new_path=event.new_path,
        )


def dispatch(publisher: EventPublisher | None, events: Iterable[DomainEvent]) -> int:
    """Fire-and-forget delivery; returns how many events the publisher accepted."""

    if publisher is None:
        return 0
    delivered = 0
    for event in events:
        try:
            publisher.publish(event)
        except Exception as exc:
            _LOGGER.warning(
                "Event publisher failed",
                event_type=event.event_type.value,
                node_ids=event.node_ids,
                error=str(exc),
            )
            continue
        delivered += 1
    return delivered


__all__ = ["EventPublisher", "InMemoryEventPublisher", "LoggingEventPublisher", "dispatch"]
