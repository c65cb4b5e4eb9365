"""Event buffering and fan-out to attached clients.

Each bridge starts in *buffering* mode: events accumulate until the
first subscriber attaches. That subscriber receives the whole backlog,
oldest first, and the bridge switches permanently to *live* mode where
every event is pushed straight to the subscribers attached at that
moment. Later subscribers get no replay; they join an in-progress
broadcast.

Subscribers are anything with ``is_open`` and a non-blocking
``send(message)``. ``QueueSubscriber`` adapts an async consumer (e.g. a
WebSocket writer task) while keeping per-subscriber ordering.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from .models import ExitInfo

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    @property
    def is_open(self) -> bool: ...

    def send(self, message: dict[str, Any]) -> None: ...


class QueueSubscriber:
    """Subscriber backed by an unbounded asyncio queue.

    ``close()`` enqueues a ``None`` sentinel so the consumer loop ends
    after draining everything sent before it.
    """

    def __init__(self) -> None:
        self.queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def send(self, message: dict[str, Any]) -> None:
        if self._open:
            self.queue.put_nowait(message)

    def close(self) -> None:
        if self._open:
            self._open = False
            self.queue.put_nowait(None)


def event_message(event: dict[str, Any]) -> dict[str, Any]:
    return {"type": "event", "event": event}


class EventFanout:
    """Buffer-then-multicast delivery for one bridge."""

    def __init__(self, bridge_id: str) -> None:
        self.bridge_id = bridge_id
        self._backlog: list[dict[str, Any]] | None = []
        self._subscribers: list[Subscriber] = []
        self._closed = False

    @property
    def buffering(self) -> bool:
        return self._backlog is not None

    @property
    def backlog_size(self) -> int:
        return len(self._backlog) if self._backlog is not None else 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> int:
        """Attach *subscriber*; returns how many backlog messages it was sent."""
        replayed = 0
        if self._backlog is not None:
            backlog, self._backlog = self._backlog, None
            for message in backlog:
                self._deliver(subscriber, message)
            replayed = len(backlog)
            logger.info(
                "Replayed backlog bridge=%s messages=%d", self.bridge_id, replayed,
            )
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)
        return replayed

    def unsubscribe(self, subscriber: Subscriber) -> None:
        try:
            self._subscribers.remove(subscriber)
        except ValueError:
            pass

    def publish(self, event: dict[str, Any]) -> None:
        self._publish_message(event_message(event))

    def publish_exit(self, info: ExitInfo) -> None:
        if self._closed:
            return
        self._closed = True
        self._publish_message(info.to_message())

    def _publish_message(self, message: dict[str, Any]) -> None:
        if self._backlog is not None:
            self._backlog.append(message)
            return
        for subscriber in list(self._subscribers):
            self._deliver(subscriber, message)

    def _deliver(self, subscriber: Subscriber, message: dict[str, Any]) -> None:
        if not subscriber.is_open:
            return
        try:
            subscriber.send(message)
        except Exception:
            logger.debug(
                "Dropping message for closed subscriber bridge=%s",
                self.bridge_id, exc_info=True,
            )
