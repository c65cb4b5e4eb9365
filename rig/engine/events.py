"""In-process event stream for one agent process.

The channel publishes every non-response line here, in arrival order,
followed by a single exit notification. Listeners are plain callbacks
invoked synchronously on the event loop, so a listener sees events in
exactly the order the process wrote them.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .models import ExitInfo

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], None]
ExitHandler = Callable[[ExitInfo], None]


@dataclass(eq=False)
class _Listener:
    on_event: EventHandler | None
    on_exit: ExitHandler | None


class EventStream:
    """Synchronous multi-listener stream of protocol events."""

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._listeners: list[_Listener] = []
        self._exit: ExitInfo | None = None

    @property
    def exit_info(self) -> ExitInfo | None:
        return self._exit

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(
        self,
        on_event: EventHandler | None = None,
        on_exit: ExitHandler | None = None,
    ) -> Callable[[], None]:
        """Register callbacks; returns an idempotent unsubscribe function.

        Subscribing after the stream has ended calls ``on_exit`` at once.
        """
        listener = _Listener(on_event=on_event, on_exit=on_exit)
        if self._exit is not None:
            if on_exit is not None:
                on_exit(self._exit)
            return lambda: None
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def emit_event(self, event: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            if listener.on_event is None:
                continue
            try:
                listener.on_event(event)
            except Exception:
                logger.exception("Event listener failed stream=%s", self._name)

    def emit_exit(self, info: ExitInfo) -> None:
        if self._exit is not None:
            return
        self._exit = info
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            if listener.on_exit is None:
                continue
            try:
                listener.on_exit(info)
            except Exception:
                logger.exception("Exit listener failed stream=%s", self._name)
