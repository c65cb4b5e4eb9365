"""Completion notifications for dispatched bridges.

The operator hands every bridge its dispatch tool starts to a
``NotificationWatcher``. The watcher follows that bridge until it
finishes (an ``agent_end`` event or process exit), then reports one
``SessionDone`` to its listeners and lets go.

Bridges are followed either in-process, on a local ``BridgeRegistry``
bridge's raw event stream, or over the rig server's watch-only socket
(``/api/ws/{bridgeId}?watch=1``) with an aiohttp WebSocket client.
Neither joins the bridge's fan-out, so replay stays with the first UI
client.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import aiohttp

from rig.engine.models import DispatchWatchTarget, ExitInfo
from rig.engine.registry import BridgeRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionDone:
    conversation_id: str
    bridge_id: str
    title: str


DoneListener = Callable[[SessionDone], None]


def watch_url(rig_url: str, bridge_id: str) -> str:
    """Watch-only socket URL for *bridge_id* on the rig server at *rig_url*."""
    base = rig_url.rstrip("/")
    if base.startswith("http"):
        base = "ws" + base[len("http"):]
    return f"{base}/api/ws/{quote(bridge_id, safe='')}?watch=1"


def _finishes(message: dict[str, Any]) -> bool:
    """True when a socket message marks the end of the bridge's work."""
    if message.get("type") == "exit":
        return True
    event = message.get("event")
    return (
        message.get("type") == "event"
        and isinstance(event, dict)
        and event.get("type") == "agent_end"
    )


class NotificationWatcher:
    """Watches dispatched bridges and reports each completion once."""

    def __init__(
        self,
        *,
        registry: BridgeRegistry | None = None,
        rig_url: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        if registry is None and rig_url is None:
            raise ValueError("NotificationWatcher needs a registry or a rig_url")
        self.registry = registry
        self.rig_url = rig_url.rstrip("/") if rig_url else None
        self._session = session
        self._owns_session = session is None
        self._listeners: list[DoneListener] = []
        # bridge id -> detach callable (local) or reader task (remote)
        self._watched: dict[str, Callable[[], None] | asyncio.Task] = {}

    @property
    def watching(self) -> list[str]:
        return list(self._watched)

    def on_done(self, listener: DoneListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, target: DispatchWatchTarget) -> None:
        done = SessionDone(
            conversation_id=target.conversation_id,
            bridge_id=target.bridge_id,
            title=target.title,
        )
        logger.info(
            "Session done bridge=%s conversation=%s title=%r",
            done.bridge_id, done.conversation_id, done.title,
        )
        for listener in list(self._listeners):
            try:
                listener(done)
            except Exception:
                logger.exception("SessionDone listener failed bridge=%s", done.bridge_id)

    def watch(self, target: DispatchWatchTarget) -> None:
        """Start following *target*; a bridge already watched is ignored."""
        if target.bridge_id in self._watched:
            return
        if self.registry is not None:
            self._watch_local(target)
        elif self.rig_url is not None:
            self._watched[target.bridge_id] = asyncio.create_task(
                self._watch_remote(target, watch_url(self.rig_url, target.bridge_id))
            )

    # ── In-process ──

    def _watch_local(self, target: DispatchWatchTarget) -> None:
        session = self.registry.lookup(target.bridge_id) if self.registry else None
        if session is None:
            logger.warning("Cannot watch unknown bridge=%s", target.bridge_id)
            return

        finished = False

        def finish() -> None:
            nonlocal finished
            if finished:
                return
            finished = True
            detach = self._watched.pop(target.bridge_id, None)
            if detach is not None and not isinstance(detach, asyncio.Task):
                detach()
            self._emit(target)

        def on_event(event: dict[str, Any]) -> None:
            if event.get("type") == "agent_end":
                finish()

        def on_exit(_info: ExitInfo) -> None:
            finish()

        # Placeholder first: an exited stream calls on_exit during subscribe.
        self._watched[target.bridge_id] = lambda: None
        detach = session.channel.events.subscribe(on_event=on_event, on_exit=on_exit)
        if finished:
            detach()
        else:
            self._watched[target.bridge_id] = detach

    # ── Remote ──

    async def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _watch_remote(self, target: DispatchWatchTarget, url: str) -> None:
        try:
            client = await self._client()
            async with client.ws_connect(url) as ws:
                logger.info("Watching bridge=%s via %s", target.bridge_id, url)
                async for msg in ws:
                    if msg.type != aiohttp.WSMsgType.TEXT:
                        if msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                            break
                        continue
                    try:
                        data = json.loads(msg.data)
                    except ValueError:
                        continue
                    if isinstance(data, dict) and _finishes(data):
                        self._watched.pop(target.bridge_id, None)
                        self._emit(target)
                        return
                logger.info(
                    "Watch socket closed before completion bridge=%s code=%s",
                    target.bridge_id, ws.close_code,
                )
        except aiohttp.ClientError as exc:
            logger.warning("Watch connection failed bridge=%s: %s", target.bridge_id, exc)
        finally:
            self._watched.pop(target.bridge_id, None)

    async def shutdown(self) -> None:
        watched, self._watched = self._watched, {}
        tasks = []
        for handle in watched.values():
            if isinstance(handle, asyncio.Task):
                handle.cancel()
                tasks.append(handle)
            else:
                handle()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
