"""Directory of live agent bridges.

Allocates ``bridge_<n>`` identities from a single counter, spawns
channels for new dispatches and resumes, wires each channel's event
stream into its fan-out, file tracker and live state, and forgets a
bridge a few seconds after its process exits so clients can still read
the terminal message.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .channel import (
    DEFAULT_AGENT_COMMAND,
    DEFAULT_COMMAND_TIMEOUT,
    AgentCommand,
    LineJsonChannel,
)
from .fanout import EventFanout
from .file_tracker import FileTracker
from .models import ExitInfo, LiveState, SpawnOptions, extract_text

logger = logging.getLogger(__name__)

REMOVAL_DELAY_SECONDS = 5.0

OnStart = Callable[[LineJsonChannel], None]
# Signature: async def spawner(bridge_id, options, on_start) -> channel
# on_start must be called with the channel before its reader starts.
Spawner = Callable[[str, SpawnOptions, OnStart], Awaitable[LineJsonChannel]]


@dataclass(eq=False)
class BridgeSession:
    """One registered bridge and everything observed on its stream."""

    bridge_id: str
    channel: LineJsonChannel
    fanout: EventFanout
    file_tracker: FileTracker = field(default_factory=FileTracker)
    state: LiveState = field(default_factory=LiveState)
    started_at: float = field(default_factory=time.time)
    initial_message: str | None = None
    thinking_level: str | None = None

    @property
    def alive(self) -> bool:
        return self.channel.alive

    @property
    def cwd(self) -> str:
        return self.channel.cwd

    @property
    def session_file(self) -> str | None:
        return self.channel.session_file or self.state.session_file

    @property
    def session_id(self) -> str | None:
        return self.channel.session_id or self.state.session_id

    def observe(self, event: dict[str, Any]) -> None:
        """Update tracked files and live state from one event."""
        self.file_tracker.process_event(event)
        event_type = event.get("type")
        if event_type == "thinking_level_change" and event.get("thinkingLevel"):
            self.thinking_level = event["thinkingLevel"]
            self.state.thinking_level = event["thinkingLevel"]
        elif event_type == "model_change":
            if event.get("provider"):
                self.state.provider = event["provider"]
            if event.get("modelId"):
                self.state.model_id = event["modelId"]
        elif event_type == "message_start" and not self.initial_message:
            message = event.get("message")
            if isinstance(message, dict) and message.get("role") == "user":
                text = extract_text(message.get("content")).strip()
                if text:
                    self.initial_message = text[:200]

    async def refresh_state(self, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> dict[str, Any] | None:
        """Fetch ``get_state`` and fold it into the live state.

        Returns the state payload, or None when the agent reported failure.
        Transport errors propagate.
        """
        response = await self.channel.send_command({"type": "get_state"}, timeout)
        if not response.get("success"):
            return None
        data = response.get("data")
        if not isinstance(data, dict):
            return None
        self.state.merge_state_response(data)
        if self.state.session_file:
            self.channel.session_file = self.state.session_file
        if self.state.session_id:
            self.channel.session_id = self.state.session_id
        if self.state.thinking_level:
            self.thinking_level = self.state.thinking_level
        return data

    def to_active_json(self) -> dict[str, Any]:
        return {
            "bridgeId": self.bridge_id,
            "sessionId": self.session_id,
            "cwd": self.cwd,
            "sessionFile": self.session_file,
            "alive": self.alive,
            "wsClients": self.fanout.subscriber_count,
            "trackedFiles": [f.to_json() for f in self.file_tracker.get_files()],
        }


class BridgeRegistry:
    """Spawns, tracks and kills agent bridges.

    State is per instance so several registries can coexist (tests, or
    a temporary registry for capability probes).
    """

    def __init__(
        self,
        *,
        command: AgentCommand = DEFAULT_AGENT_COMMAND,
        spawner: Spawner | None = None,
        id_prefix: str = "bridge",
        removal_delay: float = REMOVAL_DELAY_SECONDS,
        extension_path: str | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self._command = command
        self._spawner = spawner or self._spawn_channel
        self._id_prefix = id_prefix
        self._removal_delay = removal_delay
        self._extension_path = extension_path
        self._env = env
        self._counter = 0
        self._bridges: dict[str, BridgeSession] = {}
        self._resuming: dict[str, asyncio.Future[BridgeSession]] = {}
        self._removals: dict[str, asyncio.TimerHandle] = {}

    async def _spawn_channel(
        self, bridge_id: str, options: SpawnOptions, on_start: OnStart,
    ) -> LineJsonChannel:
        return await LineJsonChannel.spawn(
            bridge_id, options, command=self._command, on_start=on_start,
        )

    def _next_id(self) -> str:
        self._counter += 1
        return f"{self._id_prefix}_{self._counter}"

    # ── Spawning ──

    async def dispatch(
        self,
        cwd: str,
        provider: str | None = None,
        model: str | None = None,
    ) -> BridgeSession:
        """Spawn a fresh bridge in *cwd* and register it."""
        options = SpawnOptions(
            cwd=cwd,
            provider=provider,
            model=model,
            extension_path=self._extension_path,
            env=self._env,
        )
        return await self._start(options)

    async def resume(self, cwd: str, session_file: str) -> tuple[BridgeSession, bool]:
        """Attach a bridge to *session_file*.

        Returns ``(session, already_active)``. A live bridge already bound to
        the same file is returned unchanged; concurrent resumes of one file
        share a single spawn.
        """
        existing = self.find_by_session_file(session_file)
        if existing is not None:
            return existing, True
        in_flight = self._resuming.get(session_file)
        if in_flight is not None:
            return await asyncio.shield(in_flight), True

        future: asyncio.Future[BridgeSession] = asyncio.get_running_loop().create_future()
        self._resuming[session_file] = future
        try:
            session = await self._start(SpawnOptions(
                cwd=cwd,
                session_file=session_file,
                extension_path=self._extension_path,
                env=self._env,
            ))
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved; waiters re-raise it themselves.
            future.exception()
            raise
        finally:
            self._resuming.pop(session_file, None)
        future.set_result(session)
        return session, False

    async def spawn_temporary(self, cwd: str) -> LineJsonChannel:
        """Spawn an unregistered bridge for short-lived queries."""
        options = SpawnOptions(cwd=cwd, extension_path=self._extension_path, env=self._env)
        return await self._spawner(self._next_id(), options, lambda _channel: None)

    async def _start(self, options: SpawnOptions) -> BridgeSession:
        bridge_id = self._next_id()
        wired: list[BridgeSession] = []

        def _on_start(channel: LineJsonChannel) -> None:
            wired.append(self._wire(bridge_id, channel))

        channel = await self._spawner(bridge_id, options, _on_start)
        session = wired[0] if wired else self._wire(bridge_id, channel)
        if channel.alive:
            self._bridges[bridge_id] = session
        logger.info(
            "Registered bridge=%s cwd=%s session_file=%s active=%d",
            bridge_id, options.cwd, options.session_file, len(self._bridges),
        )
        return session

    def _wire(self, bridge_id: str, channel: LineJsonChannel) -> BridgeSession:
        session = BridgeSession(
            bridge_id=bridge_id,
            channel=channel,
            fanout=EventFanout(bridge_id),
        )

        def _on_event(event: dict[str, Any]) -> None:
            session.observe(event)
            session.fanout.publish(event)

        def _on_exit(info: ExitInfo) -> None:
            session.fanout.publish_exit(info)
            self._schedule_removal(session)

        channel.events.subscribe(on_event=_on_event, on_exit=_on_exit)
        return session

    def _schedule_removal(self, session: BridgeSession) -> None:
        loop = asyncio.get_running_loop()
        self._removals[session.bridge_id] = loop.call_later(
            self._removal_delay, self._remove, session,
        )

    def _remove(self, session: BridgeSession) -> None:
        self._removals.pop(session.bridge_id, None)
        if self._bridges.get(session.bridge_id) is session:
            del self._bridges[session.bridge_id]
            logger.info("Removed exited bridge=%s", session.bridge_id)

    # ── Lookup ──

    def lookup(self, bridge_id: str) -> BridgeSession | None:
        return self._bridges.get(bridge_id)

    def find_by_session_file(self, session_file: str) -> BridgeSession | None:
        for session in self._bridges.values():
            if session.alive and session_file in (
                session.channel.session_file, session.state.session_file,
            ):
                return session
        return None

    def sessions(self) -> list[BridgeSession]:
        return list(self._bridges.values())

    def first_alive(self) -> BridgeSession | None:
        for session in self._bridges.values():
            if session.alive:
                return session
        return None

    def __len__(self) -> int:
        return len(self._bridges)

    # ── Termination ──

    def kill(self, bridge_id: str) -> bool:
        session = self._bridges.get(bridge_id)
        if session is None:
            return False
        session.channel.kill()
        return True

    def kill_all(self) -> None:
        """Kill every registered bridge (process-wide shutdown)."""
        logger.info("Killing all bridges count=%d", len(self._bridges))
        for session in list(self._bridges.values()):
            session.channel.kill()

    async def shutdown(self, timeout: float = 3.0) -> None:
        """Kill all bridges and wait (bounded) for them to exit."""
        self.kill_all()
        waiters = [
            asyncio.ensure_future(s.channel.wait_closed())
            for s in self._bridges.values() if s.alive
        ]
        if waiters:
            _, pending = await asyncio.wait(waiters, timeout=timeout)
            for waiter in pending:
                waiter.cancel()
        for handle in self._removals.values():
            handle.cancel()
        self._removals.clear()
