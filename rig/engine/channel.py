"""Line-JSON channel over one agent child process.

Starts ``<agent> --mode rpc`` and turns its stdio into:

- ``send_command()``: write one JSON line carrying a fresh ``req_<n>``
  id and await the ``{"type": "response", "id": ...}`` line with the
  same id, under a deadline;
- ``send_fire_and_forget()``: write one JSON line, no correlation
  (prompts stream their result as events);
- ``events``: every other parsed line, in the order the process wrote
  it, then a single exit notification.

Lines that are not JSON objects are treated as incidental log output
and dropped. When the process exits, every pending command is rejected
with ``ProcessExitedError`` at once.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import signal
from collections.abc import Callable, Sequence
from typing import Any

from .errors import (
    BridgeNotAliveError,
    CommandTimeoutError,
    ProcessExitedError,
    SpawnError,
    StartupError,
)
from .events import EventStream
from .models import ExitInfo, SpawnOptions

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = "pi"
DEFAULT_COMMAND_TIMEOUT = 30.0
STARTUP_GRACE_SECONDS = 0.2
KILL_GRACE_SECONDS = 2.0

# Message updates carry the whole message so far; allow long lines.
_STREAM_LIMIT = 32 * 1024 * 1024
# Keep only the tail of stderr for diagnostics.
_STDERR_MAX_CHARS = 64 * 1024
# How long to wait for buffered stdout after the process is reaped.
_EXIT_DRAIN_SECONDS = 1.0

AgentCommand = str | Sequence[str]


def resolve_agent_command(command: AgentCommand) -> list[str]:
    """Resolve the agent executable into an argv prefix.

    A string is looked up on PATH; a sequence (e.g. interpreter + script)
    is used verbatim.
    """
    if isinstance(command, str):
        resolved = shutil.which(command)
        if not resolved:
            raise SpawnError(
                command, f"Could not find '{command}' binary. Is it installed globally?",
            )
        return [resolved]
    argv = [str(part) for part in command]
    if not argv:
        raise SpawnError("", "empty agent command")
    return argv


def build_agent_args(options: SpawnOptions) -> list[str]:
    args = ["--mode", "rpc"]
    if options.extension_path:
        args.extend(["-e", options.extension_path])
    if options.session_file:
        args.extend(["--session", options.session_file])
    if options.provider:
        args.extend(["--provider", options.provider])
    if options.model:
        args.extend(["--model", options.model])
    return args


def _exit_info_from_returncode(returncode: int | None) -> ExitInfo:
    if returncode is not None and returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return ExitInfo(code=None, signal=name)
    return ExitInfo(code=returncode)


class LineJsonChannel:
    """Request/response + event primitive over one child process."""

    def __init__(
        self,
        bridge_id: str,
        process: asyncio.subprocess.Process,
        *,
        cwd: str,
        session_file: str | None = None,
    ) -> None:
        self.bridge_id = bridge_id
        self.process = process
        self.cwd = cwd
        self.session_file = session_file
        self.session_id: str | None = None
        self.events = EventStream(bridge_id)
        self.stderr = ""
        self.alive = True
        self.exit_info: ExitInfo | None = None
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._next_request_id = 0
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._supervisor_task: asyncio.Task | None = None
        self._force_kill_handle: asyncio.TimerHandle | None = None

    @classmethod
    async def spawn(
        cls,
        bridge_id: str,
        options: SpawnOptions,
        *,
        command: AgentCommand = DEFAULT_AGENT_COMMAND,
        startup_grace: float = STARTUP_GRACE_SECONDS,
        on_start: Callable[[LineJsonChannel], None] | None = None,
    ) -> LineJsonChannel:
        """Start the agent process and wait out the startup grace window.

        ``on_start`` runs before the readers start, so listeners attached
        there see every event, including those written during startup.

        Raises SpawnError when the executable or working directory is
        missing, StartupError when the process dies during the grace window.
        """
        if not os.path.isdir(options.cwd):
            raise SpawnError(str(command), f"working directory not found: {options.cwd}")
        argv = resolve_agent_command(command) + build_agent_args(options)
        env = os.environ.copy()
        if options.env:
            env.update(options.env)

        logger.info(
            "Spawning agent bridge=%s cwd=%s argv=%s", bridge_id, options.cwd, argv,
        )
        try:
            # create_subprocess_exec passes args as an array, no shell
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.cwd,
                env=env,
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise SpawnError(argv[0], "executable not found") from exc
        except OSError as exc:
            raise SpawnError(argv[0], str(exc)) from exc

        channel = cls(
            bridge_id, process, cwd=options.cwd, session_file=options.session_file,
        )
        if on_start is not None:
            on_start(channel)
        channel.start()

        await asyncio.sleep(startup_grace)
        if not channel.alive or process.returncode is not None:
            if channel._stderr_task is not None:
                await asyncio.wait({channel._stderr_task}, timeout=0.5)
            logger.warning(
                "Agent exited during startup bridge=%s code=%s",
                bridge_id, process.returncode,
            )
            raise StartupError(process.returncode, channel.stderr.strip())

        logger.info("Agent started bridge=%s pid=%d", bridge_id, process.pid)
        return channel

    def start(self) -> None:
        """Begin reading stdout/stderr and supervising the process."""
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._supervisor_task = asyncio.create_task(self._supervise())

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Commands ──

    async def send_command(
        self,
        command: dict[str, Any],
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> dict[str, Any]:
        """Send a command and return its correlated response line."""
        if not self.alive:
            raise BridgeNotAliveError(self.bridge_id)

        self._next_request_id += 1
        request_id = f"req_{self._next_request_id}"
        command_type = str(command.get("type", "?"))
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            self._write({**command, "id": request_id})
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Command timed out bridge=%s type=%s id=%s timeout=%.1fs",
                self.bridge_id, command_type, request_id, timeout,
            )
            raise CommandTimeoutError(command_type, timeout) from None
        finally:
            self._pending.pop(request_id, None)

    def send_fire_and_forget(self, payload: dict[str, Any]) -> None:
        """Write one line without correlation; a dead process ignores it."""
        if not self.alive:
            logger.debug(
                "Dropping %s for dead bridge=%s", payload.get("type"), self.bridge_id,
            )
            return
        self._write(payload)

    def _write(self, payload: dict[str, Any]) -> None:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            raise BridgeNotAliveError(self.bridge_id)
        stdin.write(json.dumps(payload).encode("utf-8") + b"\n")

    # ── Termination ──

    def kill(self, grace_seconds: float = KILL_GRACE_SECONDS) -> None:
        """SIGTERM now, SIGKILL after *grace_seconds* if still alive."""
        if not self.alive or self.process.returncode is not None:
            return
        logger.info("Killing agent bridge=%s pid=%d", self.bridge_id, self.process.pid)
        try:
            self.process.terminate()
        except ProcessLookupError:
            return
        if self._force_kill_handle is None:
            self._force_kill_handle = asyncio.get_running_loop().call_later(
                grace_seconds, self._force_kill,
            )

    def _force_kill(self) -> None:
        self._force_kill_handle = None
        if self.alive and self.process.returncode is None:
            logger.warning(
                "Agent ignored SIGTERM, sending SIGKILL bridge=%s", self.bridge_id,
            )
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    async def wait_closed(self) -> ExitInfo:
        """Wait until the exit notification has been delivered."""
        if self._supervisor_task is not None:
            await asyncio.shield(self._supervisor_task)
        return self.exit_info or _exit_info_from_returncode(self.process.returncode)

    # ── Readers ──

    async def _read_stdout(self) -> None:
        stdout = self.process.stdout
        if stdout is None:
            return
        while True:
            try:
                raw = await stdout.readline()
            except ValueError:
                logger.warning("Dropping oversized line from bridge=%s", self.bridge_id)
                continue
            if not raw:
                break
            self._handle_line(raw)

    def _handle_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON line from bridge=%s: %r", self.bridge_id, line[:200])
            return
        if not isinstance(payload, dict):
            logger.debug("Skipping non-object line from bridge=%s", self.bridge_id)
            return

        if payload.get("type") == "response":
            request_id = payload.get("id")
            future = self._pending.pop(request_id, None) if isinstance(request_id, str) else None
            if future is not None:
                if not future.done():
                    future.set_result(payload)
                return

        self.events.emit_event(payload)

    async def _read_stderr(self) -> None:
        stderr = self.process.stderr
        if stderr is None:
            return
        while True:
            chunk = await stderr.read(4096)
            if not chunk:
                break
            self.stderr = (self.stderr + chunk.decode("utf-8", errors="replace"))[-_STDERR_MAX_CHARS:]

    async def _supervise(self) -> None:
        returncode = await self.process.wait()
        if self._reader_task is not None:
            # Responses written just before exit still resolve their requests.
            done, _ = await asyncio.wait({self._reader_task}, timeout=_EXIT_DRAIN_SECONDS)
            if not done:
                self._reader_task.cancel()
        self._handle_exit(_exit_info_from_returncode(returncode))

    def _handle_exit(self, info: ExitInfo) -> None:
        if self.exit_info is not None:
            return
        self.alive = False
        self.exit_info = info
        if self._force_kill_handle is not None:
            self._force_kill_handle.cancel()
            self._force_kill_handle = None

        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(
                    ProcessExitedError(self.bridge_id, info.code, info.signal)
                )
        logger.info(
            "Agent exited bridge=%s code=%s signal=%s rejected_pending=%d",
            self.bridge_id, info.code, info.signal, len(pending),
        )
        self.events.emit_exit(info)
