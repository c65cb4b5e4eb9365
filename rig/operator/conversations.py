"""Conversation orchestration for the operator.

Maps a stable external conversation id (a chat thread, a REST caller)
onto one live agent bridge at a time:

- ``ensure`` reuses the live bridge or resumes the recorded session
  file (a fresh session when there is none) and applies the preferred
  model before any turn runs;
- turns for one conversation run strictly one at a time, in submission
  order, through a ``TurnQueue``;
- idle conversations are reaped on a timer; their pointers (session
  file, model selection) stay in the ``ConversationStore`` so the next
  message resumes where the last one left off.

Events from the operator's own dispatch tool are inspected so that
callers learn about pause states (pick a model / pick a project) and
listeners learn about newly dispatched bridges worth watching.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from rig.engine.channel import DEFAULT_AGENT_COMMAND, AgentCommand, LineJsonChannel
from rig.engine.errors import (
    ConversationExitedError,
    DispatchValidationError,
    ModelSelectionError,
    RigError,
    TurnTimeoutError,
)
from rig.engine.models import (
    ConversationRecord,
    DispatchNeedsModel,
    DispatchNeedsProject,
    DispatchWatchTarget,
    ExitInfo,
    LiveState,
    ProjectRef,
    PromptImage,
    SpawnOptions,
    extract_text,
    image_payloads,
    is_thinking_level,
    parse_thinking_level,
    title_from_prompt,
)
from rig.shared.config import ModelRef

from .store import ConversationStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

TURN_TIMEOUT_SECONDS = 10 * 60.0
REAP_INTERVAL_SECONDS = 30.0
MODEL_COMMAND_TIMEOUT = 15.0
STATE_COMMAND_TIMEOUT = 10.0
DISPATCH_TOOL_NAME = "rig_dispatch"

# Signature: async def factory(bridge_id, options) -> LineJsonChannel
ChannelFactory = Callable[[str, SpawnOptions], Awaitable[LineJsonChannel]]
DispatchListener = Callable[[DispatchWatchTarget], None]
PendingDispatch = DispatchNeedsModel | DispatchNeedsProject


# ── Turn queue ──


def _cancel_job_with(task: asyncio.Task, future: asyncio.Future) -> None:
    if future.cancelled():
        task.cancel()


class TurnQueue:
    """Strict FIFO of async jobs run by one worker task.

    ``submit`` returns a future for the job's result. Cancelling that
    future cancels the job, whether it is still queued or already running.
    ``close`` fails everything still queued and lets the running job finish.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._jobs: asyncio.Queue[tuple[Callable[[], Awaitable[Any]], asyncio.Future] | None] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._current: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.done()

    @property
    def pending(self) -> int:
        return self._jobs.qsize()

    def submit(self, job: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        if self._closed:
            raise RuntimeError(f"turn queue {self.name} is closed")
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._jobs.put_nowait((job, future))
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())
        return future

    async def _run(self) -> None:
        while True:
            item = await self._jobs.get()
            if item is None:
                return
            job, future = item
            if future.done():
                continue
            current = asyncio.ensure_future(job())
            self._current = current
            future.add_done_callback(functools.partial(_cancel_job_with, current))
            try:
                await asyncio.wait({current})
            except asyncio.CancelledError:
                current.cancel()
                if not future.done():
                    future.cancel()
                raise
            finally:
                self._current = None

            if current.cancelled():
                if not future.done():
                    future.cancel()
                continue
            exc = current.exception()
            if future.done():
                continue
            if exc is not None:
                future.set_exception(exc)
            else:
                future.set_result(current.result())

    def close(self, error: BaseException | None = None) -> None:
        """Stop accepting jobs; queued ones fail with *error* (or are cancelled)."""
        if self._closed:
            return
        self._closed = True
        while True:
            try:
                item = self._jobs.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is None:
                continue
            _, future = item
            if not future.done():
                if error is None:
                    future.cancel()
                else:
                    future.set_exception(error)
        self._jobs.put_nowait(None)

    async def cancel(self) -> None:
        """Close, cancel the running job, and wait for the worker to stop."""
        self.close()
        if self._current is not None:
            self._current.cancel()
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)


# ── Turn results and callbacks ──


@dataclass
class TurnCallbacks:
    """Optional hooks invoked while a turn streams. Errors are logged, not raised."""

    on_text: Callable[[str], None] | None = None
    on_tool_call: Callable[[str], None] | None = None
    on_dispatch_model_required: Callable[[DispatchNeedsModel], None] | None = None
    on_dispatch_project_required: Callable[[DispatchNeedsProject], None] | None = None


@dataclass
class TurnResult:
    text: str
    tool_calls: list[str] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {"response": self.text, "toolCalls": self.tool_calls}


@dataclass
class ModelStatus:
    """Selected, default and live model for one conversation."""

    active: bool = False
    selected: ModelRef | None = None
    default: ModelRef | None = None
    live_provider: str | None = None
    live_model_id: str | None = None
    live_thinking_level: str | None = None
    model_warning: str | None = None
    pending_dispatch: PendingDispatch | None = None

    def to_json(self) -> dict[str, Any]:
        selected = self.selected
        default = self.default
        return {
            "selectedProvider": selected.provider if selected else None,
            "selectedModelId": selected.model_id if selected else None,
            "selectedThinkingLevel": selected.thinking_level if selected else None,
            "defaultProvider": default.provider if default else None,
            "defaultModelId": default.model_id if default else None,
            "defaultThinkingLevel": default.thinking_level if default else None,
            "liveProvider": self.live_provider,
            "liveModelId": self.live_model_id,
            "liveThinkingLevel": self.live_thinking_level,
            "modelWarning": self.model_warning,
            "pendingDispatch": self.pending_dispatch.to_json() if self.pending_dispatch else None,
            "active": self.active,
        }


@dataclass(eq=False)
class ActiveConversation:
    """A conversation with a live bridge."""

    conversation_id: str
    channel: LineJsonChannel
    queue: TurnQueue
    last_active_at: float
    session_file: str | None = None
    session_id: str | None = None
    model_provider: str | None = None
    model_id: str | None = None
    thinking_level: str | None = None
    model_warning: str | None = None
    detach: Callable[[], None] = lambda: None

    @property
    def alive(self) -> bool:
        return self.channel.alive

    def merge_state(self, state: LiveState) -> None:
        self.session_file = state.session_file or self.session_file
        self.session_id = state.session_id or self.session_id
        self.model_provider = state.provider or self.model_provider
        self.model_id = state.model_id or self.model_id
        self.thinking_level = parse_thinking_level(state.thinking_level) or self.thinking_level

    def to_record(self, updated_at: float) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=self.conversation_id,
            session_file=self.session_file,
            session_id=self.session_id,
            model_provider=self.model_provider,
            model_id=self.model_id,
            thinking_level=self.thinking_level,
            updated_at=updated_at,
        )


def _dispatch_details(event: dict[str, Any]) -> dict[str, Any] | None:
    result = event.get("result")
    if not isinstance(result, dict):
        return None
    data = result.get("data") if isinstance(result.get("data"), dict) else {}
    for candidate in (result.get("details"), data.get("details"), result.get("data"), result):
        if isinstance(candidate, dict):
            return candidate
    return None


def _safe_call(callback: Callable[..., None] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Turn callback failed")


class _TurnObserver:
    """Turns one bridge's event stream into a single turn outcome."""

    def __init__(
        self,
        orchestrator: ConversationOrchestrator,
        conversation: ActiveConversation,
        message: str,
        callbacks: TurnCallbacks,
    ) -> None:
        self._orchestrator = orchestrator
        self._conversation = conversation
        self._message = message
        self._callbacks = callbacks
        self.done: asyncio.Future[TurnResult] = asyncio.get_running_loop().create_future()
        self.text = ""
        self.tool_calls: list[str] = []
        self._seen_assistant = False

    def _set_text(self, text: str) -> None:
        self.text = text
        _safe_call(self._callbacks.on_text, text)

    def _finish(self) -> None:
        if not self.done.done():
            self.done.set_result(TurnResult(text=self.text.strip(), tool_calls=list(self.tool_calls)))

    def on_exit(self, _info: ExitInfo) -> None:
        if not self.done.done():
            self.done.set_exception(ConversationExitedError(self._conversation.conversation_id))

    def on_event(self, event: dict[str, Any]) -> None:
        if self.done.done():
            return
        event_type = event.get("type")
        message = event.get("message") if isinstance(event.get("message"), dict) else {}
        role = message.get("role")

        if event_type == "message_start" and role == "assistant":
            self._seen_assistant = True
            self._set_text(extract_text(message.get("content"), "\n"))
        elif event_type == "message_update" and self._seen_assistant and role == "assistant":
            self._set_text(extract_text(message.get("content"), "\n"))
        elif event_type == "message" and role == "assistant":
            self._set_text(extract_text(message.get("content"), "\n"))
            self._finish()
        elif event_type == "message_end" and self._seen_assistant and role in (None, "assistant"):
            text = extract_text(message.get("content"), "\n") if message.get("content") else self.text
            # Tool-call-only messages end without text; the answer comes later.
            if text.strip():
                self._set_text(text)
                self._finish()
        elif event_type == "tool_execution_start":
            name = str(event.get("toolName") or "tool")
            self.tool_calls.append(name)
            _safe_call(self._callbacks.on_tool_call, name)
        elif event_type == "tool_execution_end" and event.get("toolName") == DISPATCH_TOOL_NAME:
            self._on_dispatch_result(event)
        elif event_type == "agent_end":
            self._finish()

    def _on_dispatch_result(self, event: dict[str, Any]) -> None:
        details = _dispatch_details(event) or {}
        if details.get("needsProject") and details.get("message"):
            projects = [
                ProjectRef(path=str(p["path"]), name=str(p["name"]))
                for p in details.get("projects") or []
                if isinstance(p, dict) and p.get("path") and p.get("name")
            ]
            needs_project = DispatchNeedsProject(
                message=str(details["message"]),
                provider=details.get("provider") or None,
                model=details.get("model") or None,
                thinking_level=parse_thinking_level(details.get("thinkingLevel")),
                title=details.get("title"),
                error=details.get("error"),
                projects=projects,
            )
            self._orchestrator.record_pending(self._conversation.conversation_id, needs_project)
            _safe_call(self._callbacks.on_dispatch_project_required, needs_project)
            return
        if details.get("needsModel") and details.get("cwd") and details.get("message"):
            needs_model = DispatchNeedsModel(
                cwd=str(details["cwd"]),
                message=str(details["message"]),
                thinking_level=parse_thinking_level(details.get("thinkingLevel")),
                title=details.get("title"),
                error=details.get("error"),
                awaiting_model_selection=bool(details.get("awaitingModelSelection")),
            )
            self._orchestrator.record_pending(self._conversation.conversation_id, needs_model)
            _safe_call(self._callbacks.on_dispatch_model_required, needs_model)
            return
        bridge_id = details.get("bridgeId")
        if bridge_id:
            self._orchestrator.notify_dispatch(DispatchWatchTarget(
                bridge_id=str(bridge_id),
                title=str(details.get("title") or title_from_prompt(self._message)),
                conversation_id=self._conversation.conversation_id,
            ))


# ── Orchestrator ──


class ConversationOrchestrator:
    """Owns the operator's conversations and their bridges."""

    def __init__(
        self,
        store: ConversationStore,
        *,
        operator_cwd: str,
        default_model: ModelRef | None = None,
        session_timeout_seconds: float = 15 * 60.0,
        command: AgentCommand = DEFAULT_AGENT_COMMAND,
        extension_path: str | None = None,
        channel_factory: ChannelFactory | None = None,
        turn_timeout: float = TURN_TIMEOUT_SECONDS,
        reap_interval: float = REAP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.operator_cwd = operator_cwd
        self.default_model = default_model
        self.session_timeout_seconds = session_timeout_seconds
        self.turn_timeout = turn_timeout
        self.reap_interval = reap_interval
        self._command = command
        self._extension_path = extension_path
        self._channel_factory = channel_factory or self._spawn_channel
        self._clock = clock
        self._counter = 0
        self._active: dict[str, ActiveConversation] = {}
        self._ensuring: dict[str, asyncio.Future[ActiveConversation]] = {}
        self._dispatch_listeners: list[DispatchListener] = []
        self._pending: dict[str, PendingDispatch] = {}
        self._reaper_task: asyncio.Task | None = None

    async def _spawn_channel(self, bridge_id: str, options: SpawnOptions) -> LineJsonChannel:
        return await LineJsonChannel.spawn(bridge_id, options, command=self._command)

    def _now_ms(self) -> float:
        return self._clock() * 1000

    # ── Lifecycle ──

    def start(self) -> None:
        """Start the idle reaper."""
        if self._reaper_task is None:
            self._reaper_task = asyncio.create_task(self._reap_loop())

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reap_interval)
            try:
                self.reap_idle()
            except Exception:
                logger.exception("Idle reap failed")

    async def shutdown(self) -> None:
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            await asyncio.gather(self._reaper_task, return_exceptions=True)
            self._reaper_task = None
        conversations = list(self._active.values())
        logger.info("Shutting down operator conversations count=%d", len(conversations))
        for conversation in conversations:
            self._drop(conversation, persist=True)
        for conversation in conversations:
            await conversation.queue.cancel()

    # ── Dispatch notifications ──

    def on_dispatch(self, listener: DispatchListener) -> Callable[[], None]:
        """Register a listener for dispatched bridges; returns an unsubscribe."""
        self._dispatch_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._dispatch_listeners:
                self._dispatch_listeners.remove(listener)

        return _unsubscribe

    def record_pending(self, conversation_id: str, needs: PendingDispatch) -> None:
        """Remember the latest pause state until a dispatch goes through."""
        logger.info(
            "Dispatch paused conversation=%s needs=%s",
            conversation_id, "project" if isinstance(needs, DispatchNeedsProject) else "model",
        )
        self._pending[conversation_id] = needs

    def pending_dispatch(self, conversation_id: str) -> PendingDispatch | None:
        return self._pending.get(conversation_id)

    def notify_dispatch(self, target: DispatchWatchTarget) -> None:
        self._pending.pop(target.conversation_id, None)
        logger.info(
            "Conversation dispatched bridge=%s conversation=%s title=%r",
            target.bridge_id, target.conversation_id, target.title,
        )
        for listener in list(self._dispatch_listeners):
            try:
                listener(target)
            except Exception:
                logger.exception("Dispatch listener failed bridge=%s", target.bridge_id)

    # ── Conversations ──

    def _selected_model(self, record: ConversationRecord | None) -> ModelRef | None:
        """Stored selection wins; otherwise the configured default."""
        if record is not None and record.model_provider and record.model_id:
            return ModelRef(record.model_provider, record.model_id, record.thinking_level)
        default = self.default_model
        if default is None:
            return None
        thinking = record.thinking_level if record is not None and record.thinking_level else default.thinking_level
        return ModelRef(default.provider, default.model_id, thinking)

    async def ensure(self, conversation_id: str) -> ActiveConversation:
        """Return the live conversation, starting or resuming a bridge if needed."""
        existing = self._active.get(conversation_id)
        if existing is not None and existing.alive:
            existing.last_active_at = self._now_ms()
            return existing
        in_flight = self._ensuring.get(conversation_id)
        if in_flight is not None:
            return await asyncio.shield(in_flight)

        future: asyncio.Future[ActiveConversation] = asyncio.get_running_loop().create_future()
        self._ensuring[conversation_id] = future
        try:
            conversation = await self._start_conversation(conversation_id)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved; concurrent waiters may not exist.
            future.exception()
            raise
        finally:
            self._ensuring.pop(conversation_id, None)
        future.set_result(conversation)
        return conversation

    async def _start_conversation(self, conversation_id: str) -> ActiveConversation:
        record = self.store.get(conversation_id)
        self._counter += 1
        bridge_id = f"operator_{self._counter}"
        channel = await self._channel_factory(bridge_id, SpawnOptions(
            cwd=self.operator_cwd,
            session_file=record.session_file if record else None,
            extension_path=self._extension_path,
        ))
        logger.info(
            "Starting conversation=%s bridge=%s resume=%s",
            conversation_id, bridge_id, record.session_file if record else None,
        )

        conversation = ActiveConversation(
            conversation_id=conversation_id,
            channel=channel,
            queue=TurnQueue(conversation_id),
            last_active_at=self._now_ms(),
        )
        try:
            await self._refresh(conversation, strict=True)
            selected = self._selected_model(record)
            if selected is not None:
                conversation.model_provider = selected.provider
                conversation.model_id = selected.model_id
                conversation.thinking_level = selected.thinking_level
                await self._apply_preferred_model(conversation, selected)
        except BaseException:
            channel.kill()
            raise

        self._active[conversation_id] = conversation
        conversation.detach = channel.events.subscribe(
            on_exit=lambda info: self._on_bridge_exit(conversation, info),
        )
        await self._refresh(conversation)
        self._persist(conversation)
        return conversation

    async def _apply_preferred_model(
        self, conversation: ActiveConversation, model: ModelRef,
    ) -> None:
        """Lenient: an unavailable model is recorded as a warning, not raised."""
        try:
            await self._set_model_on_bridge(conversation, model.provider, model.model_id)
        except RigError as exc:
            conversation.model_warning = str(exc)
            logger.warning(
                "Preferred model not applied conversation=%s model=%s/%s: %s",
                conversation.conversation_id, model.provider, model.model_id, exc,
            )
            return
        conversation.model_warning = None
        if model.thinking_level:
            await self._set_thinking_best_effort(conversation, model.thinking_level)

    async def _set_model_on_bridge(
        self, conversation: ActiveConversation, provider: str, model_id: str,
    ) -> None:
        response = await conversation.channel.send_command(
            {"type": "set_model", "provider": provider, "modelId": model_id},
            MODEL_COMMAND_TIMEOUT,
        )
        if not response.get("success"):
            raise ModelSelectionError(provider, model_id, response.get("error"))

    async def _set_thinking_best_effort(self, conversation: ActiveConversation, level: str) -> None:
        try:
            await conversation.channel.send_command(
                {"type": "set_thinking_level", "level": level}, MODEL_COMMAND_TIMEOUT,
            )
        except RigError:
            logger.debug(
                "Thinking level %s not applied conversation=%s",
                level, conversation.conversation_id, exc_info=True,
            )

    async def _refresh(self, conversation: ActiveConversation, *, strict: bool = False) -> None:
        """Fold the bridge's ``get_state`` into the conversation.

        Failures keep the current values unless *strict*.
        """
        if not conversation.alive:
            return
        try:
            response = await conversation.channel.send_command(
                {"type": "get_state"}, STATE_COMMAND_TIMEOUT,
            )
        except RigError:
            if strict:
                raise
            logger.debug("State refresh failed conversation=%s", conversation.conversation_id, exc_info=True)
            return
        state = LiveState()
        state.merge_state_response(response.get("data"))
        conversation.merge_state(state)

    def _persist(self, conversation: ActiveConversation) -> None:
        self.store.put(conversation.to_record(self._now_ms()))

    def _on_bridge_exit(self, conversation: ActiveConversation, info: ExitInfo) -> None:
        if self._active.get(conversation.conversation_id) is not conversation:
            return
        logger.info(
            "Conversation bridge exited conversation=%s code=%s signal=%s",
            conversation.conversation_id, info.code, info.signal,
        )
        self._drop(conversation, persist=True)

    def _drop(self, conversation: ActiveConversation, *, persist: bool) -> None:
        """Forget a conversation's bridge; queued turns fail, the running one sees the exit."""
        conversation.detach()
        if self._active.get(conversation.conversation_id) is conversation:
            del self._active[conversation.conversation_id]
        if persist:
            self._persist(conversation)
        conversation.queue.close(ConversationExitedError(conversation.conversation_id))
        conversation.channel.kill()

    # ── Turns ──

    async def send_turn(
        self,
        conversation_id: str,
        message: str,
        images: list[PromptImage] | None = None,
        callbacks: TurnCallbacks | None = None,
    ) -> TurnResult:
        """Run one prompt; waits behind earlier turns of the same conversation."""
        conversation = await self.ensure(conversation_id)
        if conversation.queue.closed:
            raise ConversationExitedError(conversation_id)
        return await conversation.queue.submit(
            lambda: self._run_turn(conversation, message, images, callbacks or TurnCallbacks()),
        )

    async def _run_turn(
        self,
        conversation: ActiveConversation,
        message: str,
        images: list[PromptImage] | None,
        callbacks: TurnCallbacks,
    ) -> TurnResult:
        conversation.last_active_at = self._now_ms()
        observer = _TurnObserver(self, conversation, message, callbacks)
        unsubscribe = conversation.channel.events.subscribe(
            on_event=observer.on_event, on_exit=observer.on_exit,
        )
        try:
            prompt: dict[str, Any] = {"type": "prompt", "message": message}
            payloads = image_payloads(images)
            if payloads:
                prompt["images"] = payloads
            conversation.channel.send_fire_and_forget(prompt)
            try:
                result = await asyncio.wait_for(observer.done, timeout=self.turn_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Turn timed out conversation=%s after %.0fs",
                    conversation.conversation_id, self.turn_timeout,
                )
                raise TurnTimeoutError(conversation.conversation_id, self.turn_timeout) from None
        finally:
            unsubscribe()

        conversation.last_active_at = self._now_ms()
        await self._refresh(conversation)
        if self._active.get(conversation.conversation_id) is conversation:
            self._persist(conversation)
        return result

    # ── Model selection ──

    async def set_model(
        self,
        conversation_id: str,
        provider: str,
        model_id: str,
        thinking_level: str | None = None,
    ) -> None:
        """Switch the conversation's model; raises if the agent rejects it."""
        if thinking_level is not None and not is_thinking_level(thinking_level):
            raise DispatchValidationError(f"invalid thinking level: {thinking_level}")
        conversation = await self.ensure(conversation_id)
        await self._set_model_on_bridge(conversation, provider, model_id)
        conversation.model_provider = provider
        conversation.model_id = model_id
        conversation.model_warning = None
        if thinking_level:
            conversation.thinking_level = thinking_level
        if conversation.thinking_level:
            await self._set_thinking_best_effort(conversation, conversation.thinking_level)
        await self._refresh(conversation)
        self._persist(conversation)

    async def set_thinking_level(self, conversation_id: str, thinking_level: str) -> None:
        if not is_thinking_level(thinking_level):
            raise DispatchValidationError(f"invalid thinking level: {thinking_level}")
        conversation = await self.ensure(conversation_id)
        conversation.thinking_level = thinking_level
        await conversation.channel.send_command(
            {"type": "set_thinking_level", "level": thinking_level}, MODEL_COMMAND_TIMEOUT,
        )
        await self._refresh(conversation)
        self._persist(conversation)

    def get_model(self, conversation_id: str) -> ModelRef | None:
        active = self._active.get(conversation_id)
        if active is not None:
            if not active.model_provider or not active.model_id:
                return None
            return ModelRef(active.model_provider, active.model_id, active.thinking_level)
        return self._selected_model(self.store.get(conversation_id))

    async def get_model_status(self, conversation_id: str) -> ModelStatus:
        active = self._active.get(conversation_id)
        status = ModelStatus(
            selected=self.get_model(conversation_id),
            default=self.default_model,
            model_warning=active.model_warning if active is not None else None,
            pending_dispatch=self._pending.get(conversation_id),
        )
        if active is None or not active.alive:
            return status
        status.active = True
        try:
            response = await active.channel.send_command({"type": "get_state"}, STATE_COMMAND_TIMEOUT)
        except RigError:
            logger.debug("Live model status unavailable conversation=%s", conversation_id, exc_info=True)
            return status
        if response.get("success"):
            live = LiveState()
            live.merge_state_response(response.get("data"))
            status.live_provider = live.provider
            status.live_model_id = live.model_id
            status.live_thinking_level = live.thinking_level
        return status

    # ── Listing, reset and reaping ──

    def list_active(self) -> list[dict[str, Any]]:
        return [
            {
                "conversationId": c.conversation_id,
                "sessionFile": c.session_file,
                "lastActiveAt": c.last_active_at,
            }
            for c in self._active.values()
        ]

    def list_known(self) -> list[dict[str, Any]]:
        return [
            {
                "conversationId": r.conversation_id,
                "sessionFile": r.session_file,
                "updatedAt": r.updated_at,
            }
            for r in self.store.all()
        ]

    def end(self, conversation_id: str) -> bool:
        """Kill the conversation's bridge; the record keeps its pointers."""
        conversation = self._active.get(conversation_id)
        if conversation is None:
            return False
        logger.info("Ending conversation=%s", conversation_id)
        self._drop(conversation, persist=True)
        return True

    def clear(self, conversation_id: str, preserve_model: bool = True) -> None:
        """Start over: drop the bridge and the session pointer.

        With *preserve_model* the model selection survives in a fresh record.
        """
        active = self._active.get(conversation_id)
        stored = self.store.get(conversation_id)
        provider = (active.model_provider if active else None) or (stored.model_provider if stored else None)
        model_id = (active.model_id if active else None) or (stored.model_id if stored else None)
        thinking = (active.thinking_level if active else None) or (stored.thinking_level if stored else None)

        if active is not None:
            self._drop(active, persist=False)
        self._pending.pop(conversation_id, None)

        if preserve_model and provider and model_id:
            self.store.put(ConversationRecord(
                conversation_id=conversation_id,
                model_provider=provider,
                model_id=model_id,
                thinking_level=thinking,
                updated_at=self._now_ms(),
            ))
        else:
            self.store.delete(conversation_id)
        logger.info("Cleared conversation=%s preserve_model=%s", conversation_id, preserve_model)

    def reap_idle(self) -> list[str]:
        """Evict conversations idle past the timeout; returns their ids."""
        cutoff = self._now_ms() - self.session_timeout_seconds * 1000
        reaped = []
        for conversation in list(self._active.values()):
            if conversation.last_active_at >= cutoff or conversation.queue.busy:
                continue
            logger.info(
                "Reaping idle conversation=%s idle_s=%.0f",
                conversation.conversation_id,
                (self._now_ms() - conversation.last_active_at) / 1000,
            )
            self._drop(conversation, persist=True)
            reaped.append(conversation.conversation_id)
        return reaped
