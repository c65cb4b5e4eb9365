"""Dispatch of new work orders onto fresh bridges.

``Dispatcher.dispatch`` validates a request, collapses identical
requests made within the dedupe window onto the first result, spawns a
bridge, reads its session identity and fires the initial prompt.

``Dispatcher.plan`` is the tool-facing front: it resolves the target
folder from a hint, insists on an explicit model (recording an
awaiting-model stamp while the user picks one), and turns model-looking
failures into pause states instead of errors.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, Union

from .errors import DispatchValidationError, RigError
from .models import (
    THINKING_LEVEL_ORDER,
    DispatchNeedsModel,
    DispatchNeedsProject,
    DispatchRequest,
    DispatchResult,
    ProjectRef,
    image_payloads,
    is_thinking_level,
    normalize_message,
    title_from_prompt,
)
from .registry import BridgeRegistry

logger = logging.getLogger(__name__)

DEDUPE_WINDOW_SECONDS = 45.0
AWAITING_MODEL_WINDOW_SECONDS = 10 * 60.0
MAX_PROJECT_CANDIDATES = 12

PlanOutcome = Union[DispatchResult, DispatchNeedsModel, DispatchNeedsProject]

_MODEL_ERROR_RE = re.compile(r"model|provider|not found|invalid", re.IGNORECASE)
_FOLDER_AFTER_PREPOSITION_RE = re.compile(
    r"\b(?:in|into|for|on)\s+([a-z0-9._-]+)\s+(?:folder|project|repo|directory)\b",
    re.IGNORECASE,
)
_FOLDER_BEFORE_NOUN_RE = re.compile(
    r"\b([a-z0-9._-]+)\s+(?:folder|project|repo|directory)\b",
    re.IGNORECASE,
)
_GENERIC_FOLDER_HINTS = frozenset({
    "a", "an", "the", "this", "that", "here", "current", "my", "your",
    "default", "project", "folder", "repo", "directory",
})


def dedupe_key(
    cwd: str,
    message: str,
    provider: str | None,
    model: str | None,
    thinking_level: str | None,
) -> str:
    return "::".join([
        cwd, normalize_message(message), provider or "", model or "", thinking_level or "",
    ])


def request_key(cwd: str, message: str, thinking_level: str | None) -> str:
    return "::".join([cwd, normalize_message(message), thinking_level or ""])


def _compact_token(text: str) -> str:
    return re.sub(r"[^a-z0-9_-]+", "", text.lower()).strip()


def _basename(path: str) -> str:
    parts = [p for p in path.split("/") if p]
    return parts[-1] if parts else path


def extract_folder_hint(message: str, cwd_hint: str | None = None) -> str | None:
    """Pull a project/folder name out of the prompt or a non-path hint."""
    for pattern in (_FOLDER_AFTER_PREPOSITION_RE, _FOLDER_BEFORE_NOUN_RE):
        match = pattern.search(message)
        if match:
            token = _compact_token(match.group(1))
            if token and token not in _GENERIC_FOLDER_HINTS:
                return token
    if cwd_hint and not cwd_hint.startswith("/"):
        hint = _compact_token(cwd_hint)
        if len(hint) >= 3 and hint not in _GENERIC_FOLDER_HINTS:
            return hint
    return None


@dataclass
class ProjectResolution:
    cwd: str | None = None
    error: str | None = None
    candidates: list[ProjectRef] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.cwd is not None


def resolve_dispatch_cwd(
    message: str,
    cwd_hint: str | None,
    projects: list[ProjectRef],
) -> ProjectResolution:
    """Resolve the dispatch folder against the known projects.

    Only exact matches resolve; anything else yields an error plus a
    short candidate list for the user to pick from.
    """
    if not projects:
        return ProjectResolution(error="No projects are registered in Rig yet.")

    target = extract_folder_hint(message, cwd_hint)
    if target:
        def _tokens(project: ProjectRef) -> tuple[str, str]:
            return _compact_token(_basename(project.path)), _compact_token(project.name)

        exact = [p for p in projects if target in _tokens(p)]
        if len(exact) == 1:
            return ProjectResolution(cwd=exact[0].path)
        if exact:
            return ProjectResolution(
                error=f"Multiple folders match '{target}'. Pick one to continue.",
                candidates=exact[:MAX_PROJECT_CANDIDATES],
            )
        partial = [p for p in projects if any(target in t for t in _tokens(p))]
        return ProjectResolution(
            error=f"Couldn't find folder '{target}'. Pick a project to continue.",
            candidates=partial[:MAX_PROJECT_CANDIDATES],
        )

    hint = (cwd_hint or "").strip()
    if hint.startswith("/"):
        for project in projects:
            if project.path == hint:
                return ProjectResolution(cwd=project.path)
        return ProjectResolution(
            error=f"Project path '{hint}' is not registered. Pick one to continue.",
            candidates=projects[:MAX_PROJECT_CANDIDATES],
        )

    return ProjectResolution(
        error="Project not specified. Pick one to continue.",
        candidates=projects[:MAX_PROJECT_CANDIDATES],
    )


@dataclass
class _Stamp:
    at: float
    result: Any = None


class Dispatcher:
    """Deduplicating dispatch front for a ``BridgeRegistry``."""

    def __init__(
        self,
        registry: BridgeRegistry,
        *,
        projects: Callable[[], list[ProjectRef]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        dedupe_window: float = DEDUPE_WINDOW_SECONDS,
        awaiting_window: float = AWAITING_MODEL_WINDOW_SECONDS,
    ) -> None:
        self.registry = registry
        self._projects = projects or (lambda: [])
        self._clock = clock
        self.dedupe_window = dedupe_window
        self.awaiting_window = awaiting_window
        # Entries are never evicted; stale ones are ignored.
        self._recent: dict[str, _Stamp] = {}
        self._awaiting: dict[str, _Stamp] = {}
        self._in_flight: dict[str, asyncio.Future[DispatchResult]] = {}

    @property
    def dedupe_window_ms(self) -> int:
        return int(self.dedupe_window * 1000)

    def _fresh(self, stamp: _Stamp | None, window: float) -> bool:
        return stamp is not None and self._clock() - stamp.at < window

    def _deduped(self, result: DispatchResult) -> DispatchResult:
        return replace(result, deduped=True, dedupe_window_ms=self.dedupe_window_ms)

    @staticmethod
    def validate(request: DispatchRequest) -> None:
        if not request.cwd:
            raise DispatchValidationError("cwd is required")
        if request.thinking_level and not is_thinking_level(request.thinking_level):
            raise DispatchValidationError(
                "thinkingLevel must be one of " + ", ".join(THINKING_LEVEL_ORDER)
            )

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        """Spawn a bridge for *request*, or return the recent identical one.

        Raises DispatchValidationError for bad input and the bridge's own
        errors (SpawnError, StartupError, ...) when it cannot start.
        """
        self.validate(request)
        key = dedupe_key(
            request.cwd, request.message, request.provider, request.model,
            request.thinking_level,
        )
        recent = self._recent.get(key)
        if self._fresh(recent, self.dedupe_window):
            logger.info("Dedupe hit bridge=%s key=%s", recent.result.bridge_id, key)
            return self._deduped(recent.result)
        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            return self._deduped(await asyncio.shield(in_flight))

        future: asyncio.Future[DispatchResult] = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await self._spawn_and_prompt(request)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()
            raise
        finally:
            self._in_flight.pop(key, None)
        future.set_result(result)

        self._recent[key] = _Stamp(at=self._clock(), result=result)
        self._awaiting.pop(request_key(request.cwd, request.message, request.thinking_level), None)
        return result

    async def _spawn_and_prompt(self, request: DispatchRequest) -> DispatchResult:
        session = await self.registry.dispatch(request.cwd, request.provider, request.model)
        message = request.message.strip()
        session.initial_message = message[:200] or None
        session.thinking_level = request.thinking_level
        try:
            await session.refresh_state()
            if request.thinking_level:
                await session.channel.send_command(
                    {"type": "set_thinking_level", "level": request.thinking_level},
                )
        except RigError:
            logger.warning("Dispatch setup failed, killing bridge=%s", session.bridge_id)
            session.channel.kill()
            raise
        # The prompt streams its result as events; they are buffered until
        # the first subscriber attaches.
        if request.message:
            prompt: dict[str, Any] = {"type": "prompt", "message": request.message}
            images = image_payloads(request.images)
            if images:
                prompt["images"] = images
            session.channel.send_fire_and_forget(prompt)

        logger.info(
            "Dispatched bridge=%s cwd=%s provider=%s model=%s",
            session.bridge_id, request.cwd, request.provider, request.model,
        )
        return DispatchResult(
            bridge_id=session.bridge_id,
            session_id=session.session_id or session.bridge_id,
            session_file=session.session_file,
        )

    async def plan(
        self,
        message: str,
        *,
        cwd_hint: str | None = None,
        provider: str | None = None,
        model: str | None = None,
        thinking_level: str | None = None,
    ) -> PlanOutcome:
        """Resolve folder and model, then dispatch; or return a pause state."""
        if thinking_level and not is_thinking_level(thinking_level):
            raise DispatchValidationError(
                "thinkingLevel must be one of " + ", ".join(THINKING_LEVEL_ORDER)
            )
        title = title_from_prompt(message)
        resolution = resolve_dispatch_cwd(message, cwd_hint, self._projects())
        if not resolution.ok:
            return DispatchNeedsProject(
                message=message,
                provider=provider,
                model=model,
                thinking_level=thinking_level,
                title=title,
                error=resolution.error,
                projects=resolution.candidates,
            )

        cwd = resolution.cwd
        rkey = request_key(cwd, message, thinking_level)
        awaiting = self._awaiting.get(rkey)
        if provider and model and self._fresh(awaiting, self.awaiting_window):
            return DispatchNeedsModel(
                cwd=cwd,
                message=message,
                thinking_level=thinking_level,
                title=title,
                error="Waiting for user-selected model.",
                awaiting_model_selection=True,
            )
        if not provider or not model:
            self._awaiting[rkey] = _Stamp(at=self._clock())
            return DispatchNeedsModel(
                cwd=cwd,
                message=message,
                thinking_level=thinking_level,
                title=title,
                error="Model not specified",
            )

        try:
            result = await self.dispatch(DispatchRequest(
                cwd=cwd,
                message=message,
                provider=provider,
                model=model,
                thinking_level=thinking_level,
            ))
            return replace(result, title=title)
        except DispatchValidationError:
            raise
        except RigError as exc:
            if not _MODEL_ERROR_RE.search(str(exc)):
                raise
            logger.info("Dispatch needs a different model cwd=%s error=%s", cwd, exc)
            return DispatchNeedsModel(
                cwd=cwd,
                message=message,
                thinking_level=thinking_level,
                title=title,
                error=str(exc),
            )
