"""Core data models for the process bridge.

Dataclasses, constants and small pure helpers shared by the engine,
the server and the operator. Single source of truth to avoid circular
imports.
"""
from __future__ import annotations

import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any

# Ordered weakest to strongest; the agent cycles through them in this order.
THINKING_LEVEL_ORDER: tuple[str, ...] = (
    "off", "minimal", "low", "medium", "high", "xhigh",
)

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)


def is_thinking_level(value: Any) -> bool:
    return isinstance(value, str) and value in THINKING_LEVEL_ORDER


def parse_thinking_level(value: Any) -> str | None:
    """Return *value* if it names a thinking level, else None."""
    return value if is_thinking_level(value) else None


@dataclass
class SpawnOptions:
    """How to start one agent process."""
    cwd: str
    session_file: str | None = None
    provider: str | None = None
    model: str | None = None
    extension_path: str | None = None
    env: dict[str, str] | None = None


@dataclass(frozen=True)
class ExitInfo:
    """Terminal status of an agent process."""
    code: int | None
    signal: str | None = None
    error: str | None = None

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {
            "type": "exit",
            "code": self.code,
            "signal": self.signal,
        }
        if self.error:
            message["error"] = self.error
        return message


@dataclass
class LiveState:
    """Last known agent-native state of a bridge (from get_state/events)."""
    session_id: str | None = None
    session_file: str | None = None
    provider: str | None = None
    model_id: str | None = None
    thinking_level: str | None = None

    def merge_state_response(self, data: Any) -> None:
        """Fold a ``get_state`` response payload into this state."""
        if not isinstance(data, dict):
            return
        model = data.get("model") if isinstance(data.get("model"), dict) else {}
        session_id = data.get("sessionId")
        session_file = data.get("sessionFile")
        provider = data.get("provider") or model.get("provider")
        model_id = data.get("modelId") or model.get("id")
        thinking_level = data.get("thinkingLevel")
        if isinstance(session_id, str) and session_id:
            self.session_id = session_id
        if isinstance(session_file, str) and session_file:
            self.session_file = session_file
        if isinstance(provider, str) and provider:
            self.provider = provider
        if isinstance(model_id, str) and model_id:
            self.model_id = model_id
        if isinstance(thinking_level, str) and thinking_level:
            self.thinking_level = thinking_level


@dataclass
class PromptImage:
    """Image attached to a prompt, given as a URL (usually a data URL)."""
    url: str
    media_type: str | None = None

    def to_payload(self) -> dict[str, str] | None:
        """Convert to the agent's image block; non-data URLs yield None."""
        match = _DATA_URL_RE.match(self.url)
        if not match:
            return None
        return {
            "type": "image",
            "mimeType": self.media_type or match.group(1),
            "data": match.group(2),
        }


def image_payloads(images: list[PromptImage] | None) -> list[dict[str, str]]:
    payloads: list[dict[str, str]] = []
    for image in images or []:
        payload = image.to_payload()
        if payload is not None:
            payloads.append(payload)
    return payloads


@dataclass
class DispatchRequest:
    """A request to start a new agent work order."""
    cwd: str
    message: str = ""
    provider: str | None = None
    model: str | None = None
    thinking_level: str | None = None
    images: list[PromptImage] = field(default_factory=list)

    @classmethod
    def from_json(cls, body: dict[str, Any]) -> DispatchRequest:
        images = []
        for raw in body.get("images") or []:
            if isinstance(raw, dict) and isinstance(raw.get("url"), str):
                images.append(PromptImage(
                    url=raw["url"],
                    media_type=raw.get("mediaType"),
                ))
            elif isinstance(raw, dict) and isinstance(raw.get("data"), str):
                mime = raw.get("mimeType") or "image/png"
                images.append(PromptImage(url=f"data:{mime};base64,{raw['data']}"))
        return cls(
            cwd=str(body.get("cwd") or ""),
            message=str(body.get("message") or ""),
            provider=body.get("provider") or None,
            model=body.get("model") or None,
            thinking_level=body.get("thinkingLevel") or None,
            images=images,
        )


@dataclass
class DispatchResult:
    """Outcome of a dispatch that spawned (or reused) a bridge."""
    bridge_id: str
    session_id: str | None = None
    session_file: str | None = None
    deduped: bool = False
    dedupe_window_ms: int | None = None
    title: str | None = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "bridgeId": self.bridge_id,
            "sessionId": self.session_id,
            "sessionFile": self.session_file,
        }
        if self.deduped:
            data["deduped"] = True
            data["dedupeWindowMs"] = self.dedupe_window_ms
        if self.title:
            data["title"] = self.title
        return data


@dataclass
class DispatchNeedsModel:
    """Pause state: the caller must pick a model before dispatch proceeds."""
    cwd: str
    message: str
    thinking_level: str | None = None
    title: str | None = None
    error: str | None = None
    awaiting_model_selection: bool = False

    def to_json(self) -> dict[str, Any]:
        data = {
            "needsModel": True,
            "cwd": self.cwd,
            "message": self.message,
            "thinkingLevel": self.thinking_level,
            "title": self.title,
            "error": self.error,
        }
        if self.awaiting_model_selection:
            data["awaitingModelSelection"] = True
        return data


@dataclass
class ProjectRef:
    path: str
    name: str


@dataclass
class DispatchNeedsProject:
    """Pause state: the caller must pick a target folder first."""
    message: str
    provider: str | None = None
    model: str | None = None
    thinking_level: str | None = None
    title: str | None = None
    error: str | None = None
    projects: list[ProjectRef] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {
            "needsProject": True,
            "message": self.message,
            "provider": self.provider,
            "model": self.model,
            "thinkingLevel": self.thinking_level,
            "title": self.title,
            "error": self.error,
            "projects": [asdict(p) for p in self.projects],
        }


@dataclass
class DispatchWatchTarget:
    """A dispatched bridge to watch on behalf of a conversation."""
    bridge_id: str
    title: str
    conversation_id: str


@dataclass
class ConversationRecord:
    """Persisted pointer for one external conversation identity."""
    conversation_id: str
    session_file: str | None = None
    session_id: str | None = None
    model_provider: str | None = None
    model_id: str | None = None
    thinking_level: str | None = None
    updated_at: float = field(default_factory=lambda: time.time() * 1000)

    def to_json(self) -> dict[str, Any]:
        data = {
            "conversationId": self.conversation_id,
            "sessionFile": self.session_file,
            "sessionId": self.session_id,
            "modelProvider": self.model_provider,
            "modelId": self.model_id,
            "thinkingLevel": self.thinking_level,
            "updatedAt": self.updated_at,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_json(cls, conversation_id: str, data: dict[str, Any]) -> ConversationRecord:
        updated_at = data.get("updatedAt")
        return cls(
            conversation_id=str(data.get("conversationId") or conversation_id),
            session_file=data.get("sessionFile"),
            session_id=data.get("sessionId"),
            model_provider=data.get("modelProvider"),
            model_id=data.get("modelId"),
            thinking_level=parse_thinking_level(data.get("thinkingLevel")),
            updated_at=float(updated_at) if isinstance(updated_at, (int, float)) else 0.0,
        )


def extract_text(content: Any, separator: str = "") -> str:
    """Join the text blocks of a message content (string or block list)."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = []
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str):
                parts.append(text)
    return separator.join(parts)


def title_from_prompt(prompt: str) -> str:
    """First seven words of a prompt, on one line."""
    return " ".join(prompt.strip().split()[:7])


def normalize_message(message: str) -> str:
    return " ".join(message.strip().lower().split())


def project_name_from_cwd(cwd: str) -> str:
    parts = [p for p in cwd.split("/") if p]
    return parts[-1] if parts else "unknown"
