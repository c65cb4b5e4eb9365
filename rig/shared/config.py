"""Rig configuration shared by the server and the operator.

Two files live in the agent's own config directory (``~/.pi/agent``):

- ``rig.json``: owned by rig; server port, registered projects and the
  operator section (default model). Read and written here.
- ``settings.json``: owned by the agent; read only, for enabled models
  and defaults. Model changes go through the agent protocol instead.

Loaders never raise: a missing or corrupt file yields defaults.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rig.engine.models import ProjectRef, parse_thinking_level
from rig.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

AGENT_DIR = Path.home() / ".pi" / "agent"
RIG_CONFIG_PATH = AGENT_DIR / "rig.json"
AGENT_SETTINGS_PATH = AGENT_DIR / "settings.json"
DEFAULT_PORT = 3100


def _read_json_object(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError):
        logger.warning("Ignoring unreadable config file %s", path, exc_info=True)
        return {}
    return data if isinstance(data, dict) else {}


@dataclass
class ModelRef:
    provider: str
    model_id: str
    thinking_level: str | None = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {"provider": self.provider, "modelId": self.model_id}
        if self.thinking_level:
            data["thinkingLevel"] = self.thinking_level
        return data

    @classmethod
    def from_json(cls, raw: Any) -> ModelRef | None:
        if not isinstance(raw, dict):
            return None
        provider = raw.get("provider")
        model_id = raw.get("modelId")
        if not provider or not model_id:
            return None
        return cls(
            provider=str(provider),
            model_id=str(model_id),
            thinking_level=parse_thinking_level(raw.get("thinkingLevel")),
        )


@dataclass
class RigConfig:
    """Contents of ``rig.json``."""

    port: int = DEFAULT_PORT
    projects: list[ProjectRef] = field(default_factory=list)
    operator: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path | None = None) -> RigConfig:
        data = _read_json_object(path or RIG_CONFIG_PATH)
        projects = []
        for raw in data.get("projects") or []:
            if isinstance(raw, dict) and raw.get("path") and raw.get("name"):
                projects.append(ProjectRef(path=str(raw["path"]), name=str(raw["name"])))
        port = data.get("port")
        operator = data.get("operator")
        return cls(
            port=port if isinstance(port, int) else DEFAULT_PORT,
            projects=projects,
            operator=operator if isinstance(operator, dict) else {},
        )

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "port": self.port,
            "projects": [{"path": p.path, "name": p.name} for p in self.projects],
        }
        if self.operator:
            data["operator"] = self.operator
        return data

    def save(self, path: Path | None = None) -> None:
        atomic_write_json(path or RIG_CONFIG_PATH, self.to_json())

    def add_project(self, path: str, name: str) -> None:
        """Register a project; an existing entry for *path* is replaced."""
        self.projects = [p for p in self.projects if p.path != path]
        self.projects.append(ProjectRef(path=path, name=name))

    def remove_project(self, path: str) -> None:
        self.projects = [p for p in self.projects if p.path != path]

    @property
    def operator_default_model(self) -> ModelRef | None:
        return ModelRef.from_json(self.operator.get("defaultModel"))

    def set_operator_default_model(self, model: ModelRef) -> None:
        self.operator = {**self.operator, "defaultModel": model.to_json()}


@dataclass
class AgentSettings:
    """Read-only view of the agent's ``settings.json``."""

    raw: dict[str, Any] = field(default_factory=dict)
    agent_dir: Path = AGENT_DIR

    @classmethod
    def load(cls, path: Path | None = None) -> AgentSettings:
        target = path or AGENT_SETTINGS_PATH
        return cls(raw=_read_json_object(target), agent_dir=target.parent)

    def enabled_models(self) -> list[dict[str, str]]:
        """Enabled models as ``{provider, modelId, displayName}``.

        Entries are ``provider/model`` strings; one without a slash gets
        provider ``unknown``.
        """
        entries = self.raw.get("enabledModels")
        if not isinstance(entries, list):
            return []
        models = []
        for entry in entries:
            if not isinstance(entry, str):
                continue
            provider, sep, model_id = entry.partition("/")
            if not sep:
                provider, model_id = "unknown", entry
            models.append({"provider": provider, "modelId": model_id, "displayName": model_id})
        return models

    def default_model(self) -> dict[str, str] | None:
        provider = self.raw.get("defaultProvider")
        model_id = self.raw.get("defaultModel")
        if not provider or not model_id:
            return None
        return {"provider": provider, "modelId": model_id, "displayName": model_id}

    @property
    def sessions_dir(self) -> Path:
        return self.agent_dir / "sessions"


@dataclass
class ServerConfig:
    """Bridge server settings."""

    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    agent_binary: str = "pi"
    rig_config_path: Path = RIG_CONFIG_PATH
    agent_settings_path: Path = AGENT_SETTINGS_PATH

    @classmethod
    def from_env(cls, rig_config: RigConfig | None = None) -> ServerConfig:
        """Load from ``RIG_*`` env vars; the port falls back to rig.json."""
        rig_config = rig_config or RigConfig.load()
        config = cls(
            host=os.getenv("RIG_HOST", cls.host),
            port=int(os.getenv("RIG_PORT", str(rig_config.port))),
            agent_binary=os.getenv("RIG_AGENT_BINARY", cls.agent_binary),
        )
        logger.debug(
            "ServerConfig.from_env: host=%s port=%d agent=%s",
            config.host, config.port, config.agent_binary,
        )
        return config
