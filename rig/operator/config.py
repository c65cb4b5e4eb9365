"""Operator configuration.

Loaded from ``~/rig-operator/config.yaml`` with environment overrides.
The default model falls back to the ``operator.defaultModel`` section
of ``rig.json`` so the web UI and the operator share one selection.

Precedence (highest wins): env vars, config.yaml, rig.json, defaults.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from rig.engine.models import parse_thinking_level
from rig.shared.config import RIG_CONFIG_PATH, ModelRef, RigConfig

logger = logging.getLogger(__name__)

OPERATOR_HOME = Path.home() / "rig-operator"
OPERATOR_CONFIG_PATH = OPERATOR_HOME / "config.yaml"
DEFAULT_SESSION_TIMEOUT_SECONDS = 15 * 60


@dataclass
class RestConfig:
    host: str = "127.0.0.1"
    port: int = 3200
    bearer_token: str | None = None


@dataclass
class OperatorConfig:
    """Conversation front door settings."""

    rig_url: str = "http://localhost:3100"
    operator_cwd: str = str(OPERATOR_HOME)
    session_timeout_seconds: float = DEFAULT_SESSION_TIMEOUT_SECONDS
    default_model: ModelRef | None = None
    rest: RestConfig = field(default_factory=RestConfig)
    agent_binary: str = "pi"
    extension_path: str | None = None
    store_path: Path = OPERATOR_HOME / "conversations.json"

    @classmethod
    def load(
        cls,
        path: Path | None = None,
        *,
        rig_config_path: Path | None = None,
        environ: dict[str, str] | None = None,
    ) -> OperatorConfig:
        env = os.environ if environ is None else environ
        target = path or OPERATOR_CONFIG_PATH
        raw = _load_yaml(target)
        rest_raw = raw.get("rest") if isinstance(raw.get("rest"), dict) else {}

        default_model = _model_from_yaml(raw.get("default_model"))
        if default_model is None:
            default_model = RigConfig.load(rig_config_path or RIG_CONFIG_PATH).operator_default_model

        operator_cwd = str(raw.get("operator_cwd") or target.parent)
        config = cls(
            rig_url=env.get("RIG_URL") or str(raw.get("rig_url") or cls.rig_url),
            operator_cwd=operator_cwd,
            session_timeout_seconds=float(
                env.get("OPERATOR_SESSION_TIMEOUT")
                or raw.get("session_timeout_seconds")
                or DEFAULT_SESSION_TIMEOUT_SECONDS
            ),
            default_model=default_model,
            rest=RestConfig(
                host=env.get("OPERATOR_HOST") or str(rest_raw.get("host") or RestConfig.host),
                port=int(env.get("OPERATOR_PORT") or rest_raw.get("port") or RestConfig.port),
                bearer_token=env.get("OPERATOR_BEARER_TOKEN") or rest_raw.get("bearer_token") or None,
            ),
            agent_binary=env.get("RIG_AGENT_BINARY") or str(raw.get("agent_binary") or cls.agent_binary),
            extension_path=env.get("OPERATOR_EXTENSION_PATH") or raw.get("extension_path") or None,
            store_path=Path(operator_cwd) / "conversations.json",
        )
        if config.extension_path:
            config.extension_path = str(Path(config.extension_path).expanduser().resolve())
        logger.info(
            "OperatorConfig.load: rig_url=%s cwd=%s timeout=%.0fs default_model=%s rest=%s:%d auth=%s",
            config.rig_url, config.operator_cwd, config.session_timeout_seconds,
            f"{default_model.provider}/{default_model.model_id}" if default_model else "<none>",
            config.rest.host, config.rest.port,
            "on" if config.rest.bearer_token else "off",
        )
        return config


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        logger.debug("Operator config not found at %s; using defaults", path)
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.warning("Operator config YAML parse error in %s: %s", path, exc)
        return {}
    except OSError as exc:
        logger.warning("Cannot read operator config %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _model_from_yaml(raw: Any) -> ModelRef | None:
    if not isinstance(raw, dict):
        return None
    provider = raw.get("provider")
    model_id = raw.get("model_id")
    if not provider or not model_id:
        return None
    return ModelRef(
        provider=str(provider),
        model_id=str(model_id),
        thinking_level=parse_thinking_level(raw.get("thinking_level")),
    )
