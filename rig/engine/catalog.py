"""Model catalog queries answered by the agent itself.

The agent owns its model registry, so the list of available models and
the thinking levels a model supports are asked of a bridge: a live one
when possible, otherwise a temporary process that is killed afterwards.
"""
from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from .channel import LineJsonChannel
from .errors import ModelSelectionError, RigError
from .models import THINKING_LEVEL_ORDER
from .registry import BridgeRegistry

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 10.0
CAPABILITY_CACHE_SECONDS = 5 * 60.0


@dataclass
class ModelInfo:
    provider: str
    modelId: str
    name: str
    reasoning: bool

    @classmethod
    def from_agent(cls, raw: dict[str, Any]) -> ModelInfo:
        return cls(
            provider=str(raw.get("provider") or ""),
            modelId=str(raw.get("id") or ""),
            name=str(raw.get("name") or raw.get("id") or ""),
            reasoning=bool(raw.get("reasoning")),
        )

    def to_json(self) -> dict[str, Any]:
        return asdict(self)


async def _available_models_from(channel: LineJsonChannel) -> list[ModelInfo] | None:
    response = await channel.send_command(
        {"type": "get_available_models"}, PROBE_TIMEOUT_SECONDS,
    )
    data = response.get("data") if response.get("success") else None
    models = data.get("models") if isinstance(data, dict) else None
    if not isinstance(models, list):
        return None
    return [ModelInfo.from_agent(m) for m in models if isinstance(m, dict)]


class ModelCatalog:
    """Caches the agent's model list and per-model thinking levels."""

    def __init__(
        self,
        registry: BridgeRegistry,
        *,
        probe_cwd: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        capability_ttl: float = CAPABILITY_CACHE_SECONDS,
    ) -> None:
        self.registry = registry
        self._probe_cwd = probe_cwd or os.getcwd()
        self._clock = clock
        self._capability_ttl = capability_ttl
        self._all_models: list[ModelInfo] | None = None
        self._levels: dict[str, tuple[float, list[str]]] = {}

    async def available_models(self) -> list[ModelInfo]:
        """All models the agent knows about; cached after the first success."""
        if self._all_models is not None:
            return self._all_models

        for session in self.registry.sessions():
            if not session.alive:
                continue
            try:
                models = await _available_models_from(session.channel)
            except RigError:
                logger.debug("Model list query failed bridge=%s", session.bridge_id, exc_info=True)
                continue
            if models is not None:
                self._all_models = models
                return models

        channel = await self.registry.spawn_temporary(self._probe_cwd)
        try:
            models = await _available_models_from(channel)
        finally:
            channel.kill()
        if models is not None:
            self._all_models = models
        return models or []

    async def thinking_levels(self, provider: str, model_id: str) -> list[str]:
        """Levels *model_id* accepts, discovered by cycling on a probe bridge."""
        key = f"{provider}/{model_id}"
        cached = self._levels.get(key)
        if cached is not None and self._clock() - cached[0] < self._capability_ttl:
            return cached[1]

        channel = await self.registry.spawn_temporary(self._probe_cwd)
        try:
            levels = await self._probe_levels(channel, provider, model_id)
        finally:
            channel.kill()
        self._levels[key] = (self._clock(), levels)
        logger.info("Probed thinking levels model=%s levels=%s", key, levels)
        return levels

    async def _probe_levels(
        self, channel: LineJsonChannel, provider: str, model_id: str,
    ) -> list[str]:
        response = await channel.send_command(
            {"type": "set_model", "provider": provider, "modelId": model_id},
            PROBE_TIMEOUT_SECONDS,
        )
        if not response.get("success"):
            raise ModelSelectionError(provider, model_id, response.get("error") or "Model not found")

        response = await channel.send_command({"type": "get_state"}, PROBE_TIMEOUT_SECONDS)
        if not response.get("success"):
            raise RigError(response.get("error") or "Failed to fetch state")
        data = response.get("data") or {}
        model = data.get("model") if isinstance(data.get("model"), dict) else {}
        if not model.get("reasoning"):
            return ["off"]

        start_level = data.get("thinkingLevel") or "off"
        seen = {start_level}
        for _ in range(len(THINKING_LEVEL_ORDER) + 2):
            response = await channel.send_command(
                {"type": "cycle_thinking_level"}, PROBE_TIMEOUT_SECONDS,
            )
            level = (response.get("data") or {}).get("level") if response.get("success") else None
            if not level or level in seen:
                break
            seen.add(level)

        try:
            await channel.send_command(
                {"type": "set_thinking_level", "level": start_level}, 5.0,
            )
        except RigError:
            logger.debug("Could not restore thinking level on probe bridge", exc_info=True)

        levels = [level for level in THINKING_LEVEL_ORDER if level in seen]
        return levels or ["off", "minimal", "low", "medium", "high"]
