"""Persisted conversation pointers (``conversations.json``).

Only pointers survive restarts: the agent session file to resume and
the model selection. Transcripts stay in the agent's own session files.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path

from rig.engine.models import ConversationRecord
from rig.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)


class ConversationStore:
    """In-memory map of records, written through to disk on every change."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._records: dict[str, ConversationRecord] = {}
        self._load()

    def _load(self) -> None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, ValueError):
            logger.warning("Conversation store unreadable at %s; starting empty", self.path, exc_info=True)
            return
        conversations = data.get("conversations") if isinstance(data, dict) else None
        if not isinstance(conversations, dict):
            return
        for conversation_id, raw in conversations.items():
            if isinstance(raw, dict):
                self._records[conversation_id] = ConversationRecord.from_json(conversation_id, raw)
        logger.info("Loaded %d conversation records from %s", len(self._records), self.path)

    def save(self) -> None:
        atomic_write_json(self.path, {
            "conversations": {cid: r.to_json() for cid, r in self._records.items()},
        })

    def get(self, conversation_id: str) -> ConversationRecord | None:
        return self._records.get(conversation_id)

    def put(self, record: ConversationRecord) -> None:
        self._records[record.conversation_id] = record
        self.save()

    def delete(self, conversation_id: str) -> bool:
        if self._records.pop(conversation_id, None) is None:
            return False
        self.save()
        return True

    def all(self) -> list[ConversationRecord]:
        """Every record, most recently updated first."""
        return sorted(self._records.values(), key=lambda r: r.updated_at, reverse=True)
