from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from rig.engine.models import ConversationRecord
from rig.operator.store import ConversationStore
from rig.shared.services.durable_write import atomic_write_json, atomic_write_text


def test_store_persists_and_reloads(tmp_path) -> None:
    path = tmp_path / "op" / "conversations.json"
    store = ConversationStore(path)
    store.put(ConversationRecord("a", session_file="/a.jsonl", updated_at=1.0))
    store.put(ConversationRecord("b", model_provider="acme", model_id="m1", updated_at=2.0))

    on_disk = json.loads(path.read_text())
    assert set(on_disk["conversations"]) == {"a", "b"}

    reloaded = ConversationStore(path)
    assert reloaded.get("a").session_file == "/a.jsonl"
    assert [r.conversation_id for r in reloaded.all()] == ["b", "a"]

    assert reloaded.delete("a") is True
    assert reloaded.delete("a") is False
    assert "a" not in json.loads(path.read_text())["conversations"]


@pytest.mark.parametrize("content", ["{not json", "[]", '{"conversations": []}'])
def test_store_tolerates_unreadable_files(tmp_path, content) -> None:
    path = tmp_path / "conversations.json"
    path.write_text(content)
    store = ConversationStore(path)
    assert store.all() == []
    store.put(ConversationRecord("a"))
    assert ConversationStore(path).get("a") is not None


def test_store_skips_non_object_records(tmp_path) -> None:
    path = tmp_path / "conversations.json"
    path.write_text(json.dumps({"conversations": {"a": "junk", "b": {"sessionFile": "/b"}}}))
    store = ConversationStore(path)
    assert store.get("a") is None
    assert store.get("b").conversation_id == "b"


def test_atomic_write_replaces_whole_file(tmp_path) -> None:
    path = tmp_path / "deep" / "file.json"
    atomic_write_json(path, {"a": 1})
    assert path.read_text() == '{\n  "a": 1\n}\n'
    atomic_write_text(path, "second")
    assert path.read_text() == "second"
    assert [p.name for p in path.parent.iterdir()] == ["file.json"]


def test_atomic_write_failure_keeps_old_content(tmp_path) -> None:
    path = tmp_path / "file.txt"
    path.write_text("old")
    with patch("rig.shared.services.durable_write.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(OSError):
            atomic_write_text(path, "new")
    assert path.read_text() == "old"
    assert [p.name for p in tmp_path.iterdir()] == ["file.txt"]
