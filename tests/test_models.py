from __future__ import annotations

from rig.engine.models import (
    ConversationRecord,
    DispatchNeedsModel,
    DispatchRequest,
    DispatchResult,
    ExitInfo,
    LiveState,
    PromptImage,
    extract_text,
    image_payloads,
    normalize_message,
    parse_thinking_level,
    project_name_from_cwd,
    title_from_prompt,
)


def test_dispatch_request_from_json_accepts_both_image_shapes() -> None:
    req = DispatchRequest.from_json({
        "cwd": "/proj",
        "message": "look",
        "provider": "",
        "thinkingLevel": "high",
        "images": [
            {"url": "data:image/png;base64,AAAA", "mediaType": "image/webp"},
            {"data": "BBBB"},
            {"data": "CCCC", "mimeType": "image/gif"},
            "junk",
        ],
    })
    assert req.cwd == "/proj"
    assert req.provider is None
    assert req.thinking_level == "high"
    assert image_payloads(req.images) == [
        {"type": "image", "mimeType": "image/webp", "data": "AAAA"},
        {"type": "image", "mimeType": "image/png", "data": "BBBB"},
        {"type": "image", "mimeType": "image/gif", "data": "CCCC"},
    ]


def test_non_data_urls_are_dropped() -> None:
    assert PromptImage(url="https://example.com/cat.png").to_payload() is None
    assert image_payloads(None) == []


def test_live_state_merges_flat_and_nested_model_fields() -> None:
    state = LiveState(provider="old", model_id="m0")
    state.merge_state_response({"sessionId": "s1", "model": {"provider": "acme", "id": "m1"}})
    assert (state.session_id, state.provider, state.model_id) == ("s1", "acme", "m1")
    state.merge_state_response({"modelId": "m2", "sessionFile": "", "thinkingLevel": "low"})
    assert (state.model_id, state.session_file, state.thinking_level) == ("m2", None, "low")
    state.merge_state_response("not a dict")
    assert state.model_id == "m2"


def test_result_and_pause_json_shapes() -> None:
    assert DispatchResult("bridge_1", "s", "/f").to_json() == {
        "bridgeId": "bridge_1", "sessionId": "s", "sessionFile": "/f",
    }
    deduped = DispatchResult("bridge_1", deduped=True, dedupe_window_ms=10000, title="t").to_json()
    assert deduped["deduped"] is True and deduped["dedupeWindowMs"] == 10000 and deduped["title"] == "t"

    needs = DispatchNeedsModel(cwd="/p", message="m").to_json()
    assert needs["needsModel"] is True
    assert "awaitingModelSelection" not in needs
    assert DispatchNeedsModel(cwd="/p", message="m", awaiting_model_selection=True).to_json()["awaitingModelSelection"]


def test_exit_info_message() -> None:
    assert ExitInfo(code=1).to_message() == {"type": "exit", "code": 1, "signal": None}
    assert ExitInfo(code=None, error="boom").to_message()["error"] == "boom"


def test_conversation_record_round_trip_drops_nulls() -> None:
    record = ConversationRecord("c1", session_file="/s.jsonl", thinking_level="high", updated_at=5.0)
    data = record.to_json()
    assert data == {"conversationId": "c1", "sessionFile": "/s.jsonl", "thinkingLevel": "high", "updatedAt": 5.0}
    assert ConversationRecord.from_json("c1", data) == record

    loose = ConversationRecord.from_json("c2", {"thinkingLevel": "extreme", "updatedAt": "yesterday"})
    assert loose.conversation_id == "c2"
    assert loose.thinking_level is None
    assert loose.updated_at == 0.0


def test_text_helpers() -> None:
    assert extract_text("plain") == "plain"
    assert extract_text([{"type": "text", "text": "a"}, {"type": "tool"}, {"type": "text", "text": "b"}], " ") == "a b"
    assert extract_text(None) == ""
    assert title_from_prompt("  one two three four five six seven eight\nnine ") == "one two three four five six seven"
    assert normalize_message("  Add   Tests\n") == "add tests"
    assert project_name_from_cwd("/home/me/code/api/") == "api"
    assert project_name_from_cwd("/") == "unknown"
    assert parse_thinking_level("xhigh") == "xhigh"
    assert parse_thinking_level("max") is None
