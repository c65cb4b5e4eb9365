from __future__ import annotations

import asyncio

import pytest

from rig.engine.errors import (
    ConversationExitedError,
    DispatchValidationError,
    ModelSelectionError,
    TurnTimeoutError,
)
from rig.engine.models import PromptImage
from rig.operator.conversations import (
    ConversationOrchestrator,
    TurnCallbacks,
    TurnQueue,
)
from rig.operator.store import ConversationStore
from rig.shared.config import ModelRef

from rig_fakes import FakeClock, ScriptedFactory


def _orchestrator(tmp_path, factory=None, clock=None, **kwargs) -> ConversationOrchestrator:
    return ConversationOrchestrator(
        ConversationStore(tmp_path / "conversations.json"),
        operator_cwd=str(tmp_path),
        channel_factory=factory or ScriptedFactory(),
        clock=clock or FakeClock(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_ensure_applies_default_model_and_persists(tmp_path) -> None:
    factory = ScriptedFactory()
    orch = _orchestrator(tmp_path, factory, default_model=ModelRef("acme", "m1", "high"))

    conversation = await orch.ensure("chat-1")
    channel = factory.channels[0]
    assert channel.bridge_id == "operator_1"
    assert channel.options.cwd == str(tmp_path)
    assert channel.command_types() == ["get_state", "set_model", "set_thinking_level", "get_state"]
    assert conversation.thinking_level == "high"
    assert await orch.ensure("chat-1") is conversation

    record = orch.store.get("chat-1")
    assert record.session_file == "/sessions/operator_1.jsonl"
    assert (record.model_provider, record.model_id) == ("acme", "m1")
    reloaded = ConversationStore(tmp_path / "conversations.json")
    assert reloaded.get("chat-1").session_id == "sess-operator_1"


@pytest.mark.asyncio
async def test_concurrent_ensure_spawns_once(tmp_path) -> None:
    factory = ScriptedFactory()
    orch = _orchestrator(tmp_path, factory)
    a, b = await asyncio.gather(orch.ensure("chat-1"), orch.ensure("chat-1"))
    assert a is b
    assert len(factory.channels) == 1


@pytest.mark.asyncio
async def test_unavailable_preferred_model_is_a_warning(tmp_path) -> None:
    orch = _orchestrator(tmp_path, default_model=ModelRef("acme", "missing", "low"))
    conversation = await orch.ensure("chat-1")
    assert conversation.model_warning == "Could not select model acme/missing: Model not found"

    status = (await orch.get_model_status("chat-1")).to_json()
    assert status["modelWarning"] == conversation.model_warning
    assert status["active"] is True
    assert status["defaultModelId"] == "missing"
    assert status["liveModelId"] == "m1"


@pytest.mark.asyncio
async def test_turn_streams_text_and_tool_calls(tmp_path) -> None:
    factory = ScriptedFactory()
    orch = _orchestrator(tmp_path, factory)
    texts: list[str] = []
    tools: list[str] = []
    targets = []
    orch.on_dispatch(targets.append)

    result = await orch.send_turn(
        "chat-1", "dispatch",
        images=[PromptImage(url="data:image/jpeg;base64,Zm9v")],
        callbacks=TurnCallbacks(on_text=texts.append, on_tool_call=tools.append),
    )
    assert result.text == "echo: dispatch"
    assert result.to_json() == {"response": "echo: dispatch", "toolCalls": ["rig_dispatch"]}
    assert texts[-1] == "echo: dispatch"
    assert tools == ["rig_dispatch"]
    assert len(targets) == 1
    assert targets[0].bridge_id == "bridge_7"
    assert targets[0].title == "dispatch"
    assert targets[0].conversation_id == "chat-1"

    prompt = factory.channels[0].fired[0]
    assert prompt["images"] == [{"type": "image", "mimeType": "image/jpeg", "data": "Zm9v"}]


@pytest.mark.asyncio
async def test_pause_states_reach_callbacks(tmp_path) -> None:
    orch = _orchestrator(tmp_path)
    needs_model = []
    needs_project = []
    await orch.send_turn("chat-1", "pause", callbacks=TurnCallbacks(
        on_dispatch_model_required=needs_model.append,
        on_dispatch_project_required=needs_project.append,
    ))
    assert needs_model[0].cwd == "/proj"
    assert needs_model[0].awaiting_model_selection is True
    assert [p.path for p in needs_project[0].projects] == ["/proj"]


@pytest.mark.asyncio
async def test_latest_pause_is_kept_until_dispatch_goes_through(tmp_path) -> None:
    orch = _orchestrator(tmp_path)
    await orch.send_turn("chat-1", "pause")
    pending = orch.pending_dispatch("chat-1")
    assert pending is not None and pending.message == "add tests"
    status = (await orch.get_model_status("chat-1")).to_json()
    assert status["pendingDispatch"]["needsProject"] is True
    assert status["pendingDispatch"]["projects"] == [{"path": "/proj", "name": "proj"}]

    await orch.send_turn("chat-1", "dispatch")
    assert orch.pending_dispatch("chat-1") is None
    assert (await orch.get_model_status("chat-1")).to_json()["pendingDispatch"] is None

    await orch.send_turn("chat-1", "pause")
    orch.clear("chat-1")
    assert orch.pending_dispatch("chat-1") is None


@pytest.mark.asyncio
async def test_turns_are_serialized_in_submission_order(tmp_path) -> None:
    factory = ScriptedFactory()
    orch = _orchestrator(tmp_path, factory)
    await orch.ensure("chat-1")
    channel = factory.channels[0]

    first = asyncio.ensure_future(orch.send_turn("chat-1", "hold one"))
    second = asyncio.ensure_future(orch.send_turn("chat-1", "two"))
    await asyncio.sleep(0.05)
    assert channel.prompts() == ["hold one"]
    assert not second.done()

    channel.finish_turn("first done")
    assert (await first).text == "first done"
    assert (await second).text == "echo: two"
    assert channel.prompts() == ["hold one", "two"]


@pytest.mark.asyncio
async def test_turn_timeout_keeps_bridge(tmp_path) -> None:
    factory = ScriptedFactory()
    orch = _orchestrator(tmp_path, factory, turn_timeout=0.05)
    with pytest.raises(TurnTimeoutError):
        await orch.send_turn("chat-1", "hold forever")
    assert factory.channels[0].alive
    assert (await orch.send_turn("chat-1", "again")).text == "echo: again"


@pytest.mark.asyncio
async def test_exit_mid_turn_fails_running_and_queued(tmp_path) -> None:
    factory = ScriptedFactory()
    orch = _orchestrator(tmp_path, factory)
    await orch.ensure("chat-1")
    channel = factory.channels[0]

    running = asyncio.ensure_future(orch.send_turn("chat-1", "hold"))
    queued = asyncio.ensure_future(orch.send_turn("chat-1", "next"))
    await asyncio.sleep(0.05)
    channel.exit(code=1)

    with pytest.raises(ConversationExitedError):
        await running
    with pytest.raises(ConversationExitedError):
        await queued
    assert orch.list_active() == []
    assert orch.store.get("chat-1").session_file == "/sessions/operator_1.jsonl"

    # The next message resumes the recorded session on a new bridge.
    await orch.send_turn("chat-1", "back")
    assert factory.channels[1].options.session_file == "/sessions/operator_1.jsonl"


@pytest.mark.asyncio
async def test_idle_conversations_are_reaped_and_resumed(tmp_path) -> None:
    factory = ScriptedFactory()
    clock = FakeClock()
    orch = _orchestrator(
        tmp_path, factory, clock=clock, session_timeout_seconds=60,
        default_model=ModelRef("acme", "m1"),
    )
    await orch.send_turn("chat-1", "hi")
    busy = asyncio.ensure_future(orch.send_turn("chat-2", "hold"))
    await asyncio.sleep(0.05)

    clock.advance(30)
    assert orch.reap_idle() == []
    clock.advance(31)
    # chat-2 is mid-turn and survives.
    assert orch.reap_idle() == ["chat-1"]
    assert not factory.channels[0].alive
    assert [c["conversationId"] for c in orch.list_active()] == ["chat-2"]

    record = orch.store.get("chat-1")
    assert record.session_file == "/sessions/operator_1.jsonl"
    assert record.model_id == "m1"
    assert {k["conversationId"] for k in orch.list_known()} == {"chat-1", "chat-2"}

    await orch.send_turn("chat-1", "again")
    assert factory.channels[2].options.session_file == "/sessions/operator_1.jsonl"

    factory.channels[1].finish_turn("done")
    await busy
    await orch.shutdown()


@pytest.mark.asyncio
async def test_clear_keeps_model_but_forgets_session(tmp_path) -> None:
    factory = ScriptedFactory()
    orch = _orchestrator(tmp_path, factory)
    await orch.set_model("chat-1", "acme", "m2", "low")
    assert orch.get_model("chat-1") == ModelRef("acme", "m2", "low")

    orch.clear("chat-1")
    assert not factory.channels[0].alive
    record = orch.store.get("chat-1")
    assert record.session_file is None
    assert (record.model_id, record.thinking_level) == ("m2", "low")
    assert orch.get_model("chat-1") == ModelRef("acme", "m2", "low")

    orch.clear("chat-1", preserve_model=False)
    assert orch.store.get("chat-1") is None


@pytest.mark.asyncio
async def test_end_reports_whether_anything_was_live(tmp_path) -> None:
    orch = _orchestrator(tmp_path)
    assert orch.end("chat-1") is False
    await orch.ensure("chat-1")
    assert orch.end("chat-1") is True
    assert orch.store.get("chat-1") is not None


@pytest.mark.asyncio
async def test_strict_model_selection(tmp_path) -> None:
    orch = _orchestrator(tmp_path)
    with pytest.raises(ModelSelectionError):
        await orch.set_model("chat-1", "acme", "missing")
    with pytest.raises(DispatchValidationError):
        await orch.set_model("chat-1", "acme", "m1", "extreme")
    with pytest.raises(DispatchValidationError):
        await orch.set_thinking_level("chat-1", "extreme")
    await orch.set_thinking_level("chat-1", "minimal")
    assert orch.store.get("chat-1").thinking_level == "minimal"


@pytest.mark.asyncio
async def test_turn_queue_cancel_and_close() -> None:
    queue = TurnQueue("q")
    gate = asyncio.Event()
    ran: list[str] = []

    async def job(name: str) -> str:
        ran.append(name)
        await gate.wait()
        return name

    first = queue.submit(lambda: job("a"))
    second = queue.submit(lambda: job("b"))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert queue.busy and queue.pending == 1

    first.cancel()
    gate.set()
    assert await second == "b"
    assert ran == ["a", "b"]

    queue.close(RuntimeError("closed"))
    with pytest.raises(RuntimeError):
        queue.submit(lambda: job("c"))
    await queue.cancel()


@pytest.mark.asyncio
@pytest.mark.parametrize("hops", range(6))
async def test_cancelling_a_finishing_job_leaves_the_next_job_alone(hops) -> None:
    queue = TurnQueue("q")
    futures: list[asyncio.Future] = []

    def cancel_first(remaining: int) -> None:
        if remaining:
            asyncio.get_running_loop().call_soon(cancel_first, remaining - 1)
        else:
            futures[0].cancel()

    async def first() -> int:
        cancel_first(hops)
        return 1

    async def second() -> int:
        await asyncio.sleep(0.05)
        return 2

    futures.append(queue.submit(first))
    futures.append(queue.submit(second))
    assert await futures[1] == 2
    await queue.cancel()
