from __future__ import annotations

import asyncio

import pytest

from rig.engine.errors import SpawnError
from rig.engine.registry import BridgeRegistry

from rig_fakes import FakeSpawner


def _registry(spawner: FakeSpawner, **kwargs) -> BridgeRegistry:
    return BridgeRegistry(spawner=spawner, removal_delay=0.05, **kwargs)


@pytest.mark.asyncio
async def test_dispatch_allocates_sequential_ids() -> None:
    spawner = FakeSpawner()
    registry = _registry(spawner)
    first = await registry.dispatch("/proj", "acme", "m1")
    second = await registry.dispatch("/proj")
    assert (first.bridge_id, second.bridge_id) == ("bridge_1", "bridge_2")
    assert spawner.channels[0].options.provider == "acme"
    assert registry.lookup("bridge_1") is first
    assert len(registry) == 2


@pytest.mark.asyncio
async def test_events_reach_fanout_and_live_state() -> None:
    spawner = FakeSpawner()
    registry = _registry(spawner)
    session = await registry.dispatch("/proj")
    channel = spawner.channels[0]

    channel.emit({"type": "message_start", "message": {"role": "user", "content": "x" * 300}})
    channel.emit({"type": "model_change", "provider": "acme", "modelId": "m2"})
    channel.emit({"type": "thinking_level_change", "thinkingLevel": "high"})
    channel.emit({"type": "tool_execution_start", "toolName": "edit", "args": {"path": "/proj/a.py"}})
    channel.emit({"type": "tool_execution_start", "toolName": "bash", "args": {"command": "ls"}})

    assert session.initial_message == "x" * 200
    assert (session.state.provider, session.state.model_id) == ("acme", "m2")
    assert session.thinking_level == "high"
    assert [f.path for f in session.file_tracker.get_files()] == ["/proj/a.py"]
    assert session.fanout.backlog_size == 5

    data = await session.refresh_state()
    assert data is not None
    assert session.session_file == "/sessions/bridge_1.jsonl"
    assert session.to_active_json()["sessionId"] == "sess-bridge_1"


@pytest.mark.asyncio
async def test_exited_bridge_is_removed_after_delay() -> None:
    spawner = FakeSpawner()
    registry = _registry(spawner)
    session = await registry.dispatch("/proj")
    assert registry.kill("bridge_1") is True
    assert session.fanout.backlog_size == 1  # the exit message
    assert registry.lookup("bridge_1") is session

    await asyncio.sleep(0.1)
    assert registry.lookup("bridge_1") is None
    assert registry.kill("bridge_1") is False


@pytest.mark.asyncio
async def test_resume_reuses_live_bridge_for_same_file() -> None:
    spawner = FakeSpawner()
    registry = _registry(spawner)

    (a, a_active), (b, b_active) = await asyncio.gather(
        registry.resume("/proj", "/sessions/one.jsonl"),
        registry.resume("/proj", "/sessions/one.jsonl"),
    )
    assert a is b
    assert sorted([a_active, b_active]) == [False, True]
    assert len(spawner.channels) == 1

    again, active = await registry.resume("/proj", "/sessions/one.jsonl")
    assert again is a and active is True

    other, active = await registry.resume("/proj", "/sessions/two.jsonl")
    assert other is not a and active is False


@pytest.mark.asyncio
async def test_failed_spawn_is_not_registered() -> None:
    spawner = FakeSpawner()
    spawner.fail_with = SpawnError("pi", "executable not found")
    registry = _registry(spawner)
    with pytest.raises(SpawnError):
        await registry.dispatch("/proj")
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_temporary_bridges_are_not_registered() -> None:
    spawner = FakeSpawner()
    registry = _registry(spawner)
    channel = await registry.spawn_temporary("/proj")
    assert channel.bridge_id == "bridge_1"
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_shutdown_kills_everything() -> None:
    spawner = FakeSpawner()
    registry = _registry(spawner)
    await registry.dispatch("/a")
    await registry.dispatch("/b")
    await registry.shutdown(timeout=0.5)
    assert all(not c.alive for c in spawner.channels)
    assert registry.first_alive() is None
