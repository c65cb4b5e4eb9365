from __future__ import annotations

import asyncio

import pytest
from aiohttp import test_utils, web

from rig.engine.models import DispatchWatchTarget
from rig.engine.registry import BridgeRegistry
from rig.operator.watcher import NotificationWatcher, SessionDone, watch_url
from rig.server.server import RigServer

from rig_fakes import FakeSpawner


def _target(bridge_id: str = "bridge_1") -> DispatchWatchTarget:
    return DispatchWatchTarget(bridge_id=bridge_id, title="add tests", conversation_id="chat-1")


@pytest.mark.asyncio
async def test_local_watch_reports_agent_end_once() -> None:
    spawner = FakeSpawner()
    registry = BridgeRegistry(spawner=spawner)
    await registry.dispatch("/proj")
    watcher = NotificationWatcher(registry=registry)
    done: list[SessionDone] = []
    watcher.on_done(done.append)

    watcher.watch(_target())
    watcher.watch(_target())
    assert watcher.watching == ["bridge_1"]

    channel = spawner.channels[0]
    channel.emit({"type": "message_update"})
    assert done == []
    channel.emit({"type": "agent_end"})
    channel.exit(code=0)

    assert done == [SessionDone(conversation_id="chat-1", bridge_id="bridge_1", title="add tests")]
    assert watcher.watching == []


@pytest.mark.asyncio
async def test_local_watch_of_exited_bridge_fires_immediately() -> None:
    spawner = FakeSpawner()
    registry = BridgeRegistry(spawner=spawner)
    await registry.dispatch("/proj")
    spawner.channels[0].exit(code=1)

    watcher = NotificationWatcher(registry=registry)
    done: list[SessionDone] = []
    watcher.on_done(done.append)
    watcher.watch(_target())
    assert len(done) == 1
    assert watcher.watching == []


@pytest.mark.asyncio
async def test_local_watch_ignores_unknown_bridge() -> None:
    watcher = NotificationWatcher(registry=BridgeRegistry(spawner=FakeSpawner()))
    watcher.watch(_target("bridge_404"))
    assert watcher.watching == []


def _rig_app(messages: list) -> web.Application:
    async def handle_ws(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        if request.match_info["bridge_id"] != "bridge_1":
            await ws.close(code=4004, message=b"Session not found")
            return ws
        await ws.send_json({"type": "state", "data": {}})
        for message in messages:
            if isinstance(message, str):
                await ws.send_str(message)
            else:
                await ws.send_json(message)
        await asyncio.sleep(0.2)
        await ws.close()
        return ws

    app = web.Application()
    app.router.add_get("/api/ws/{bridge_id}", handle_ws)
    return app


@pytest.mark.asyncio
async def test_remote_watch_reports_completion() -> None:
    server = test_utils.TestServer(_rig_app([
        "not json",
        {"type": "event", "event": {"type": "message_update"}},
        {"type": "event", "event": {"type": "agent_end"}},
        {"type": "exit", "code": 0, "signal": None},
    ]))
    await server.start_server()
    watcher = NotificationWatcher(rig_url=str(server.make_url("")))
    finished = asyncio.Event()
    done: list[SessionDone] = []
    watcher.on_done(lambda d: (done.append(d), finished.set()))
    try:
        watcher.watch(_target())
        await asyncio.wait_for(finished.wait(), timeout=5)
        await asyncio.sleep(0.05)
        assert len(done) == 1
        assert done[0].bridge_id == "bridge_1"
        assert watcher.watching == []
    finally:
        await watcher.shutdown()
        await server.close()


@pytest.mark.asyncio
async def test_remote_watch_of_unknown_bridge_gives_up_quietly() -> None:
    server = test_utils.TestServer(_rig_app([]))
    await server.start_server()
    watcher = NotificationWatcher(rig_url=str(server.make_url("")).rstrip("/"))
    done: list[SessionDone] = []
    watcher.on_done(done.append)
    try:
        watcher.watch(_target("bridge_404"))
        for _ in range(50):
            if not watcher.watching:
                break
            await asyncio.sleep(0.05)
        assert watcher.watching == []
        assert done == []
    finally:
        await watcher.shutdown()
        await server.close()


def test_watch_url_from_http_base() -> None:
    assert watch_url("https://rig.example:3100/", "bridge 1") == "wss://rig.example:3100/api/ws/bridge%201?watch=1"
    assert watch_url("http://localhost:3100", "b") == "ws://localhost:3100/api/ws/b?watch=1"


def test_requires_a_source() -> None:
    with pytest.raises(ValueError):
        NotificationWatcher()


@pytest.mark.asyncio
async def test_remote_watch_leaves_backlog_for_first_ui_client(tmp_path) -> None:
    spawner = FakeSpawner()
    server = RigServer(
        registry=BridgeRegistry(spawner=spawner, removal_delay=60),
        rig_config_path=tmp_path / "rig.json",
        agent_settings_path=tmp_path / "settings.json",
    )
    client = test_utils.TestClient(test_utils.TestServer(server.app))
    await client.start_server()
    watcher = NotificationWatcher(rig_url=str(client.make_url("")))
    finished = asyncio.Event()
    done: list[SessionDone] = []
    watcher.on_done(lambda d: (done.append(d), finished.set()))
    try:
        await client.post("/api/dispatch", json={"cwd": str(tmp_path), "message": "add tests"})
        channel = spawner.channels[0]
        channel.emit({"type": "message_update"})
        channel.emit({"type": "tool_execution_end", "toolName": "bash"})

        listeners = channel.events.listener_count
        watcher.watch(_target())
        for _ in range(100):
            if channel.events.listener_count > listeners:
                break
            await asyncio.sleep(0.02)
        assert channel.events.listener_count > listeners
        session = server.registry.lookup("bridge_1")
        assert session.fanout.buffering
        assert session.fanout.backlog_size == 2

        ui = await client.ws_connect("/api/ws/bridge_1")
        assert (await ui.receive_json(timeout=2))["type"] == "state"
        replay = [await ui.receive_json(timeout=2) for _ in range(2)]
        assert [m["event"]["type"] for m in replay] == ["message_update", "tool_execution_end"]

        channel.emit({"type": "agent_end"})
        await asyncio.wait_for(finished.wait(), timeout=5)
        assert (await ui.receive_json(timeout=2))["event"]["type"] == "agent_end"
        assert done == [SessionDone(conversation_id="chat-1", bridge_id="bridge_1", title="add tests")]
        await ui.close()
    finally:
        await watcher.shutdown()
        await client.close()
