"""HTTP + WebSocket server for rig.

Exposes dispatch/resume/stop of agent bridges, project and model
metadata, the agent's session history, and a live WebSocket per bridge
that replays buffered events to the first client and then streams.

Usage:
    rig server [--host HOST] [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import WSMsgType, web

from rig.engine.catalog import ModelCatalog
from rig.engine.channel import AgentCommand
from rig.engine.dispatch import Dispatcher
from rig.engine.errors import DispatchValidationError, ModelSelectionError, RigError
from rig.engine.fanout import QueueSubscriber, event_message
from rig.engine.models import DispatchRequest, ProjectRef, project_name_from_cwd
from rig.engine.registry import BridgeRegistry, BridgeSession
from rig.shared.config import (
    AGENT_SETTINGS_PATH,
    RIG_CONFIG_PATH,
    AgentSettings,
    RigConfig,
)

from .session_store import SessionStore, iso_from_ms, read_session_entries

logger = logging.getLogger(__name__)

WS_CLOSE_NOT_FOUND = 4004


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _read_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise DispatchValidationError("request body must be JSON") from None
    if not isinstance(body, dict):
        raise DispatchValidationError("request body must be a JSON object")
    return body


class RigServer:
    """aiohttp application owning one bridge registry."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 3100,
        *,
        agent_command: AgentCommand = "pi",
        registry: BridgeRegistry | None = None,
        rig_config_path: Path | None = None,
        agent_settings_path: Path | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._rig_config_path = rig_config_path or RIG_CONFIG_PATH
        self._agent_settings_path = agent_settings_path or AGENT_SETTINGS_PATH
        self.registry = registry if registry is not None else BridgeRegistry(command=agent_command)
        self.dispatcher = Dispatcher(self.registry, projects=self._project_list)
        self.catalog = ModelCatalog(self.registry)
        self.sessions = SessionStore(AgentSettings.load(self._agent_settings_path).sessions_dir)
        self._runner: web.AppRunner | None = None
        self._started_at = time.time()
        self.app = web.Application(middlewares=[
            self._request_logging_middleware,
            self._error_middleware,
        ])
        self.app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        logger.info(
            "RigServer init host=%s port=%s config=%s pid=%s",
            self._host, self._port, self._rig_config_path, os.getpid(),
        )

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-rig-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except (DispatchValidationError, ModelSelectionError) as exc:
            return _error(str(exc), 400)
        except RigError as exc:
            logger.warning("Request failed req=%s error=%s", request.get("req_id"), exc)
            return _error(str(exc), 500)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self.app.router
        r.add_get("/api/health", self._handle_health)
        r.add_get("/api/projects", self._handle_list_projects)
        r.add_post("/api/projects", self._handle_add_project)
        r.add_delete("/api/projects", self._handle_remove_project)
        r.add_get("/api/browse", self._handle_browse)
        r.add_get("/api/models", self._handle_models)
        r.add_get("/api/settings", self._handle_settings)
        r.add_get("/api/models/all", self._handle_all_models)
        r.add_get("/api/models/capabilities", self._handle_model_capabilities)
        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_get("/api/sessions/{id}/entries", self._handle_session_entries)
        r.add_get("/api/active", self._handle_active)
        r.add_post("/api/dispatch", self._handle_dispatch)
        r.add_post("/api/dispatch/plan", self._handle_dispatch_plan)
        r.add_post("/api/resume", self._handle_resume)
        r.add_post("/api/stop", self._handle_stop)
        r.add_get("/api/ws/{bridge_id}", self._handle_ws)

    # ── Lifecycle ──

    async def start(self) -> int:
        """Start listening; returns the bound port."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        addresses = self._runner.addresses
        if addresses and isinstance(addresses[0], tuple):
            self._port = int(addresses[0][1])
        logger.info("Rig server listening on %s:%d", self._host, self._port)
        return self._port

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def _on_cleanup(self, _app: web.Application) -> None:
        await self.registry.shutdown()

    # ── Projects ──

    def _project_list(self) -> list[ProjectRef]:
        """Registered projects first (user-chosen names), then discovered."""
        merged = list(RigConfig.load(self._rig_config_path).projects)
        seen = {p.path for p in merged}
        for project in self.sessions.discover_projects():
            if project.path not in seen:
                seen.add(project.path)
                merged.append(project)
        return merged

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "timestamp": iso_from_ms(time.time() * 1000),
            "uptimeSeconds": round(time.time() - self._started_at, 1),
        })

    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        projects = await asyncio.to_thread(self._project_list)
        return web.json_response({"projects": [{"path": p.path, "name": p.name} for p in projects]})

    async def _handle_add_project(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        path, name = body.get("path"), body.get("name")
        if not path or not name:
            return _error("path and name are required", 400)
        config = RigConfig.load(self._rig_config_path)
        config.add_project(str(path), str(name))
        config.save(self._rig_config_path)
        logger.info("Registered project path=%s name=%s", path, name)
        return web.json_response({"projects": config.to_json()["projects"]})

    async def _handle_remove_project(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        path = body.get("path")
        if not path:
            return _error("path is required", 400)
        config = RigConfig.load(self._rig_config_path)
        config.remove_project(str(path))
        config.save(self._rig_config_path)
        return web.json_response({"projects": config.to_json()["projects"]})

    async def _handle_browse(self, request: web.Request) -> web.Response:
        raw = request.query.get("path")
        target = Path(raw).expanduser().resolve() if raw else Path.home()
        try:
            directories = sorted(
                (e for e in target.iterdir() if e.is_dir() and not e.name.startswith(".")),
                key=lambda e: e.name,
            )
        except OSError:
            return _error("Cannot read directory", 400)
        parent = target.parent
        return web.json_response({
            "path": str(target),
            "parent": str(parent) if parent != target else None,
            "directories": [{"name": d.name, "path": str(d)} for d in directories],
        })

    # ── Models ──

    async def _handle_models(self, request: web.Request) -> web.Response:
        settings = AgentSettings.load(self._agent_settings_path)
        return web.json_response({
            "models": settings.enabled_models(),
            "defaultModel": settings.default_model(),
        })

    async def _handle_settings(self, request: web.Request) -> web.Response:
        return web.json_response(AgentSettings.load(self._agent_settings_path).raw)

    async def _handle_all_models(self, request: web.Request) -> web.Response:
        try:
            models = await self.catalog.available_models()
        except RigError as exc:
            return _error(f"Failed to fetch models: {exc}", 500)
        return web.json_response({"models": [m.to_json() for m in models]})

    async def _handle_model_capabilities(self, request: web.Request) -> web.Response:
        provider = request.query.get("provider")
        model_id = request.query.get("modelId")
        if not provider or not model_id:
            return _error("provider and modelId are required", 400)
        levels = await self.catalog.thinking_levels(provider, model_id)
        return web.json_response({
            "provider": provider,
            "modelId": model_id,
            "thinkingLevels": levels,
        })

    # ── Sessions ──

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        cwd = request.query.get("cwd")
        if cwd:
            file_sessions = await asyncio.to_thread(self.sessions.list_sessions_for_cwd, cwd)
        else:
            file_sessions = await asyncio.to_thread(self.sessions.list_all_sessions)
        rows = [s.to_json() for s in file_sessions]
        bridges = self.registry.sessions()

        active_by_path: dict[str, str] = {}
        active_by_id: dict[str, str] = {}
        for bridge in bridges:
            for path in (bridge.channel.session_file, bridge.state.session_file):
                if path:
                    active_by_path[path] = bridge.bridge_id
            for sid in (bridge.channel.session_id, bridge.state.session_id):
                if sid:
                    active_by_id[sid] = bridge.bridge_id
        for row in rows:
            bridge_id = active_by_path.get(row["path"]) or active_by_id.get(row["id"])
            row["isActive"] = bridge_id is not None
            row["bridgeId"] = bridge_id

        # Live bridges whose session file is not on disk yet still get a row
        # so clients can reconnect.
        known_ids = {row["id"] for row in rows}
        linked = {row["bridgeId"] for row in rows if row["bridgeId"]}
        now_ms = time.time() * 1000
        for bridge in bridges:
            if not bridge.alive or bridge.bridge_id in linked or (cwd and bridge.cwd != cwd):
                continue
            row = self._synthetic_session_row(bridge, now_ms)
            if row["id"] in known_ids:
                continue
            known_ids.add(row["id"])
            rows.append(row)

        rows.sort(key=lambda row: row["modified"], reverse=True)
        return web.json_response({"sessions": rows})

    @staticmethod
    def _synthetic_session_row(bridge: BridgeSession, now_ms: float) -> dict[str, Any]:
        return {
            "id": bridge.session_id or bridge.bridge_id,
            "path": bridge.session_file or f"active://{bridge.bridge_id}",
            "cwd": bridge.cwd,
            "projectName": project_name_from_cwd(bridge.cwd),
            "name": None,
            "firstMessage": bridge.initial_message or "(starting...)",
            "created": iso_from_ms(bridge.started_at * 1000),
            "modified": iso_from_ms(now_ms),
            "messageCount": 1 if bridge.initial_message else 0,
            "lastModel": bridge.state.model_id,
            "lastProvider": bridge.state.provider,
            "thinkingLevel": bridge.thinking_level or bridge.state.thinking_level,
            "isActive": True,
            "bridgeId": bridge.bridge_id,
        }

    async def _handle_session_entries(self, request: web.Request) -> web.Response:
        path = request.query.get("path")
        if not path:
            return _error("path query parameter is required", 400)
        entries = await asyncio.to_thread(read_session_entries, path)
        return web.json_response({"entries": entries})

    async def _handle_active(self, request: web.Request) -> web.Response:
        return web.json_response({
            "active": [s.to_active_json() for s in self.registry.sessions()],
        })

    # ── Dispatch / resume / stop ──

    async def _handle_dispatch(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        result = await self.dispatcher.dispatch(DispatchRequest.from_json(body))
        return web.json_response(result.to_json())

    async def _handle_dispatch_plan(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            return _error("message is required", 400)
        outcome = await self.dispatcher.plan(
            message,
            cwd_hint=body.get("cwd") or None,
            provider=body.get("provider") or None,
            model=body.get("model") or None,
            thinking_level=body.get("thinkingLevel") or None,
        )
        return web.json_response(outcome.to_json())

    async def _handle_resume(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        session_file, cwd = body.get("sessionFile"), body.get("cwd")
        if not session_file or not cwd:
            return _error("sessionFile and cwd are required", 400)
        session, already_active = await self.registry.resume(str(cwd), str(session_file))
        if already_active:
            return web.json_response({"bridgeId": session.bridge_id, "alreadyActive": True})
        try:
            await session.refresh_state()
        except RigError:
            session.channel.kill()
            raise
        return web.json_response({"bridgeId": session.bridge_id})

    async def _handle_stop(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        bridge_id = body.get("bridgeId")
        if not isinstance(bridge_id, str) or not self.registry.kill(bridge_id):
            return _error("session not found", 404)
        return web.json_response({"stopped": True})

    # ── WebSocket ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        bridge_id = request.match_info["bridge_id"]
        session = self.registry.lookup(bridge_id)
        if session is None:
            await ws.close(code=WS_CLOSE_NOT_FOUND, message=b"Session not found")
            return ws
        if request.query.get("watch") == "1":
            return await self._handle_watch_ws(ws, session, request)

        # Subscribe before anything is awaited so no event slips between
        # the replay and the live stream.
        subscriber = QueueSubscriber()
        was_buffering = session.fanout.buffering
        replayed = session.fanout.subscribe(subscriber)
        if not was_buffering and session.channel.exit_info is not None:
            subscriber.send(session.channel.exit_info.to_message())
        logger.info(
            "WS attached bridge=%s req=%s replayed=%d clients=%d",
            bridge_id, request.get("req_id"), replayed, session.fanout.subscriber_count,
        )

        writer = asyncio.create_task(self._ws_writer(ws, session, subscriber))
        commands: set[asyncio.Task] = set()
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    task = self._handle_ws_message(session, subscriber, msg.data)
                    if task is not None:
                        commands.add(task)
                        task.add_done_callback(commands.discard)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WS error bridge=%s: %s", bridge_id, ws.exception())
                    break
        finally:
            session.fanout.unsubscribe(subscriber)
            subscriber.close()
            for task in list(commands):
                task.cancel()
            writer.cancel()
            await asyncio.gather(writer, *commands, return_exceptions=True)
            logger.info(
                "WS detached bridge=%s clients=%d", bridge_id, session.fanout.subscriber_count,
            )
        return ws

    async def _handle_watch_ws(
        self,
        ws: web.WebSocketResponse,
        session: BridgeSession,
        request: web.Request,
    ) -> web.WebSocketResponse:
        """Read-only socket on the raw event stream.

        Watchers never join the fan-out, so the backlog stays with the
        first UI client. Events from before the attach are not sent.
        """
        subscriber = QueueSubscriber()
        detach = session.channel.events.subscribe(
            on_event=lambda event: subscriber.send(event_message(event)),
            on_exit=lambda info: subscriber.send(info.to_message()),
        )
        logger.info("WS watch attached bridge=%s req=%s", session.bridge_id, request.get("req_id"))
        writer = asyncio.create_task(self._ws_pump(ws, session, subscriber))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.warning("WS watch error bridge=%s: %s", session.bridge_id, ws.exception())
                    break
        finally:
            detach()
            subscriber.close()
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)
            logger.info("WS watch detached bridge=%s", session.bridge_id)
        return ws

    async def _ws_pump(
        self,
        ws: web.WebSocketResponse,
        session: BridgeSession,
        subscriber: QueueSubscriber,
    ) -> None:
        try:
            while True:
                message = await subscriber.queue.get()
                if message is None:
                    break
                await ws.send_json(message)
        except (ConnectionResetError, RuntimeError):
            logger.debug("WS closed while writing bridge=%s", session.bridge_id)

    async def _ws_writer(
        self,
        ws: web.WebSocketResponse,
        session: BridgeSession,
        subscriber: QueueSubscriber,
    ) -> None:
        """Single writer per socket: state, files, then the queued stream."""
        try:
            if session.alive:
                try:
                    state = await session.refresh_state()
                except RigError:
                    logger.debug("get_state on attach failed bridge=%s", session.bridge_id, exc_info=True)
                else:
                    await ws.send_json({"type": "state", "data": state})
            files = session.file_tracker.get_files()
            if files:
                await ws.send_json({"type": "files", "files": [f.to_json() for f in files]})
        except (ConnectionResetError, RuntimeError):
            logger.debug("WS closed while writing bridge=%s", session.bridge_id)
            return
        await self._ws_pump(ws, session, subscriber)

    def _handle_ws_message(
        self,
        session: BridgeSession,
        subscriber: QueueSubscriber,
        raw: str,
    ) -> asyncio.Task | None:
        """Route one client message; returns the task running a command."""
        def reply_error(request_id: Any, message: str) -> None:
            subscriber.send({"type": "response", "requestId": request_id, "error": message})

        try:
            msg = json.loads(raw)
        except ValueError:
            reply_error(None, "Failed to parse WS message")
            return None
        if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
            reply_error(None, "Malformed WS message")
            return None

        if msg["type"] == "command":
            command = msg.get("command")
            if not isinstance(command, dict) or not isinstance(command.get("type"), str):
                reply_error(msg.get("requestId"), "Invalid command payload")
                return None
            return asyncio.create_task(
                self._run_ws_command(session, subscriber, msg.get("requestId"), command)
            )

        if msg["type"] == "extension_ui_response":
            data = msg.get("data")
            payload = None
            if isinstance(data, dict):
                payload = data if data.get("type") == "extension_ui_response" else {
                    "type": "extension_ui_response", **data,
                }
            if payload is None or not isinstance(payload.get("id"), str):
                reply_error(None, "Invalid extension_ui_response payload")
                return None
            session.channel.send_fire_and_forget(payload)
            return None

        reply_error(msg.get("requestId"), f"Unknown WS message type: {msg['type']}")
        return None

    async def _run_ws_command(
        self,
        session: BridgeSession,
        subscriber: QueueSubscriber,
        request_id: Any,
        command: dict[str, Any],
    ) -> None:
        try:
            response = await session.channel.send_command(command)
        except RigError as exc:
            subscriber.send({"type": "response", "requestId": request_id, "error": str(exc) or "Command failed"})
            return
        subscriber.send({"type": "response", "requestId": request_id, "data": response})
