"""REST front door for the operator.

One aiohttp application over a ``ConversationOrchestrator``: blocking
and streaming (SSE) chat turns, conversation listing, reset and model
selection. When a bearer token is configured every route requires
``Authorization: Bearer <token>``.
"""
from __future__ import annotations

import asyncio
import collections
import hmac
import json
import logging
import time
import uuid
from typing import Any

from aiohttp import web

from rig.engine.errors import (
    DispatchValidationError,
    ModelSelectionError,
    RigError,
    TurnTimeoutError,
)
from rig.engine.models import PromptImage

from .conversations import ConversationOrchestrator, TurnCallbacks
from .watcher import SessionDone

logger = logging.getLogger(__name__)

MAX_RECENT_NOTIFICATIONS = 100


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _bearer_matches(header: str | None, token: str) -> bool:
    if not header:
        return False
    value = header.strip()
    if value[:7].lower() == "bearer ":
        value = value[7:].strip()
    return hmac.compare_digest(value.encode(), token.encode())


def _parse_images(raw: Any) -> list[PromptImage]:
    images = []
    for item in raw if isinstance(raw, list) else []:
        if isinstance(item, dict) and isinstance(item.get("url"), str):
            images.append(PromptImage(url=item["url"], media_type=item.get("mediaType")))
    return images


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


def _chat_fields(body: dict[str, Any]) -> tuple[str, str]:
    conversation_id = body.get("conversationId")
    message = body.get("message")
    if not isinstance(conversation_id, str) or not conversation_id or not isinstance(message, str) or not message:
        raise DispatchValidationError("conversationId and message are required")
    return conversation_id, message


class OperatorApi:
    """aiohttp application exposing one orchestrator."""

    def __init__(
        self,
        orchestrator: ConversationOrchestrator,
        *,
        host: str = "127.0.0.1",
        port: int = 3200,
        bearer_token: str | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self._host = host
        self._port = port
        self._bearer_token = bearer_token
        self._runner: web.AppRunner | None = None
        self.notifications: collections.deque[SessionDone] = collections.deque(
            maxlen=MAX_RECENT_NOTIFICATIONS,
        )
        self.app = web.Application(middlewares=[
            self._request_logging_middleware,
            self._auth_middleware,
            self._error_middleware,
        ])
        r = self.app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/chat", self._handle_chat)
        r.add_post("/chat/stream", self._handle_chat_stream)
        r.add_get("/conversations", self._handle_list_conversations)
        r.add_delete("/conversations/{id}", self._handle_end_conversation)
        r.add_post("/conversations/{id}/clear", self._handle_clear_conversation)
        r.add_get("/conversations/{id}/model", self._handle_get_model)
        r.add_post("/conversations/{id}/model", self._handle_set_model)
        r.add_get("/notifications", self._handle_notifications)

    def record_session_done(self, done: SessionDone) -> None:
        """Keep a completion notice for ``GET /notifications``."""
        self.notifications.append(done)

    # ── Lifecycle ──

    async def start(self) -> int:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        addresses = self._runner.addresses
        if addresses and isinstance(addresses[0], tuple):
            self._port = int(addresses[0][1])
        logger.info(
            "Operator REST listening on %s:%d auth=%s",
            self._host, self._port, "on" if self._bearer_token else "off",
        )
        return self._port

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-rig-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        response = await handler(request)
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path, req_id,
            getattr(response, "status", "?"), (time.monotonic() - start) * 1000,
        )
        return response

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if self._bearer_token and not _bearer_matches(
            request.headers.get("Authorization"), self._bearer_token,
        ):
            logger.warning("Unauthorized request req=%s path=%s", request.get("req_id"), request.path)
            return _error("unauthorized", 401)
        return await handler(request)

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except (DispatchValidationError, ModelSelectionError) as exc:
            return _error(str(exc), 400)
        except TurnTimeoutError as exc:
            return _error(str(exc), 504)
        except RigError as exc:
            logger.warning("Request failed req=%s error=%s", request.get("req_id"), exc)
            return _error(str(exc), 500)

    # ── Routes ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "activeConversations": len(self.orchestrator.list_active()),
        })

    async def _handle_chat(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        conversation_id, message = _chat_fields(body)
        result = await self.orchestrator.send_turn(
            conversation_id, message, images=_parse_images(body.get("images")),
        )
        return web.json_response(result.to_json())

    async def _handle_chat_stream(self, request: web.Request) -> web.StreamResponse:
        body = await _read_body(request)
        conversation_id, message = _chat_fields(body)

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)

        # Callbacks fire synchronously from the bridge reader; a queue
        # hands them to this handler, the only writer.
        queue: asyncio.Queue[tuple[str, dict[str, Any]] | None] = asyncio.Queue()
        callbacks = TurnCallbacks(
            on_text=lambda text: queue.put_nowait(("text", {"text": text})),
            on_tool_call=lambda name: queue.put_nowait(("tool", {"toolName": name})),
            on_dispatch_model_required=lambda needs: queue.put_nowait(("dispatch", needs.to_json())),
            on_dispatch_project_required=lambda needs: queue.put_nowait(("dispatch", needs.to_json())),
        )

        async def run_turn() -> None:
            try:
                result = await self.orchestrator.send_turn(
                    conversation_id, message,
                    images=_parse_images(body.get("images")),
                    callbacks=callbacks,
                )
            except RigError as exc:
                queue.put_nowait(("error", {"message": str(exc)}))
            else:
                queue.put_nowait(("done", {"text": result.text, "toolCalls": result.tool_calls}))
            finally:
                queue.put_nowait(None)

        turn = asyncio.create_task(run_turn())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                event, data = item
                await response.write(f"event: {event}\ndata: {json.dumps(data)}\n\n".encode())
            await response.write_eof()
        except ConnectionResetError:
            # The turn runs to completion; only this stream stops.
            logger.info("SSE client went away conversation=%s", conversation_id)
        finally:
            if not turn.done():
                turn.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)
        return response

    async def _handle_list_conversations(self, request: web.Request) -> web.Response:
        return web.json_response({
            "active": self.orchestrator.list_active(),
            "known": self.orchestrator.list_known(),
        })

    async def _handle_end_conversation(self, request: web.Request) -> web.Response:
        ended = self.orchestrator.end(request.match_info["id"])
        return web.json_response({"ended": ended})

    async def _handle_clear_conversation(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        preserve_model = body.get("preserveModel", True) is not False
        self.orchestrator.clear(request.match_info["id"], preserve_model=preserve_model)
        return web.json_response({"cleared": True, "preserveModel": preserve_model})

    async def _handle_get_model(self, request: web.Request) -> web.Response:
        status = await self.orchestrator.get_model_status(request.match_info["id"])
        return web.json_response(status.to_json())

    async def _handle_set_model(self, request: web.Request) -> web.Response:
        conversation_id = request.match_info["id"]
        body = await _read_body(request)
        provider = body.get("provider")
        model_id = body.get("modelId")
        thinking_level = body.get("thinkingLevel") or None
        if provider and model_id:
            await self.orchestrator.set_model(conversation_id, str(provider), str(model_id), thinking_level)
        elif thinking_level:
            await self.orchestrator.set_thinking_level(conversation_id, str(thinking_level))
        else:
            return _error("provider and modelId, or thinkingLevel, are required", 400)
        status = await self.orchestrator.get_model_status(conversation_id)
        return web.json_response(status.to_json())

    async def _handle_notifications(self, request: web.Request) -> web.Response:
        return web.json_response({
            "notifications": [
                {"conversationId": n.conversation_id, "bridgeId": n.bridge_id, "title": n.title}
                for n in reversed(self.notifications)
            ],
        })
