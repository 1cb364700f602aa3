"""HTTP + SSE server exposing the toolbar agent.

The toolbar talks to the agent through a small REST API and follows the
shared session state over Server-Sent Events. Every state change is
pushed as a full ``state`` snapshot; turn progress (agent initialized,
tool activity, results) is pushed as separate events.

When an app port is configured the server also fronts the user's dev
server: requests that are not for the API or the toolbar are forwarded
there (see proxy.py).

Usage:
    toolbridge [--port PORT] [--app-port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import web

from toolbridge.engine.agent import ToolbarAgent
from toolbridge.engine.config import AgentConfig
from toolbridge.engine.errors import (
    AgentSpawnError,
    ChatNotFoundError,
    InvalidMessageError,
    NoActiveChatError,
    TurnInProgressError,
)
from toolbridge.shared.models.message import ChatMessage
from toolbridge.shared.models.session import SessionState

from .proxy import TOOLBAR_PREFIX, DevServerProxy, should_proxy

logger = logging.getLogger(__name__)

API_PREFIX = "/__toolbridge__"


class AgentServer:
    """HTTP + SSE adapter around one ToolbarAgent.

    Thin adapter: all conversation state lives in the agent's
    SessionStore. This class only handles HTTP routing, SSE fan-out,
    and dev-server forwarding.
    """

    def __init__(
        self,
        agent: ToolbarAgent,
        config: AgentConfig | None = None,
        proxy: DevServerProxy | None = None,
    ) -> None:
        self._agent = agent
        self._config = config or agent.config
        self._host = self._config.host
        self._port = self._config.port
        self._started_at = time.time()
        self._sse_queues: list[asyncio.Queue[dict[str, Any] | None]] = []
        self._proxy = proxy
        if self._proxy is None and self._config.app_port:
            self._proxy = DevServerProxy(self._config.app_port)
        self._toolbar_dir = Path(self._config.toolbar_dir) if self._config.toolbar_dir else None
        self._runner: web.AppRunner | None = None

        self._unsubscribe = agent.store.subscribe(self._on_state_change)
        agent.event_callback = self._on_agent_event

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_shutdown.append(self._on_shutdown)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        logger.info(
            "AgentServer init host=%s port=%s app_port=%s toolbar_dir=%s pid=%s",
            self._host, self._port, self._config.app_port,
            self._toolbar_dir or "<none>", os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-toolbridge-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get(f"{API_PREFIX}/health", self._handle_health)
        r.add_get(f"{API_PREFIX}/state", self._handle_state)
        r.add_get(f"{API_PREFIX}/events", self._handle_sse)
        # Turns
        r.add_post(f"{API_PREFIX}/messages", self._handle_send_message)
        r.add_post(f"{API_PREFIX}/abort", self._handle_abort)
        # Chats
        r.add_post(f"{API_PREFIX}/chats", self._handle_create_chat)
        r.add_post(f"{API_PREFIX}/chats/{{id}}/activate", self._handle_switch_chat)
        r.add_delete(f"{API_PREFIX}/chats/{{id}}", self._handle_delete_chat)
        # Toolbar assets, then everything else
        if self._toolbar_dir is not None and self._toolbar_dir.is_dir():
            r.add_static(TOOLBAR_PREFIX, self._toolbar_dir)
        r.add_route("*", "/{tail:.*}", self._handle_fallback)

    async def start(self) -> None:
        """Start the server and run until cancelled."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, self._runner)
        if actual_port is None:
            raise RuntimeError("Server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("toolbridge listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    async def _on_shutdown(self, app: web.Application) -> None:
        # None tells each open event stream to end.
        for queue in self._sse_queues:
            if not queue.full():
                queue.put_nowait(None)

    async def _on_cleanup(self, app: web.Application) -> None:
        self._unsubscribe()
        if self._proxy is not None:
            await self._proxy.close()

    # ── SSE fan-out ──

    def _broadcast_sse(self, event_type: str, data: dict[str, Any]) -> None:
        msg = {"event": event_type, "data": data}
        for queue in self._sse_queues:
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping event")

    def _on_state_change(self, state: SessionState) -> None:
        if not self._sse_queues:
            return
        self._broadcast_sse("state", state.to_dict())

    async def _on_agent_event(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        event_type = payload.pop("event", "agent_event")
        self._broadcast_sse(event_type, payload)

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "cwd": self._config.cwd,
            "phase": self._agent.phase.value,
        })

    async def _handle_state(self, request: web.Request) -> web.Response:
        return web.json_response(self._agent.state.to_dict())

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=5000)
        self._sse_queues.append(queue)
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))

        try:
            await response.write(
                f"event: connected\ndata: {json.dumps(self._agent.state.to_dict())}\n\n".encode()
            )
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=30.0)
                    if msg is None:
                        break
                    data = json.dumps(msg["data"])
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._sse_queues.remove(queue)
            logger.info("SSE client disconnected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))
        return response

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"error": "Body must be JSON"}, status=400)
        raw = body.get("message", body) if isinstance(body, dict) else None
        if not isinstance(raw, dict):
            return web.json_response({"error": "No message provided"}, status=400)
        try:
            message = ChatMessage.from_dict(raw)
        except ValueError as exc:
            return web.json_response({"error": f"Invalid message: {exc}"}, status=400)

        try:
            turn = await self._agent.begin_turn(message)
        except InvalidMessageError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        except TurnInProgressError as exc:
            return web.json_response({"error": str(exc)}, status=409)
        except NoActiveChatError as exc:
            return web.json_response({"error": str(exc)}, status=409)
        except AgentSpawnError as exc:
            return web.json_response({"error": str(exc)}, status=502)

        logger.info(
            "Turn started chat=%s message=%s parts=%d",
            turn.chat_id, message.id, len(message.parts),
        )
        return web.json_response(
            {
                "status": "started",
                "chat_id": turn.chat_id,
                "message_id": message.id,
                "assistant_message_id": turn.assistant_message_id,
            },
            status=202,
        )

    async def _handle_abort(self, request: web.Request) -> web.Response:
        self._agent.abort()
        return web.json_response({"status": "aborted", "is_working": self._agent.state.is_working})

    async def _handle_create_chat(self, request: web.Request) -> web.Response:
        chat_id = self._agent.create_chat()
        return web.json_response({"chat_id": chat_id}, status=201)

    async def _handle_switch_chat(self, request: web.Request) -> web.Response:
        chat_id = request.match_info["id"]
        try:
            self._agent.switch_chat(chat_id)
        except ChatNotFoundError as exc:
            return web.json_response({"error": str(exc)}, status=404)
        return web.json_response({"active_chat_id": chat_id})

    async def _handle_delete_chat(self, request: web.Request) -> web.Response:
        chat_id = request.match_info["id"]
        try:
            self._agent.delete_chat(chat_id)
        except ChatNotFoundError as exc:
            return web.json_response({"error": str(exc)}, status=404)
        return web.json_response({
            "status": "deleted",
            "active_chat_id": self._agent.state.active_chat_id,
        })

    async def _handle_fallback(self, request: web.Request) -> web.StreamResponse:
        if self._proxy is not None and should_proxy(request.path, request.headers):
            return await self._proxy.forward(request)
        index = self._toolbar_dir / "index.html" if self._toolbar_dir else None
        if request.method == "GET" and index is not None and index.is_file():
            return web.FileResponse(index)
        return web.json_response({"error": f"Not found: {request.path}"}, status=404)
