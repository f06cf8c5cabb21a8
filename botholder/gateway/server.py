"""HTTP + SSE gateway for the session manager.

Exposes session creation, start/stop/delete commands, log access and chat
over a small REST API, and pushes session snapshots and log entries to
dashboards through Server-Sent Events.

Usage:
    botholder [--port PORT] [--config PATH]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from typing import Any

from aiohttp import web

from botholder.engine.errors import (
    AuthError,
    BotholderError,
    ClientBackendError,
    ConfigError,
    NotConnectedError,
    SessionNotFoundError,
)
from botholder.engine.manager import ACTIONS, SessionManager

logger = logging.getLogger(__name__)

SSE_QUEUE_SIZE = 5000
SSE_KEEPALIVE_SECONDS = 30.0


class BotholderServer:
    """Thin adapter: all session state lives in SessionManager.

    This class only handles HTTP routing, SSE fan-out and the mapping of
    engine errors to HTTP responses.
    """

    def __init__(
        self,
        manager: SessionManager,
        host: str = "0.0.0.0",
        port: int = 80,
    ) -> None:
        self._manager = manager
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._sse_queues: list[asyncio.Queue[dict[str, Any]]] = []

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()
        self._manager.subscribe(self._broadcast_sse)

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_get("/sessions", self._handle_list_sessions)
        r.add_post("/sessions", self._handle_create_session)
        r.add_post("/sessions/{id}/actions", self._handle_action)
        r.add_post("/sessions/{id}/logs", self._handle_fetch_logs)
        r.add_delete("/sessions/{id}/logs", self._handle_clear_logs)
        r.add_post("/sessions/{id}/message", self._handle_send_message)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Serve until cancelled, then stop every session."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        logger.info("botholder gateway listening on %s:%d", self._host, self._port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            self._manager.shutdown()
            await runner.cleanup()

    # ── SSE fan-out ──

    def _broadcast_sse(self, event_type: str, data: dict[str, Any]) -> None:
        msg = {"event": event_type, "data": data}
        for queue in self._sse_queues:
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping %s event", event_type)

    # ── Helpers ──

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Request body is not valid JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise ConfigError("Request body must be a JSON object")
        return body

    @staticmethod
    def _credential(body: dict[str, Any]) -> str | None:
        return body.get("credential", body.get("password"))

    @staticmethod
    def _failure(exc: BotholderError) -> web.Response:
        if isinstance(exc, SessionNotFoundError):
            status = 404
        elif isinstance(exc, AuthError):
            status = 403
        elif isinstance(exc, NotConnectedError):
            status = 409
        elif isinstance(exc, ConfigError):
            status = 400
        elif isinstance(exc, ClientBackendError):
            status = 502
        else:
            status = 500
        return web.json_response({"success": False, "message": str(exc)}, status=status)

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "sessions": len(self._manager.registry),
        })

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

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=SSE_QUEUE_SIZE)
        self._sse_queues.append(queue)
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))

        try:
            initial = json.dumps({"sessions": self._manager.snapshot()})
            await response.write(f"event: sessions\ndata: {initial}\n\n".encode())
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
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

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        return web.json_response({"sessions": self._manager.snapshot()})

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        try:
            body = await self._json_body(request)
            session_id = self._manager.create_session(body)
        except ConfigError as exc:
            return self._failure(exc)
        record = self._manager.get(session_id)
        return web.json_response(
            {"success": True, "session": record.to_snapshot()},
            status=201,
        )

    async def _handle_action(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        try:
            body = await self._json_body(request)
        except ConfigError as exc:
            return self._failure(exc)
        action = body.get("action")
        if action not in ACTIONS:
            return web.json_response(
                {"success": False, "message": f"Unknown action: {action}"},
                status=400,
            )
        if session_id not in self._manager.registry:
            return self._failure(SessionNotFoundError(session_id))
        result = self._manager.issue_command(session_id, action, self._credential(body))
        return web.json_response(result.to_dict(), status=200 if result.success else 403)

    async def _handle_fetch_logs(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        try:
            body = await self._json_body(request)
            entries = self._manager.fetch_logs(session_id, self._credential(body))
        except BotholderError as exc:
            return self._failure(exc)
        record = self._manager.get(session_id)
        return web.json_response({
            "success": True,
            "displayName": record.config.display_name,
            "logs": [entry.to_dict() for entry in entries],
        })

    async def _handle_clear_logs(self, request: web.Request) -> web.Response:
        try:
            self._manager.clear_logs(request.match_info["id"])
        except BotholderError as exc:
            return self._failure(exc)
        return web.json_response({"success": True})

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        try:
            body = await self._json_body(request)
            text = body.get("text", body.get("message"))
            if not isinstance(text, str) or not text:
                raise ConfigError("text is required")
            self._manager.send_message(session_id, text)
        except BotholderError as exc:
            return self._failure(exc)
        return web.json_response({"success": True})
