"""HTTP + SSE boundary around the session broker.

Thin adapter: conversation state lives in the registry, hub, ledger,
process manager and history reader. This module wires them together
and translates requests and errors to JSON.
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

from agentrelay.adapters.permission_ledger import PermissionLedger
from agentrelay.adapters.status_registry import SessionStatusRegistry
from agentrelay.adapters.stream_hub import StreamHub
from agentrelay.engine.config import BrokerConfig
from agentrelay.engine.errors import BrokerError, InvalidRequestError
from agentrelay.engine.process import Spawner
from agentrelay.engine.process_manager import ConversationConfig, ProcessManager, ProcessMessage
from agentrelay.shared.models.permission import PermissionRequestRecord, PermissionStatus
from agentrelay.shared.services.conversations import ConversationCatalog
from agentrelay.shared.services.history_reader import ClaudeHistoryReader
from agentrelay.shared.services.session_info import SessionInfoStore
from agentrelay.web.sse import SSEConnection

logger = logging.getLogger(__name__)

_DECISIONS = {"approve": PermissionStatus.APPROVED, "deny": PermissionStatus.DENIED}


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequestError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return body


def _require_str(body: dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(f"{key} is required")
    return value


def _optional_str_list(body: dict[str, Any], key: str) -> list[str]:
    value = body.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidRequestError(f"{key} must be a list of strings")
    return value


def _int_query(request: web.Request, key: str, default: int) -> int:
    raw = request.query.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidRequestError(f"{key} must be an integer") from None


class RelayServer:
    """Owns one instance of every broker component and serves them over HTTP."""

    def __init__(self, config: BrokerConfig, *, spawner: Spawner | None = None) -> None:
        self._config = config
        self._started_at = time.time()
        self.registry = SessionStatusRegistry()
        self.hub = StreamHub(max_clients=config.max_clients)
        self.ledger = PermissionLedger()
        self.session_info = SessionInfoStore(config.session_info_path)
        self.history = ClaudeHistoryReader(config.projects_dir)
        self.processes = ProcessManager(
            config,
            hub=self.hub,
            registry=self.registry,
            session_info=self.session_info,
            history=self.history,
            spawner=spawner,
        )
        self.catalog = ConversationCatalog(self.history, self.registry, self.session_info)

        self.processes.message.connect(self._on_process_message)

        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._error_middleware],
        )
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Broker wiring ──

    def _on_process_message(self, message: ProcessMessage) -> None:
        self.ledger.record_event(message.stream_handle, message.event)

    def _broadcast_permission_request(self, record: PermissionRequestRecord) -> None:
        # Requests read from agent output already reach the group as raw records.
        self.hub.broadcast(record.stream_handle, {
            "type": "permission_request",
            "data": record.to_dict(),
            "stream_handle": record.stream_handle,
        })

    async def _on_shutdown(self, app: web.Application) -> None:
        logger.info("Server shutting down active_processes=%d", len(self.processes.active_handles()))
        self.hub.disconnect_all()
        await self.processes.shutdown()

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-relay-request-id", str(uuid.uuid4())[:8])
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

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except BrokerError as exc:
            logger.warning(
                "Request failed req=%s code=%s: %s",
                request.get("req_id", "unknown"), exc.code, exc.message,
            )
            return web.json_response(exc.to_dict(), status=exc.status)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/api/system/status", self._handle_system_status)
        # Conversations
        r.add_post("/api/conversations/start", self._handle_start)
        r.add_get("/api/conversations", self._handle_list_conversations)
        r.add_get("/api/conversations/{id}", self._handle_get_conversation)
        r.add_post("/api/conversations/{id}/resume", self._handle_resume)
        r.add_post("/api/conversations/{handle}/stop", self._handle_stop)
        # Streaming
        r.add_get("/api/stream/{handle}", self._handle_stream)
        # Permissions
        r.add_get("/api/permissions", self._handle_list_permissions)
        r.add_post("/api/permissions/notify", self._handle_notify_permission)
        r.add_post("/api/permissions/{id}/decision", self._handle_permission_decision)

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
        })

    async def _handle_system_status(self, request: web.Request) -> web.Response:
        return web.json_response({
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "active_processes": self.processes.active_handles(),
            "registry": self.registry.stats(),
            "streams": self.hub.stats(),
            "permissions": {
                "total": self.ledger.size(),
                "pending": len(self.ledger.list(status=PermissionStatus.PENDING)),
            },
            "history_cache": self.history.cache.stats(),
        })

    async def _handle_start(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        conversation = ConversationConfig(
            working_directory=_require_str(body, "workingDirectory"),
            initial_prompt=_require_str(body, "initialPrompt"),
            model=body.get("model") or None,
            system_prompt=body.get("systemPrompt") or None,
            allowed_tools=_optional_str_list(body, "allowedTools"),
            disallowed_tools=_optional_str_list(body, "disallowedTools"),
            permission_mode=body.get("permissionMode") or None,
            executable_path=body.get("executablePath") or None,
        )
        result = await self.processes.start(conversation)
        payload = result.to_dict()
        payload["streamUrl"] = f"/api/stream/{result.stream_handle}"
        return web.json_response(payload)

    async def _handle_resume(self, request: web.Request) -> web.Response:
        conversation_id = request.match_info["id"]
        body = await _json_body(request)
        result = await self.processes.resume(
            conversation_id,
            _require_str(body, "message"),
            working_directory=body.get("workingDirectory") or None,
            permission_mode=body.get("permissionMode") or None,
            model=body.get("model") or None,
            executable_path=body.get("executablePath") or None,
        )
        payload = result.to_dict()
        payload["streamUrl"] = f"/api/stream/{result.stream_handle}"
        return web.json_response(payload)

    async def _handle_stop(self, request: web.Request) -> web.Response:
        stopped = await self.processes.stop(request.match_info["handle"])
        return web.json_response({"success": stopped})

    async def _handle_list_conversations(self, request: web.Request) -> web.Response:
        conversations, total = await self.catalog.list_conversations(
            project_path=request.query.get("projectPath") or None,
            sort_by=request.query.get("sortBy", "updated"),
            order=request.query.get("order", "desc"),
            limit=_int_query(request, "limit", 20),
            offset=_int_query(request, "offset", 0),
        )
        return web.json_response({
            "conversations": [c.to_dict() for c in conversations],
            "total": total,
        })

    async def _handle_get_conversation(self, request: web.Request) -> web.Response:
        details = await self.catalog.get_conversation_details(request.match_info["id"])
        return web.json_response(details.to_dict())

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        stream_handle = request.match_info["handle"]
        connection = SSEConnection(
            heartbeat_seconds=self._config.heartbeat_seconds,
            queue_size=self._config.client_queue_size,
        )
        if not self.hub.add_client(stream_handle, connection):
            return web.json_response(
                {"error": "Too many stream subscribers", "code": "TOO_MANY_CLIENTS"},
                status=503,
            )
        return await connection.pump(request)

    async def _handle_list_permissions(self, request: web.Request) -> web.Response:
        status = request.query.get("status") or None
        if status is not None and status not in {s.value for s in PermissionStatus}:
            raise InvalidRequestError(f"Unknown permission status '{status}'")
        records = self.ledger.list(
            stream_handle=request.query.get("streamHandle") or None,
            status=status,
        )
        return web.json_response({"permissions": [r.to_dict() for r in records]})

    async def _handle_notify_permission(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        tool_input = body.get("toolInput")
        if tool_input is not None and not isinstance(tool_input, dict):
            raise InvalidRequestError("toolInput must be an object")
        record = self.ledger.add(
            _require_str(body, "toolName"),
            tool_input,
            body.get("streamHandle") or None,
        )
        self._broadcast_permission_request(record)
        return web.json_response({"success": True, "id": record.id})

    async def _handle_permission_decision(self, request: web.Request) -> web.Response:
        request_id = request.match_info["id"]
        body = await _json_body(request)
        action = body.get("action")
        if action not in _DECISIONS:
            raise InvalidRequestError("action must be 'approve' or 'deny'")
        modified_input = body.get("modifiedInput")
        if modified_input is not None and not isinstance(modified_input, dict):
            raise InvalidRequestError("modifiedInput must be an object")
        updated = self.ledger.update(
            request_id,
            _DECISIONS[action],
            modified_input=modified_input,
            deny_reason=body.get("denyReason") or None,
        )
        if not updated:
            return web.json_response(
                {"success": False, "error": f"Permission request {request_id} not found"},
                status=404,
            )
        return web.json_response({"success": True})

    # ── Lifecycle ──

    async def start(self) -> None:
        """Serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()
        logger.info("agentrelay listening on %s:%d", self._config.host, self._config.port)
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()
