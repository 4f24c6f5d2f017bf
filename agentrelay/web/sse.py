"""aiohttp transport for stream hub subscribers."""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

logger = logging.getLogger(__name__)

_CLOSE = None


class SSEConnection:
    """One server-sent-events subscriber.

    Events are queued by ``send`` and written by ``pump``, which runs
    inside the request handler until the connection is closed or the
    peer goes away.
    """

    def __init__(self, *, heartbeat_seconds: float = 30.0, queue_size: int = 5000) -> None:
        self.response = web.StreamResponse(status=200)
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=queue_size)
        self._heartbeat_seconds = heartbeat_seconds
        self._close_callbacks: list[Callable[[], None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def configure(self) -> None:
        self.response.headers.update({
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "Access-Control-Allow-Origin": "*",
        })

    def send(self, payload: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionResetError("SSE connection closed")
        self._queue.put_nowait(payload)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            # Drop the backlog so the pump sees the sentinel.
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(_CLOSE)

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    async def pump(self, request: web.Request) -> web.StreamResponse:
        await self.response.prepare(request)
        try:
            while True:
                try:
                    payload = await asyncio.wait_for(self._queue.get(), timeout=self._heartbeat_seconds)
                except asyncio.TimeoutError:
                    await self.response.write(b": heartbeat\n\n")
                    continue
                if payload is _CLOSE:
                    break
                await self.response.write(f"data: {json.dumps(payload)}\n\n".encode())
        except ConnectionResetError:
            logger.debug("SSE peer went away req=%s", request.get("req_id", "unknown"))
        except asyncio.CancelledError:
            logger.debug("SSE pump cancelled req=%s", request.get("req_id", "unknown"))
            raise
        finally:
            self._closed = True
            for callback in self._close_callbacks:
                try:
                    callback()
                except Exception:
                    logger.exception("SSE close callback failed")
        return self.response
