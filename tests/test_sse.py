from __future__ import annotations

import asyncio
import json

import pytest
from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from agentrelay.adapters.stream_hub import StreamHub
from agentrelay.web.sse import SSEConnection


class TestSSEConnection(AioHTTPTestCase):
    """Each request to /stream pumps the connection queued in ``self.pending``."""

    async def get_application(self):
        self.pending: list[SSEConnection] = []
        self.pump_tasks: list[asyncio.Task] = []
        app = web.Application()
        app.router.add_get("/stream", self._handle_stream)
        return app

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        connection = self.pending.pop(0)
        connection.configure()
        task = asyncio.ensure_future(connection.pump(request))
        self.pump_tasks.append(task)
        try:
            return await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            return connection.response

    async def test_payloads_in_order_then_close(self):
        conn = SSEConnection(heartbeat_seconds=30)
        closed_callbacks: list[str] = []
        conn.add_close_callback(lambda: closed_callbacks.append("closed"))
        conn.send({"type": "connected"})
        conn.send({"type": "assistant", "n": 1})
        conn.close()
        self.pending.append(conn)

        resp = await self.client.get("/stream")
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        assert resp.headers["Cache-Control"] == "no-cache"
        body = await resp.text()

        assert body == (
            'data: {"type": "connected"}\n\n'
            'data: {"type": "assistant", "n": 1}\n\n'
        )
        assert closed_callbacks == ["closed"]

    async def test_idle_connection_writes_heartbeat_comment(self):
        conn = SSEConnection(heartbeat_seconds=0.05)
        self.pending.append(conn)

        resp = await self.client.get("/stream")
        line = await asyncio.wait_for(resp.content.readline(), timeout=2)
        assert line == b": heartbeat\n"

        conn.send({"type": "result"})
        lines = []
        while not lines or not lines[-1].startswith(b"data: "):
            lines.append(await asyncio.wait_for(resp.content.readline(), timeout=2))
        assert json.loads(lines[-1][len(b"data: "):]) == {"type": "result"}

        conn.close()
        await resp.text()

    async def test_send_on_full_queue_raises(self):
        conn = SSEConnection(queue_size=2)
        conn.send({"type": "a"})
        conn.send({"type": "b"})
        with pytest.raises(asyncio.QueueFull):
            conn.send({"type": "c"})
        conn.close()
        self.pending.append(conn)

        resp = await self.client.get("/stream")
        assert await resp.text() == ""

    async def test_close_on_full_queue_drops_backlog_and_ends_stream(self):
        conn = SSEConnection(queue_size=1)
        conn.send({"type": "backlog"})
        conn.close()
        assert conn.closed
        with pytest.raises(ConnectionResetError):
            conn.send({"type": "late"})
        self.pending.append(conn)

        resp = await self.client.get("/stream")
        assert await resp.text() == ""

    async def test_subscriber_pruned_by_hub_stream_ends(self):
        hub = StreamHub()
        conn = SSEConnection(queue_size=1)
        hub.add_client("s1", conn)
        hub.broadcast("s1", {"type": "assistant"})
        assert hub.client_count("s1") == 0
        self.pending.append(conn)

        resp = await self.client.get("/stream")
        assert await asyncio.wait_for(resp.text(), timeout=2) == ""

    async def test_cancelled_pump_propagates_cancellation(self):
        conn = SSEConnection(heartbeat_seconds=30)
        closed_callbacks: list[str] = []
        conn.add_close_callback(lambda: closed_callbacks.append("closed"))
        conn.send({"type": "connected"})
        self.pending.append(conn)

        resp = await self.client.get("/stream")
        await asyncio.wait_for(resp.content.readline(), timeout=2)

        task = self.pump_tasks[0]
        task.cancel()
        await asyncio.wait([task], timeout=2)

        assert task.cancelled()
        assert closed_callbacks == ["closed"]
        assert conn.closed
        resp.close()
