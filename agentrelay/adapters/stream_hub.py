"""Fan-out of stream events to live subscribers.

Each stream handle owns a group of client connections. Every event
broadcast to the handle is handed to each connection of the group in
call order. A connection that fails to accept an event is dropped from
its group and closed without affecting the others.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from agentrelay.adapters.event_bus import Signal
from agentrelay.adapters.events import Closed, Connected, StreamEvent, event_to_dict

logger = logging.getLogger(__name__)


class ClientConnection(Protocol):
    """Transport side of one subscriber.

    ``send`` must not block: it queues the payload or raises if the
    connection can no longer take it.
    """

    def configure(self) -> None: ...

    def send(self, payload: dict[str, Any]) -> None: ...

    def close(self) -> None: ...

    def add_close_callback(self, callback: Callable[[], None]) -> None: ...


@dataclass(frozen=True)
class ClientDisconnected:
    stream_handle: str
    remaining: int


class StreamHub:
    def __init__(self, max_clients: int = 0) -> None:
        self._groups: dict[str, list[ClientConnection]] = {}
        self._max_clients = max_clients
        self.client_disconnected: Signal[ClientDisconnected] = Signal("client-disconnected")

    def add_client(self, stream_handle: str, connection: ClientConnection) -> bool:
        """Join *connection* to the group of *stream_handle*.

        Returns False (and leaves the connection untouched) when the
        subscriber limit is reached.
        """
        if self._max_clients and self.total_client_count() >= self._max_clients:
            logger.warning(
                "Subscriber limit reached stream=%s limit=%d",
                stream_handle, self._max_clients,
            )
            return False

        group = self._groups.setdefault(stream_handle, [])
        group.append(connection)
        connection.configure()
        connection.add_close_callback(lambda: self.remove_client(stream_handle, connection))
        logger.info("SSE client connected stream=%s clients=%d", stream_handle, len(group))

        try:
            connection.send(event_to_dict(Connected(stream_handle=stream_handle)))
        except Exception:
            logger.warning("SSE client failed on connect stream=%s", stream_handle, exc_info=True)
            self.remove_client(stream_handle, connection)
            return False
        return True

    def remove_client(self, stream_handle: str, connection: ClientConnection) -> None:
        group = self._groups.get(stream_handle)
        if group is None or connection not in group:
            return
        group.remove(connection)
        remaining = len(group)
        if not group:
            del self._groups[stream_handle]
        logger.info("SSE client disconnected stream=%s clients=%d", stream_handle, remaining)
        self.client_disconnected.emit(ClientDisconnected(stream_handle, remaining))

    def broadcast(self, stream_handle: str, event: StreamEvent | dict[str, Any]) -> int:
        """Deliver *event* to every client of the group.

        Returns the number of clients that accepted it. Unknown handles
        are a no-op.
        """
        group = self._groups.get(stream_handle)
        if not group:
            return 0
        payload = event_to_dict(event) if isinstance(event, StreamEvent) else event
        delivered = 0
        dead: list[ClientConnection] = []
        for connection in list(group):
            try:
                connection.send(payload)
                delivered += 1
            except Exception:
                logger.debug("SSE delivery failed stream=%s", stream_handle, exc_info=True)
                dead.append(connection)
        for connection in dead:
            self.remove_client(stream_handle, connection)
            try:
                connection.close()
            except Exception:
                logger.debug("Error closing SSE client stream=%s", stream_handle, exc_info=True)
        if dead:
            logger.warning(
                "Pruned %d dead SSE client(s) stream=%s", len(dead), stream_handle,
            )
        return delivered

    def close_session(self, stream_handle: str) -> None:
        """Send the terminal ``closed`` event, then end every connection."""
        if stream_handle not in self._groups:
            return
        self.broadcast(stream_handle, Closed(stream_handle=stream_handle))
        group = self._groups.pop(stream_handle, [])
        for connection in group:
            try:
                connection.close()
            except Exception:
                logger.debug("Error closing SSE client stream=%s", stream_handle, exc_info=True)
        logger.info("SSE group closed stream=%s clients=%d", stream_handle, len(group))

    def disconnect_all(self) -> None:
        for stream_handle in list(self._groups):
            self.close_session(stream_handle)

    # ── Observability ──

    def active_handles(self) -> list[str]:
        return list(self._groups)

    def client_count(self, stream_handle: str) -> int:
        return len(self._groups.get(stream_handle, ()))

    def total_client_count(self) -> int:
        return sum(len(group) for group in self._groups.values())

    def stats(self) -> dict[str, Any]:
        return {
            "active_streams": len(self._groups),
            "total_clients": self.total_client_count(),
            "max_clients": self._max_clients,
            "streams": {handle: len(group) for handle, group in self._groups.items()},
        }
