"""In-memory ledger of tool permission requests.

Requests are raised out of band by a running agent (through the
permission transport) and decided by a user. The ledger keeps every
request until a bulk ``clear()``; it does not enforce that a request is
decided only once.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from agentrelay.adapters.event_bus import Signal
from agentrelay.adapters.events import StreamEvent, ToolPermissionRequest
from agentrelay.shared.models.permission import (
    PermissionRequestRecord,
    PermissionStatus,
    UNKNOWN_STREAM_HANDLE,
)

logger = logging.getLogger(__name__)


class PermissionLedger:
    def __init__(self) -> None:
        self._requests: dict[str, PermissionRequestRecord] = {}
        self.permission_request: Signal[PermissionRequestRecord] = Signal("permission-request")
        self.permission_updated: Signal[PermissionRequestRecord] = Signal("permission-updated")

    def add(
        self,
        tool_name: str,
        tool_input: dict[str, Any] | None = None,
        stream_handle: str | None = None,
    ) -> PermissionRequestRecord:
        """Record a new pending request and announce it."""
        record = PermissionRequestRecord(
            id=str(uuid.uuid4()),
            tool_name=tool_name,
            tool_input=dict(tool_input or {}),
            stream_handle=stream_handle or UNKNOWN_STREAM_HANDLE,
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        self._requests[record.id] = record
        logger.info(
            "Permission requested id=%s tool=%s stream=%s",
            record.id, tool_name, record.stream_handle,
        )
        self.permission_request.emit(record)
        return record

    def record_event(self, stream_handle: str, event: StreamEvent) -> PermissionRequestRecord | None:
        """Add a request for *event* if it is a tool permission request."""
        if not isinstance(event, ToolPermissionRequest):
            return None
        return self.add(event.tool_name, event.tool_input, stream_handle)

    def update(
        self,
        request_id: str,
        status: PermissionStatus | str,
        *,
        modified_input: dict[str, Any] | None = None,
        deny_reason: str | None = None,
    ) -> bool:
        """Apply a decision to *request_id*. Returns False if unknown."""
        record = self._requests.get(request_id)
        if record is None:
            logger.warning("Permission update for unknown id=%s", request_id)
            return False
        record.status = PermissionStatus(status)
        if modified_input is not None:
            record.modified_input = modified_input
        if deny_reason is not None:
            record.deny_reason = deny_reason
        logger.info(
            "Permission %s id=%s tool=%s stream=%s",
            record.status.value, request_id, record.tool_name, record.stream_handle,
        )
        self.permission_updated.emit(record)
        return True

    def get(self, request_id: str) -> PermissionRequestRecord | None:
        return self._requests.get(request_id)

    def list(
        self,
        *,
        stream_handle: str | None = None,
        status: PermissionStatus | str | None = None,
    ) -> list[PermissionRequestRecord]:
        """Requests in creation order, optionally filtered (both filters must match)."""
        wanted = PermissionStatus(status) if status is not None else None
        return [
            record for record in self._requests.values()
            if (stream_handle is None or record.stream_handle == stream_handle)
            and (wanted is None or record.status is wanted)
        ]

    def clear(self) -> None:
        self._requests.clear()

    def size(self) -> int:
        return len(self._requests)

    def __len__(self) -> int:
        return len(self._requests)
