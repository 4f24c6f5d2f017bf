"""Tool permission request model."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class PermissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


UNKNOWN_STREAM_HANDLE = "unknown"


@dataclass
class PermissionRequestRecord:
    id: str
    tool_name: str
    tool_input: dict[str, Any]
    stream_handle: str
    timestamp: str
    status: PermissionStatus = PermissionStatus.PENDING
    modified_input: dict[str, Any] | None = None
    deny_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "streamHandle": self.stream_handle,
            "toolName": self.tool_name,
            "toolInput": self.tool_input,
            "timestamp": self.timestamp,
            "status": self.status.value,
        }
        if self.modified_input is not None:
            data["modifiedInput"] = self.modified_input
        if self.deny_reason is not None:
            data["denyReason"] = self.deny_reason
        return data
