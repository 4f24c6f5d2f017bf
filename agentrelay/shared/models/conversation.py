"""Conversation history models.

Durable log records are plain dicts as the agent writes them; these
dataclasses are what the broker derives from them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agentrelay.adapters.events import blocks_text, parse_content_blocks


@dataclass(frozen=True)
class ConversationMessage:
    """One user/assistant/system record from a durable log."""

    uuid: str
    type: str
    message: dict[str, Any]
    timestamp: str
    conversation_id: str
    parent_uuid: str | None = None
    is_sidechain: bool = False
    user_type: str | None = None
    cwd: str | None = None
    version: str | None = None
    duration_ms: int | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> ConversationMessage:
        message = record.get("message")
        if isinstance(message, str):
            message = {"role": record.get("type", "user"), "content": message}
        duration = record.get("durationMs")
        return cls(
            uuid=str(record.get("uuid") or ""),
            type=str(record.get("type") or ""),
            message=message if isinstance(message, dict) else {},
            timestamp=str(record.get("timestamp") or ""),
            conversation_id=str(record.get("sessionId") or ""),
            parent_uuid=record.get("parentUuid") or None,
            is_sidechain=bool(record.get("isSidechain", False)),
            user_type=record.get("userType"),
            cwd=record.get("cwd"),
            version=record.get("version"),
            duration_ms=duration if isinstance(duration, (int, float)) else None,
        )

    @property
    def text(self) -> str:
        return blocks_text(parse_content_blocks(self.message.get("content")))

    @property
    def model(self) -> str | None:
        model = self.message.get("model")
        return model if isinstance(model, str) and model else None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "uuid": self.uuid,
            "type": self.type,
            "message": self.message,
            "timestamp": self.timestamp,
            "sessionId": self.conversation_id,
        }
        optional = {
            "parentUuid": self.parent_uuid,
            "isSidechain": self.is_sidechain or None,
            "userType": self.user_type,
            "cwd": self.cwd,
            "version": self.version,
            "durationMs": self.duration_ms,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


@dataclass(frozen=True)
class ConversationChain:
    """A conversation rebuilt from its log records. Derived, never stored."""

    conversation_id: str
    messages: tuple[ConversationMessage, ...]
    project_path: str
    summary: str
    created_at: str
    updated_at: str
    total_duration_ms: int
    model: str


@dataclass
class ConversationSummary:
    """List entry for one conversation, durable or still in flight."""

    conversation_id: str
    project_path: str
    summary: str
    created_at: str
    updated_at: str
    message_count: int
    total_duration_ms: int
    model: str
    status: str = "completed"
    stream_handle: str | None = None
    session_info: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_chain(cls, chain: ConversationChain) -> ConversationSummary:
        return cls(
            conversation_id=chain.conversation_id,
            project_path=chain.project_path,
            summary=chain.summary,
            created_at=chain.created_at,
            updated_at=chain.updated_at,
            message_count=len(chain.messages),
            total_duration_ms=chain.total_duration_ms,
            model=chain.model,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.conversation_id,
            "projectPath": self.project_path,
            "summary": self.summary,
            "sessionInfo": self.session_info,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messageCount": self.message_count,
            "totalDuration": self.total_duration_ms,
            "model": self.model,
            "status": self.status,
        }
        if self.stream_handle is not None:
            data["streamHandle"] = self.stream_handle
        return data


@dataclass
class ConversationDetails:
    """Full message list for one conversation."""

    messages: list[ConversationMessage]
    summary: str
    project_path: str
    total_duration_ms: int
    model: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "summary": self.summary,
            "projectPath": self.project_path,
            "metadata": {
                "totalDuration": self.total_duration_ms,
                "model": self.model,
            },
        }


@dataclass(frozen=True)
class ConversationContext:
    """What the broker knows about an active conversation before its
    durable log appears on disk."""

    initial_prompt: str
    working_directory: str
    model: str
    timestamp: str
    inherited_messages: tuple[ConversationMessage, ...] = ()
