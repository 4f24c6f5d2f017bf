"""Stream event types decoded from agent output.

Every JSON record the agent writes to stdout (or to its durable log) is
parsed into one of the frozen dataclasses below. Content blocks inside
assistant/user turns are parsed into a closed set of block types with
an ``UnknownBlock`` fallback, so an unrecognised shape never breaks
decoding.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ── Content blocks ──


@dataclass(frozen=True)
class TextBlock:
    text: str = ""


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str = ""


@dataclass(frozen=True)
class ToolUseBlock:
    id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str = ""
    content: Any = None
    is_error: bool = False


@dataclass(frozen=True)
class UnknownBlock:
    block_type: str = ""
    raw: Any = None


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock, UnknownBlock]


def parse_content_block(block: Any) -> ContentBlock:
    if isinstance(block, str):
        return TextBlock(text=block)
    if not isinstance(block, dict):
        return UnknownBlock(block_type=type(block).__name__, raw=block)
    block_type = str(block.get("type") or "")
    if block_type == "text":
        return TextBlock(text=str(block.get("text") or ""))
    if block_type == "thinking":
        return ThinkingBlock(thinking=str(block.get("thinking") or ""))
    if block_type == "tool_use":
        tool_input = block.get("input")
        return ToolUseBlock(
            id=str(block.get("id") or ""),
            name=str(block.get("name") or ""),
            input=tool_input if isinstance(tool_input, dict) else {},
        )
    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(block.get("tool_use_id") or ""),
            content=block.get("content"),
            is_error=bool(block.get("is_error", False)),
        )
    return UnknownBlock(block_type=block_type, raw=block)


def parse_content_blocks(content: Any) -> tuple[ContentBlock, ...]:
    """Parse a message ``content`` field (string or block list)."""
    if content is None:
        return ()
    if isinstance(content, str):
        return (TextBlock(text=content),) if content else ()
    if isinstance(content, list):
        return tuple(parse_content_block(block) for block in content)
    return (parse_content_block(content),)


def blocks_text(blocks: tuple[ContentBlock, ...]) -> str:
    """Join the visible text of *blocks*."""
    return "\n\n".join(b.text for b in blocks if isinstance(b, TextBlock) and b.text)


# ── Stream events ──


@dataclass(frozen=True)
class StreamEvent:
    """Base event decoded from one agent output line."""
    event_type: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class Connected(StreamEvent):
    event_type: str = "connected"
    stream_handle: str = ""
    timestamp: str = field(default_factory=_utcnow_iso)


@dataclass(frozen=True)
class Handshake(StreamEvent):
    event_type: str = "handshake"
    conversation_id: str = ""
    model: str = ""
    tools: tuple[str, ...] = ()
    cwd: str = ""
    permission_mode: str = "default"
    mcp_servers: tuple[dict[str, Any], ...] = ()
    api_key_source: str = ""


@dataclass(frozen=True)
class AssistantTurn(StreamEvent):
    event_type: str = "assistant"
    conversation_id: str = ""
    content: tuple[ContentBlock, ...] = ()
    model: str = ""
    parent_tool_use_id: str | None = None


@dataclass(frozen=True)
class UserTurn(StreamEvent):
    event_type: str = "user"
    conversation_id: str = ""
    content: tuple[ContentBlock, ...] = ()
    parent_tool_use_id: str | None = None


@dataclass(frozen=True)
class ToolPermissionRequest(StreamEvent):
    event_type: str = "permission_request"
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None


@dataclass(frozen=True)
class Result(StreamEvent):
    event_type: str = "result"
    conversation_id: str = ""
    subtype: str = ""
    is_error: bool = False
    duration_ms: int = 0
    num_turns: int = 0
    result: str | None = None


@dataclass(frozen=True)
class Closed(StreamEvent):
    event_type: str = "closed"
    stream_handle: str = ""
    timestamp: str = field(default_factory=_utcnow_iso)


@dataclass(frozen=True)
class Error(StreamEvent):
    event_type: str = "error"
    error: str = ""
    stream_handle: str | None = None


@dataclass(frozen=True)
class Unrecognized(StreamEvent):
    """Any record whose type the broker does not interpret."""
    event_type: str = "unrecognized"
    record_type: str = ""


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def record_to_event(record: Any) -> StreamEvent:
    """Parse one decoded JSON record into a typed event.

    Never raises: records of unknown or malformed shape come back as
    ``Unrecognized``.
    """
    if not isinstance(record, dict):
        return Unrecognized(record_type=type(record).__name__, raw={"value": record})

    record_type = str(record.get("type") or "")
    session_id = str(record.get("session_id") or "")

    if record_type == "system" and record.get("subtype") == "init":
        servers = record.get("mcp_servers")
        tools = record.get("tools")
        return Handshake(
            raw=record,
            conversation_id=session_id,
            model=str(record.get("model") or ""),
            tools=tuple(str(t) for t in tools) if isinstance(tools, list) else (),
            cwd=str(record.get("cwd") or ""),
            permission_mode=str(record.get("permissionMode") or "default"),
            mcp_servers=tuple(s for s in servers if isinstance(s, dict))
            if isinstance(servers, list) else (),
            api_key_source=str(record.get("apiKeySource") or ""),
        )

    if record_type in ("assistant", "user"):
        message = record.get("message")
        message = message if isinstance(message, dict) else {}
        blocks = parse_content_blocks(message.get("content"))
        parent = record.get("parent_tool_use_id")
        if record_type == "assistant":
            return AssistantTurn(
                raw=record,
                conversation_id=session_id,
                content=blocks,
                model=str(message.get("model") or ""),
                parent_tool_use_id=parent if isinstance(parent, str) else None,
            )
        return UserTurn(
            raw=record,
            conversation_id=session_id,
            content=blocks,
            parent_tool_use_id=parent if isinstance(parent, str) else None,
        )

    if record_type == "permission_request":
        tool_input = record.get("tool_input", record.get("input"))
        request_id = record.get("id")
        return ToolPermissionRequest(
            raw=record,
            tool_name=str(record.get("tool_name") or record.get("toolName") or ""),
            tool_input=tool_input if isinstance(tool_input, dict) else {},
            request_id=str(request_id) if request_id else None,
        )

    if record_type == "result":
        result = record.get("result")
        return Result(
            raw=record,
            conversation_id=session_id,
            subtype=str(record.get("subtype") or ""),
            is_error=bool(record.get("is_error", False)),
            duration_ms=_as_int(record.get("duration_ms")),
            num_turns=_as_int(record.get("num_turns")),
            result=result if isinstance(result, str) else None,
        )

    if record_type == "error":
        err = record.get("error")
        if isinstance(err, dict):
            err = err.get("message")
        return Error(raw=record, error=str(err or "Unknown error"))

    return Unrecognized(raw=record, record_type=record_type)


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Encode an event for delivery to subscribers.

    Events decoded from agent output are passed through as the agent
    wrote them; synthetic events get a compact envelope.
    """
    if isinstance(event, (Connected, Closed)):
        return {
            "type": event.event_type,
            "stream_handle": event.stream_handle,
            "timestamp": event.timestamp,
        }
    if isinstance(event, Error) and not event.raw:
        payload: dict[str, Any] = {"type": "error", "error": event.error}
        if event.stream_handle:
            payload["stream_handle"] = event.stream_handle
        return payload
    if event.raw:
        return dict(event.raw)
    return {"type": event.event_type}
