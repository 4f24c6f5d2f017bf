"""Session status registry.

Tracks which durable conversation each running stream handle belongs
to. A conversation has at most one active stream handle at a time:
registering a new handle for a conversation supersedes the old one, and
re-registering a handle under a different conversation detaches it from
the first. Both maps are always updated together.

The registry also keeps the context of conversations that are running
but have not reached the durable log yet, so listings can show a
placeholder entry until the agent's own file catches up.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from agentrelay.adapters.event_bus import Signal
from agentrelay.shared.models.conversation import (
    ConversationContext,
    ConversationDetails,
    ConversationMessage,
    ConversationSummary,
)

logger = logging.getLogger(__name__)


class ConversationStatus(str, Enum):
    ONGOING = "ongoing"
    COMPLETED = "completed"


@dataclass(frozen=True)
class SessionEvent:
    stream_handle: str
    conversation_id: str


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class SessionStatusRegistry:
    """Bidirectional stream handle <-> conversation id map."""

    def __init__(self) -> None:
        self._handle_by_conversation: dict[str, str] = {}
        self._conversation_by_handle: dict[str, str] = {}
        self._contexts: dict[str, ConversationContext] = {}
        self.session_started: Signal[SessionEvent] = Signal("session-started")
        self.session_ended: Signal[SessionEvent] = Signal("session-ended")

    # ── Mutation ──

    def register(
        self,
        stream_handle: str,
        conversation_id: str,
        *,
        initial_prompt: str | None = None,
        working_directory: str | None = None,
        model: str | None = None,
        inherited_messages: list[ConversationMessage] | tuple[ConversationMessage, ...] | None = None,
    ) -> None:
        """Attach *stream_handle* to *conversation_id*.

        Context (prompt, directory, ...) is stored when a working
        directory or prompt is given; it feeds the placeholder entries
        for conversations not yet on disk.
        """
        previous_handle = self._handle_by_conversation.get(conversation_id)
        if previous_handle is not None and previous_handle != stream_handle:
            logger.debug(
                "Superseding stream=%s for conversation=%s with stream=%s",
                previous_handle, conversation_id, stream_handle,
            )
            self._conversation_by_handle.pop(previous_handle, None)

        previous_conversation = self._conversation_by_handle.get(stream_handle)
        if previous_conversation is not None and previous_conversation != conversation_id:
            logger.debug(
                "Detaching stream=%s from conversation=%s (now %s)",
                stream_handle, previous_conversation, conversation_id,
            )
            self._handle_by_conversation.pop(previous_conversation, None)
            self._contexts.pop(previous_conversation, None)

        self._handle_by_conversation[conversation_id] = stream_handle
        self._conversation_by_handle[stream_handle] = conversation_id

        if initial_prompt is not None or working_directory is not None:
            self._contexts[conversation_id] = ConversationContext(
                initial_prompt=initial_prompt or "",
                working_directory=working_directory or "",
                model=model or "default",
                timestamp=_utcnow_iso(),
                inherited_messages=tuple(inherited_messages or ()),
            )

        logger.info(
            "Active session registered stream=%s conversation=%s active=%d",
            stream_handle, conversation_id, len(self._handle_by_conversation),
        )
        self.session_started.emit(SessionEvent(stream_handle, conversation_id))

    def unregister(self, stream_handle: str) -> bool:
        """Detach *stream_handle*. Unknown handles are a no-op."""
        conversation_id = self._conversation_by_handle.pop(stream_handle, None)
        if conversation_id is None:
            logger.debug("Unregister of unknown stream=%s ignored", stream_handle)
            return False
        if self._handle_by_conversation.get(conversation_id) == stream_handle:
            del self._handle_by_conversation[conversation_id]
        self._contexts.pop(conversation_id, None)
        logger.info(
            "Active session unregistered stream=%s conversation=%s active=%d",
            stream_handle, conversation_id, len(self._handle_by_conversation),
        )
        self.session_ended.emit(SessionEvent(stream_handle, conversation_id))
        return True

    def clear(self) -> None:
        self._handle_by_conversation.clear()
        self._conversation_by_handle.clear()
        self._contexts.clear()

    # ── Lookup ──

    def status(self, conversation_id: str) -> ConversationStatus:
        if conversation_id in self._handle_by_conversation:
            return ConversationStatus.ONGOING
        return ConversationStatus.COMPLETED

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._handle_by_conversation

    def stream_handle_for(self, conversation_id: str) -> str | None:
        return self._handle_by_conversation.get(conversation_id)

    def conversation_id_for(self, stream_handle: str) -> str | None:
        return self._conversation_by_handle.get(stream_handle)

    def context_for(self, conversation_id: str) -> ConversationContext | None:
        return self._contexts.get(conversation_id)

    def active_conversation_ids(self) -> list[str]:
        return list(self._handle_by_conversation)

    def active_stream_handles(self) -> list[str]:
        return list(self._conversation_by_handle)

    def check_consistency(self) -> list[str]:
        """Describe every pair whose forward and reverse entries disagree.

        An empty list means the two maps mirror each other exactly.
        """
        problems: list[str] = []
        for conversation_id, handle in self._handle_by_conversation.items():
            back = self._conversation_by_handle.get(handle)
            if back != conversation_id:
                problems.append(
                    f"conversation {conversation_id} -> stream {handle} -> {back or 'nothing'}"
                )
        for handle, conversation_id in self._conversation_by_handle.items():
            forward = self._handle_by_conversation.get(conversation_id)
            if forward != handle:
                problems.append(
                    f"stream {handle} -> conversation {conversation_id} -> {forward or 'nothing'}"
                )
        return problems

    # ── Placeholders for conversations not yet on disk ──

    def conversations_not_in_history(self, existing_ids: set[str]) -> list[ConversationSummary]:
        summaries: list[ConversationSummary] = []
        for conversation_id, handle in self._handle_by_conversation.items():
            if conversation_id in existing_ids:
                continue
            context = self._contexts.get(conversation_id)
            if context is None:
                continue
            summaries.append(ConversationSummary(
                conversation_id=conversation_id,
                project_path=context.working_directory,
                summary="",
                created_at=context.timestamp,
                updated_at=context.timestamp,
                message_count=len(context.inherited_messages) + 1,
                total_duration_ms=0,
                model=context.model or "unknown",
                status=ConversationStatus.ONGOING.value,
                stream_handle=handle,
            ))
        logger.debug(
            "Conversations not in history: %d of %d active",
            len(summaries), len(self._handle_by_conversation),
        )
        return summaries

    def active_conversation_details(self, conversation_id: str) -> ConversationDetails | None:
        if conversation_id not in self._handle_by_conversation:
            return None
        context = self._contexts.get(conversation_id)
        if context is None:
            return None
        messages = list(context.inherited_messages)
        messages.append(ConversationMessage(
            uuid=f"active-{conversation_id}-user",
            type="user",
            message={"role": "user", "content": context.initial_prompt},
            timestamp=context.timestamp,
            conversation_id=conversation_id,
            cwd=context.working_directory,
        ))
        return ConversationDetails(
            messages=messages,
            summary="",
            project_path=context.working_directory,
            total_duration_ms=0,
            model=context.model or "unknown",
        )

    # ── Observability ──

    def stats(self) -> dict[str, Any]:
        return {
            "active_sessions_count": len(self._handle_by_conversation),
            "active_stream_handles_count": len(self._conversation_by_handle),
            "active_contexts_count": len(self._contexts),
            "consistent": not self.check_consistency(),
            "active_sessions": [
                {"conversation_id": cid, "stream_handle": handle}
                for cid, handle in self._handle_by_conversation.items()
            ],
        }
