"""Conversation listing and details.

Merges the durable history with conversations that are running but not
on disk yet, and tags every entry with its live status.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from agentrelay.adapters.status_registry import ConversationStatus, SessionStatusRegistry
from agentrelay.engine.errors import ConversationNotFoundError, InvalidRequestError
from agentrelay.shared.models.conversation import ConversationDetails, ConversationSummary
from agentrelay.shared.services.history_reader import ClaudeHistoryReader
from agentrelay.shared.services.message_filter import filter_messages
from agentrelay.shared.services.session_info import SessionInfoStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
SORT_FIELDS = ("created", "updated")
SORT_ORDERS = ("asc", "desc")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 timestamps (``Z`` suffix allowed) into aware UTC datetimes."""
    if not value or not isinstance(value, str):
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class ConversationCatalog:
    def __init__(
        self,
        history: ClaudeHistoryReader,
        registry: SessionStatusRegistry,
        session_info: SessionInfoStore | None = None,
    ) -> None:
        self._history = history
        self._registry = registry
        self._session_info = session_info

    async def list_conversations(
        self,
        *,
        project_path: str | None = None,
        sort_by: str = "updated",
        order: str = "desc",
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
    ) -> tuple[list[ConversationSummary], int]:
        """One page of conversations and the total after filtering."""
        if sort_by not in SORT_FIELDS:
            raise InvalidRequestError(f"sort_by must be one of {', '.join(SORT_FIELDS)}")
        if order not in SORT_ORDERS:
            raise InvalidRequestError(f"order must be one of {', '.join(SORT_ORDERS)}")
        if limit < 0 or offset < 0:
            raise InvalidRequestError("limit and offset must not be negative")

        chains = await self._history.list_chains()
        summaries = [ConversationSummary.from_chain(chain) for chain in chains]
        on_disk = {s.conversation_id for s in summaries}
        summaries.extend(self._registry.conversations_not_in_history(on_disk))

        for summary in summaries:
            self._decorate(summary)

        if project_path:
            summaries = [s for s in summaries if s.project_path == project_path]

        attr = "created_at" if sort_by == "created" else "updated_at"
        summaries.sort(
            key=lambda s: (parse_timestamp(getattr(s, attr)) or _EPOCH, s.conversation_id),
            reverse=order == "desc",
        )
        total = len(summaries)
        page = summaries[offset:offset + (limit or DEFAULT_LIMIT)]
        logger.debug(
            "Listed conversations total=%d page=%d project=%s", total, len(page), project_path,
        )
        return page, total

    async def get_conversation_details(self, conversation_id: str) -> ConversationDetails:
        chain = await self._history.find_chain(conversation_id)
        if chain is not None:
            return ConversationDetails(
                messages=filter_messages(list(chain.messages)),
                summary=chain.summary,
                project_path=chain.project_path,
                total_duration_ms=chain.total_duration_ms,
                model=chain.model,
            )
        details = self._registry.active_conversation_details(conversation_id)
        if details is None:
            raise ConversationNotFoundError(conversation_id)
        logger.debug("Serving placeholder details for active conversation=%s", conversation_id)
        return details

    def _decorate(self, summary: ConversationSummary) -> None:
        status = self._registry.status(summary.conversation_id)
        summary.status = status.value
        summary.stream_handle = (
            self._registry.stream_handle_for(summary.conversation_id)
            if status is ConversationStatus.ONGOING
            else None
        )
        if self._session_info is not None:
            summary.session_info = self._session_info.get(summary.conversation_id).to_dict()
