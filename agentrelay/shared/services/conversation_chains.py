"""Rebuild conversations from durable log records.

Log records form a forest through ``parentUuid`` links. A
conversation's message sequence is the path from its root to its most
recently active leaf. Sidechain records (sub-agent branches) never take
part in that path. ``summary`` records name a leaf through
``leafUuid`` and carry the conversation title.

The result depends only on the set of records, not on the order the
per-file record lists were concatenated in.
"""
from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Any

from agentrelay.shared.models.conversation import ConversationChain, ConversationMessage

logger = logging.getLogger(__name__)

MESSAGE_TYPES = frozenset({"user", "assistant", "system"})
DEFAULT_SUMMARY = "No summary available"
UNKNOWN_MODEL = "unknown"


def _canonical_key(record: dict[str, Any]) -> tuple[str, str, str]:
    return (
        str(record.get("timestamp") or ""),
        str(record.get("uuid") or ""),
        json.dumps(record, sort_keys=True, default=str),
    )


def collect_summaries(records: list[Any]) -> dict[str, str]:
    """Map leaf uuid -> title from ``summary`` records."""
    summaries: dict[str, str] = {}
    candidates = [
        r for r in records
        if isinstance(r, dict) and r.get("type") == "summary" and r.get("leafUuid")
    ]
    for record in sorted(candidates, key=_canonical_key):
        title = record.get("summary")
        if isinstance(title, str) and title:
            summaries[str(record["leafUuid"])] = title
    return summaries


def _select_leaf(messages: dict[str, ConversationMessage]) -> ConversationMessage:
    parents = {m.parent_uuid for m in messages.values() if m.parent_uuid}
    leaves = [m for m in messages.values() if m.uuid not in parents]
    # A parent cycle leaves no leaf; fall back to the newest message.
    pool = leaves or list(messages.values())
    return max(pool, key=lambda m: (m.timestamp, m.uuid))


def _walk_to_root(
    leaf: ConversationMessage, messages: dict[str, ConversationMessage],
) -> list[ConversationMessage]:
    path: list[ConversationMessage] = []
    seen: set[str] = set()
    current: ConversationMessage | None = leaf
    while current is not None and current.uuid not in seen:
        path.append(current)
        seen.add(current.uuid)
        current = messages.get(current.parent_uuid) if current.parent_uuid else None
    path.reverse()
    return path


def build_chain(
    conversation_id: str,
    messages: list[ConversationMessage],
    summaries: dict[str, str],
) -> ConversationChain | None:
    """Primary message path of one conversation, or None if it has none."""
    primary = {m.uuid: m for m in messages if not m.is_sidechain}
    if not primary:
        return None

    ordered = _walk_to_root(_select_leaf(primary), primary)

    summary = DEFAULT_SUMMARY
    for message in reversed(ordered):
        if message.uuid in summaries:
            summary = summaries[message.uuid]
            break

    project_path = ""
    model = UNKNOWN_MODEL
    total_duration = 0
    for message in ordered:
        if message.cwd:
            project_path = message.cwd
        if message.model:
            model = message.model
        if message.duration_ms:
            total_duration += int(message.duration_ms)

    return ConversationChain(
        conversation_id=conversation_id,
        messages=tuple(ordered),
        project_path=project_path,
        summary=summary,
        created_at=ordered[0].timestamp,
        updated_at=ordered[-1].timestamp,
        total_duration_ms=total_duration,
        model=model,
    )


def build_conversation_chains(records: list[Any]) -> list[ConversationChain]:
    """Reduce every cached record into one chain per conversation.

    Chains are ordered by conversation id; callers sort as they need.
    """
    summaries = collect_summaries(records)

    by_conversation: dict[str, dict[str, ConversationMessage]] = defaultdict(dict)
    candidates = [
        r for r in records
        if isinstance(r, dict)
        and r.get("type") in MESSAGE_TYPES
        and r.get("uuid")
        and r.get("sessionId")
    ]
    for record in sorted(candidates, key=_canonical_key):
        message = ConversationMessage.from_record(record)
        # First record in canonical order wins for a duplicated uuid.
        by_conversation[message.conversation_id].setdefault(message.uuid, message)

    chains: list[ConversationChain] = []
    for conversation_id in sorted(by_conversation):
        chain = build_chain(
            conversation_id, list(by_conversation[conversation_id].values()), summaries,
        )
        if chain is not None:
            chains.append(chain)
    logger.debug(
        "Built %d conversation chain(s) from %d record(s)", len(chains), len(records),
    )
    return chains
