"""Reader for the agent's durable conversation logs.

The agent writes one JSONL file per conversation under
``<agent_home>/projects/<encoded-project>/<conversation-id>.jsonl``.
Listing goes through ``HistoryCache`` so unchanged files are parsed
only once.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from agentrelay.engine.errors import ConversationNotFoundError
from agentrelay.shared.jsonl import iter_json_lines
from agentrelay.shared.models.conversation import ConversationChain, ConversationMessage
from agentrelay.shared.services.conversation_chains import build_conversation_chains
from agentrelay.shared.services.history_cache import HistoryCache

logger = logging.getLogger(__name__)


def read_log_records(path: Path) -> list[dict[str, Any]]:
    """Parse one log file. Bad lines are skipped; I/O errors propagate."""
    text = path.read_text(encoding="utf-8", errors="replace")
    records: list[dict[str, Any]] = []
    bad = 0
    for frame in iter_json_lines(text):
        if not frame.ok:
            bad += 1
            continue
        if isinstance(frame.value, dict):
            records.append(frame.value)
    if bad:
        logger.warning("Skipped %d malformed line(s) in %s", bad, path)
    return records


class ClaudeHistoryReader:
    def __init__(
        self,
        projects_dir: Path,
        cache: HistoryCache[list[ConversationChain]] | None = None,
    ) -> None:
        self._projects_dir = projects_dir
        self._cache: HistoryCache[list[ConversationChain]] = cache or HistoryCache()

    @property
    def cache(self) -> HistoryCache[list[ConversationChain]]:
        return self._cache

    def scan_mod_times(self) -> dict[str, float]:
        """mtime of every log file currently on disk."""
        mod_times: dict[str, float] = {}
        if not self._projects_dir.is_dir():
            return mod_times
        for project in self._projects_dir.iterdir():
            if not project.is_dir():
                continue
            for log_file in project.glob("*.jsonl"):
                try:
                    mod_times[str(log_file)] = log_file.stat().st_mtime
                except OSError:
                    # Removed between listing and stat.
                    continue
        return mod_times

    @staticmethod
    def project_key_of(path: str) -> str:
        return Path(path).parent.name

    @staticmethod
    async def parse_file(path: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(read_log_records, Path(path))

    async def list_chains(self) -> list[ConversationChain]:
        mod_times = await asyncio.to_thread(self.scan_mod_times)
        return await self._cache.get_or_parse(
            mod_times, self.parse_file, self.project_key_of, build_conversation_chains,
        )

    async def find_chain(self, conversation_id: str) -> ConversationChain | None:
        for chain in await self.list_chains():
            if chain.conversation_id == conversation_id:
                return chain
        return None

    async def conversation_ids(self) -> set[str]:
        return {chain.conversation_id for chain in await self.list_chains()}

    async def fetch_conversation(self, conversation_id: str) -> list[ConversationMessage]:
        """Ordered messages of *conversation_id*.

        Raises ConversationNotFoundError if no log contains it.
        """
        chain = await self.find_chain(conversation_id)
        if chain is None:
            raise ConversationNotFoundError(conversation_id)
        return list(chain.messages)

    async def get_conversation_metadata(self, conversation_id: str) -> dict[str, Any] | None:
        chain = await self.find_chain(conversation_id)
        if chain is None:
            return None
        return {
            "summary": chain.summary,
            "project_path": chain.project_path,
            "model": chain.model,
            "total_duration_ms": chain.total_duration_ms,
        }

    async def get_working_directory(self, conversation_id: str) -> str | None:
        chain = await self.find_chain(conversation_id)
        if chain is None:
            logger.debug("No history for conversation=%s", conversation_id)
            return None
        return chain.project_path or None
