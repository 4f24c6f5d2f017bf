"""File-level read-through cache over the agent's durable logs.

Each log file is parsed at most once per modification time. A call to
``get_or_parse`` reconciles the cache against the current mtime map
(reusing unchanged entries, re-parsing changed ones, evicting files
that disappeared) and then reduces the records of every cached file in
one pass. Concurrent callers that need the same (path, mtime) share
one in-flight parse.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

R = TypeVar("R")

ParseFile = Callable[[str], Awaitable[list[Any]]]
ProjectKeyOf = Callable[[str], str]


@dataclass(frozen=True)
class CachedFileEntry:
    """Parsed records of one file at one mtime. Replaced, never mutated."""

    path: str
    mtime: float
    records: tuple[Any, ...]
    project_key: str


class HistoryCache(Generic[R]):
    def __init__(self) -> None:
        self._entries: dict[str, CachedFileEntry] = {}
        self._inflight: dict[tuple[str, float], asyncio.Task[CachedFileEntry | None]] = {}
        self._last_cache_time: float | None = None
        self._reconciling = 0

    async def get_or_parse(
        self,
        mod_times: Mapping[str, float],
        parse_file: ParseFile,
        project_key_of: ProjectKeyOf,
        reduce_all: Callable[[list[Any]], R],
    ) -> R:
        self._reconciling += 1
        try:
            for path in [p for p in self._entries if p not in mod_times]:
                logger.debug("History cache evicting %s", path)
                del self._entries[path]

            stale: list[tuple[str, float]] = []
            for path, mtime in mod_times.items():
                entry = self._entries.get(path)
                if entry is None or entry.mtime != mtime:
                    stale.append((path, mtime))
            if stale:
                logger.debug(
                    "History cache reconciling %d of %d file(s)", len(stale), len(mod_times),
                )
                await asyncio.gather(*(
                    self._parse_once(path, mtime, parse_file, project_key_of)
                    for path, mtime in stale
                ))

            records: list[Any] = []
            for path in sorted(mod_times):
                entry = self._entries.get(path)
                if entry is not None and entry.mtime == mod_times[path]:
                    records.extend(entry.records)
            self._last_cache_time = time.time()
        finally:
            self._reconciling -= 1
        return reduce_all(records)

    async def _parse_once(
        self,
        path: str,
        mtime: float,
        parse_file: ParseFile,
        project_key_of: ProjectKeyOf,
    ) -> CachedFileEntry | None:
        key = (path, mtime)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._parse(path, mtime, parse_file, project_key_of))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        else:
            logger.debug("History cache joining in-flight parse of %s", path)
        return await asyncio.shield(task)

    def _forget(self, key: tuple[str, float], task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _parse(
        self,
        path: str,
        mtime: float,
        parse_file: ParseFile,
        project_key_of: ProjectKeyOf,
    ) -> CachedFileEntry | None:
        try:
            records = await parse_file(path)
        except Exception:
            logger.warning("Failed to parse history file %s, skipping", path, exc_info=True)
            current = self._entries.get(path)
            if current is not None and current.mtime != mtime:
                del self._entries[path]
            return None

        entry = CachedFileEntry(
            path=path,
            mtime=mtime,
            records=tuple(records),
            project_key=project_key_of(path),
        )
        current = self._entries.get(path)
        if current is None or current.mtime <= mtime:
            self._entries[path] = entry
        logger.debug("History cache parsed %s entries=%d", path, len(entry.records))
        return entry

    def invalidate(self, path: str | None = None) -> None:
        """Drop one file's entry, or every entry when *path* is None."""
        if path is None:
            self._entries.clear()
        else:
            self._entries.pop(path, None)

    def clear(self) -> None:
        self._entries.clear()
        self._last_cache_time = None

    def stats(self) -> dict[str, Any]:
        return {
            "is_loaded": self._last_cache_time is not None,
            "cached_file_count": len(self._entries),
            "total_cached_entries": sum(len(e.records) for e in self._entries.values()),
            "last_cache_time": self._last_cache_time,
            "is_reconciling": self._reconciling > 0,
            "file_cache_details": [
                {
                    "path": entry.path,
                    "entries": len(entry.records),
                    "mtime": entry.mtime,
                    "project_key": entry.project_key,
                }
                for entry in sorted(self._entries.values(), key=lambda e: e.path)
            ],
        }
