"""Per-conversation metadata kept by the broker itself.

Stored as one JSON object in ``session_info_path`` keyed by
conversation id. The agent's own logs stay the source of truth for
messages; this file only remembers what the broker decided about a
conversation (permission mode, starting revision, continuation id).
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to a temp file beside *path*, fsync it, then rename over."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


@dataclass
class SessionInfo:
    permission_mode: str = "default"
    initial_commit_head: str | None = None
    continuation_session_id: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionInfo:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SessionInfoStore:
    """JSON-file backed map of conversation id -> ``SessionInfo``."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._entries: dict[str, SessionInfo] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, SessionInfo]:
        if self._entries is not None:
            return self._entries
        entries: dict[str, SessionInfo] = {}
        try:
            if self._path.exists():
                data = json.loads(self._path.read_text())
                sessions = data.get("sessions", {}) if isinstance(data, dict) else {}
                for conversation_id, raw in sessions.items():
                    if isinstance(raw, dict):
                        entries[conversation_id] = SessionInfo.from_dict(raw)
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load session info from %s, starting empty", self._path)
        self._entries = entries
        return entries

    def _save(self) -> None:
        payload = {
            "schema_version": 1,
            "sessions": {cid: info.to_dict() for cid, info in self._load().items()},
        }
        try:
            atomic_write_text(self._path, json.dumps(payload, indent=2) + "\n")
        except OSError:
            logger.warning("Failed to write session info to %s", self._path, exc_info=True)

    def get(self, conversation_id: str) -> SessionInfo:
        """Stored info for *conversation_id*, or defaults if none."""
        info = self._load().get(conversation_id)
        return SessionInfo(**asdict(info)) if info is not None else SessionInfo()

    def has(self, conversation_id: str) -> bool:
        return conversation_id in self._load()

    def update(self, conversation_id: str, **changes: Any) -> SessionInfo:
        """Merge *changes* into the entry for *conversation_id* and persist."""
        entries = self._load()
        known = {f.name for f in fields(SessionInfo)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown session info field(s): {', '.join(sorted(unknown))}")

        now = _utcnow_iso()
        info = entries.get(conversation_id) or SessionInfo(created_at=now)
        for key, value in changes.items():
            setattr(info, key, value)
        info.updated_at = now
        entries[conversation_id] = info
        self._save()
        logger.debug("Session info updated conversation=%s fields=%s", conversation_id, sorted(changes))
        return SessionInfo(**asdict(info))

    def all(self) -> dict[str, SessionInfo]:
        return {cid: SessionInfo(**asdict(info)) for cid, info in self._load().items()}
