"""Git revision probe for conversation working directories."""
from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 5


def _git(cwd: str | Path, *args: str) -> str | None:
    """Run a read-only git command, returning stripped stdout or None."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError):
        logger.debug("git %s failed in %s", " ".join(args), cwd, exc_info=True)
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def is_git_repo(cwd: str | Path) -> bool:
    return _git(cwd, "rev-parse", "--is-inside-work-tree") == "true"


def head_revision(cwd: str | Path) -> str | None:
    """Commit hash at HEAD, or None outside a checkout or before the first commit."""
    if not is_git_repo(cwd):
        return None
    return _git(cwd, "rev-parse", "HEAD")


async def current_revision(cwd: str | Path) -> str | None:
    """``head_revision`` without blocking the event loop."""
    return await asyncio.to_thread(head_revision, cwd)
