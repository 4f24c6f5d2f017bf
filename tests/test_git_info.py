from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from agentrelay.shared.services import git_info


def _completed(stdout: str, returncode: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=["git"], returncode=returncode, stdout=stdout, stderr="")


def test_head_revision_inside_checkout(tmp_path: Path) -> None:
    with patch.object(
        git_info.subprocess, "run",
        side_effect=[_completed("true\n"), _completed("0123abcd\n")],
    ) as run:
        assert git_info.head_revision(tmp_path) == "0123abcd"
    assert run.call_args_list[1].args[0] == ["git", "rev-parse", "HEAD"]
    assert run.call_args_list[1].kwargs["cwd"] == str(tmp_path)


def test_not_a_repository(tmp_path: Path) -> None:
    with patch.object(git_info.subprocess, "run", return_value=_completed("", returncode=128)) as run:
        assert git_info.head_revision(tmp_path) is None
    assert run.call_count == 1


def test_git_missing_or_hanging(tmp_path: Path) -> None:
    with patch.object(git_info.subprocess, "run", side_effect=FileNotFoundError("git")):
        assert git_info.is_git_repo(tmp_path) is False
    with patch.object(
        git_info.subprocess, "run",
        side_effect=subprocess.TimeoutExpired(cmd="git", timeout=5),
    ):
        assert git_info.head_revision(tmp_path) is None


@pytest.mark.asyncio
async def test_current_revision_runs_off_loop(tmp_path: Path) -> None:
    with patch.object(git_info, "head_revision", return_value="feedface") as head:
        assert await git_info.current_revision(tmp_path) == "feedface"
    head.assert_called_once_with(tmp_path)
