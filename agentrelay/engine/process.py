"""Child process handle used by the orchestrator.

The orchestrator only talks to ``AgentProcess``; production code gets
an ``AsyncioAgentProcess`` from ``spawn_agent`` while tests pass their
own spawner returning a fake.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


class AgentProcess(Protocol):
    @property
    def pid(self) -> int | None: ...

    @property
    def returncode(self) -> int | None: ...

    async def read_stdout(self) -> bytes:
        """Next chunk of stdout; ``b""`` at end of stream."""
        ...

    async def read_stderr(self) -> bytes:
        """Next chunk of stderr; ``b""`` at end of stream."""
        ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


Spawner = Callable[[list[str], str, dict[str, str]], Awaitable[AgentProcess]]


class AsyncioAgentProcess:
    """``AgentProcess`` over ``asyncio.subprocess.Process``."""

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def read_stdout(self) -> bytes:
        if self._proc.stdout is None:
            return b""
        return await self._proc.stdout.read(READ_CHUNK_SIZE)

    async def read_stderr(self) -> bytes:
        if self._proc.stderr is None:
            return b""
        return await self._proc.stderr.read(READ_CHUNK_SIZE)

    async def wait(self) -> int:
        return await self._proc.wait()

    def terminate(self) -> None:
        try:
            self._proc.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        try:
            self._proc.kill()
        except ProcessLookupError:
            pass


async def spawn_agent(argv: list[str], cwd: str, env: dict[str, str]) -> AgentProcess:
    """Start the agent CLI with piped stdio.

    Raises ``FileNotFoundError`` when the executable does not exist.
    """
    # argv goes straight to exec, never through a shell
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
    )
    logger.info("Agent process started pid=%d cwd=%s", proc.pid, cwd)
    return AsyncioAgentProcess(proc)


async def stop_process(process: AgentProcess, grace_seconds: float) -> int | None:
    """SIGTERM, then SIGKILL if the process outlives *grace_seconds*."""
    if process.returncode is not None:
        return process.returncode
    process.terminate()
    try:
        return await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "Agent process pid=%s ignored SIGTERM for %.1fs, sending SIGKILL",
            process.pid, grace_seconds,
        )
    process.kill()
    return await process.wait()
