"""Process orchestrator: one agent CLI child process per stream handle.

Lifecycle of a stream handle::

    starting -> running -> (stopping ->) exited
    starting -> failed          (exit, timeout or bad first record)

``start`` and ``resume`` spawn the agent, pipe its stdout through a
``JsonLinesDecoder`` into the ``StreamHub`` and return once the first
(handshake) record names the durable conversation. Everything decoded
afterwards is broadcast to the handle's subscribers and announced on
the ``message`` signal.
"""
from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from agentrelay.adapters.event_bus import Signal
from agentrelay.adapters.events import Error, Handshake, StreamEvent, record_to_event
from agentrelay.adapters.status_registry import SessionStatusRegistry
from agentrelay.adapters.stream_hub import StreamHub
from agentrelay.engine.config import PERMISSION_PROMPT_TOOL, BrokerConfig
from agentrelay.engine.errors import (
    AgentNotFoundError,
    BrokerError,
    ConversationNotFoundError,
    HandshakeTimeoutError,
    InvalidHandshakeError,
    ProcessExitedBeforeHandshakeError,
    ProcessSpawnError,
)
from agentrelay.engine.process import AgentProcess, Spawner, spawn_agent, stop_process
from agentrelay.shared.jsonl import Frame, JsonLinesDecoder
from agentrelay.shared.models.conversation import ConversationMessage
from agentrelay.shared.services import git_info

if TYPE_CHECKING:
    from agentrelay.shared.services.history_reader import ClaudeHistoryReader
    from agentrelay.shared.services.session_info import SessionInfoStore

logger = logging.getLogger(__name__)

STREAM_HANDLE_ENV = "RELAY_STREAM_HANDLE"


class ProcessState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    EXITED = "exited"
    FAILED = "failed"


@dataclass
class ConversationConfig:
    """Options for a new conversation."""

    working_directory: str
    initial_prompt: str
    model: str | None = None
    system_prompt: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    permission_mode: str | None = None
    executable_path: str | None = None


@dataclass(frozen=True)
class StartResult:
    stream_handle: str
    conversation_id: str
    model: str
    tools: tuple[str, ...]
    working_directory: str
    permission_mode: str
    mcp_servers: tuple[dict[str, Any], ...] = ()
    api_key_source: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "streamHandle": self.stream_handle,
            "sessionId": self.conversation_id,
            "model": self.model,
            "tools": list(self.tools),
            "cwd": self.working_directory,
            "permissionMode": self.permission_mode,
            "mcpServers": list(self.mcp_servers),
            "apiKeySource": self.api_key_source,
        }


@dataclass(frozen=True)
class ProcessMessage:
    stream_handle: str
    event: StreamEvent


@dataclass(frozen=True)
class ProcessClosed:
    stream_handle: str
    exit_code: int | None


@dataclass(frozen=True)
class ProcessError:
    stream_handle: str
    error: str


@dataclass
class _ManagedProcess:
    stream_handle: str
    process: AgentProcess
    handshake: asyncio.Future[Handshake]
    state: ProcessState = ProcessState.STARTING
    decoder: JsonLinesDecoder = field(default_factory=JsonLinesDecoder)
    stderr_parts: list[str] = field(default_factory=list)
    watcher: asyncio.Task[None] | None = None
    exit_code: int | None = None

    @property
    def stderr(self) -> str:
        return "".join(self.stderr_parts)


class ProcessManager:
    """Spawns, tracks and stops agent processes."""

    def __init__(
        self,
        config: BrokerConfig,
        *,
        hub: StreamHub,
        registry: SessionStatusRegistry,
        session_info: SessionInfoStore | None = None,
        history: ClaudeHistoryReader | None = None,
        spawner: Spawner | None = None,
    ) -> None:
        self._config = config
        self._hub = hub
        self._registry = registry
        self._session_info = session_info
        self._history = history
        self._spawner: Spawner = spawner or spawn_agent
        self._processes: dict[str, _ManagedProcess] = {}
        self.message: Signal[ProcessMessage] = Signal("process-message")
        self.process_closed: Signal[ProcessClosed] = Signal("process-closed")
        self.process_error: Signal[ProcessError] = Signal("process-error")

    # ── Command line ──

    def build_start_args(self, conversation: ConversationConfig) -> list[str]:
        argv = [
            conversation.executable_path or self._config.agent_command,
            "-p", conversation.initial_prompt,
            "--output-format", "stream-json",
            "--verbose",
        ]
        if conversation.model:
            argv.extend(["--model", conversation.model])
        if conversation.system_prompt:
            argv.extend(["--system-prompt", conversation.system_prompt])
        argv.extend(self._tool_args(
            conversation.allowed_tools,
            conversation.disallowed_tools,
            conversation.permission_mode,
        ))
        return argv

    def build_resume_args(
        self,
        conversation_id: str,
        message: str,
        *,
        executable_path: str | None = None,
        model: str | None = None,
        permission_mode: str | None = None,
    ) -> list[str]:
        argv = [
            executable_path or self._config.agent_command,
            "-p", "--resume", conversation_id, message,
            "--output-format", "stream-json",
            "--verbose",
        ]
        if model:
            argv.extend(["--model", model])
        argv.extend(self._tool_args([], [], permission_mode))
        return argv

    def _tool_args(
        self,
        allowed_tools: list[str],
        disallowed_tools: list[str],
        permission_mode: str | None,
    ) -> list[str]:
        args: list[str] = []
        allowed = list(allowed_tools)
        if self._config.mcp_config_path:
            args.extend([
                "--mcp-config", self._config.mcp_config_path,
                "--permission-prompt-tool", PERMISSION_PROMPT_TOOL,
            ])
            if PERMISSION_PROMPT_TOOL not in allowed:
                allowed.append(PERMISSION_PROMPT_TOOL)
        if allowed:
            args.extend(["--allowedTools", ",".join(allowed)])
        if disallowed_tools:
            args.extend(["--disallowedTools", ",".join(disallowed_tools)])
        if permission_mode and permission_mode != "default":
            args.extend(["--permission-mode", permission_mode])
        return args

    # ── Lifecycle ──

    async def start(self, conversation: ConversationConfig) -> StartResult:
        """Spawn a new conversation and wait for its handshake."""
        argv = self.build_start_args(conversation)
        managed, handshake = await self._launch(argv, conversation.working_directory)
        result = self._result(managed.stream_handle, handshake, conversation.working_directory)

        if managed.stream_handle in self._processes:
            self._registry.register(
                managed.stream_handle,
                result.conversation_id,
                initial_prompt=conversation.initial_prompt,
                working_directory=conversation.working_directory,
                model=conversation.model or result.model,
            )
        if conversation.permission_mode and self._session_info is not None:
            self._session_info.update(
                result.conversation_id, permission_mode=conversation.permission_mode,
            )
        await self._record_start_revision(result.conversation_id, conversation.working_directory)
        logger.info(
            "Conversation started stream=%s conversation=%s model=%s",
            result.stream_handle, result.conversation_id, result.model,
        )
        return result

    async def resume(
        self,
        conversation_id: str,
        message: str,
        *,
        working_directory: str | None = None,
        previous_messages: list[ConversationMessage] | None = None,
        permission_mode: str | None = None,
        model: str | None = None,
        executable_path: str | None = None,
    ) -> StartResult:
        """Continue *conversation_id* under a new stream handle.

        Missing context is filled in from the durable log (working
        directory, prior messages) and the session info store
        (permission mode). The new handle is registered under the
        existing conversation id, superseding any stale handle.
        """
        if working_directory is None and self._history is not None:
            working_directory = await self._history.get_working_directory(conversation_id)
        if not working_directory:
            raise ConversationNotFoundError(
                conversation_id, f"Working directory for conversation {conversation_id} is unknown",
            )
        if previous_messages is None and self._history is not None:
            try:
                previous_messages = await self._history.fetch_conversation(conversation_id)
            except ConversationNotFoundError:
                previous_messages = []
        if permission_mode is None and self._session_info is not None:
            permission_mode = self._session_info.get(conversation_id).permission_mode

        argv = self.build_resume_args(
            conversation_id, message,
            executable_path=executable_path,
            model=model,
            permission_mode=permission_mode,
        )
        managed, handshake = await self._launch(argv, working_directory)
        result = self._result(managed.stream_handle, handshake, working_directory)

        if managed.stream_handle in self._processes:
            self._registry.register(
                managed.stream_handle,
                conversation_id,
                initial_prompt=message,
                working_directory=working_directory,
                model=model or result.model,
                inherited_messages=previous_messages or [],
            )
        if self._session_info is not None and result.conversation_id != conversation_id:
            self._session_info.update(
                conversation_id, continuation_session_id=result.conversation_id,
            )
        await self._record_start_revision(conversation_id, working_directory)
        logger.info(
            "Conversation resumed stream=%s conversation=%s handshake=%s inherited=%d",
            result.stream_handle, conversation_id, result.conversation_id,
            len(previous_messages or []),
        )
        return StartResult(
            stream_handle=result.stream_handle,
            conversation_id=conversation_id,
            model=result.model,
            tools=result.tools,
            working_directory=result.working_directory,
            permission_mode=permission_mode or result.permission_mode,
            mcp_servers=result.mcp_servers,
            api_key_source=result.api_key_source,
        )

    async def stop(self, stream_handle: str) -> bool:
        """Terminate the process behind *stream_handle*.

        Returns False when no such process is running.
        """
        managed = self._processes.get(stream_handle)
        if managed is None:
            logger.debug("Stop for unknown stream=%s", stream_handle)
            return False
        logger.info("Stopping stream=%s pid=%s", stream_handle, managed.process.pid)
        managed.state = ProcessState.STOPPING
        await stop_process(managed.process, self._config.stop_grace_seconds)
        if managed.watcher is not None:
            await managed.watcher
        return True

    async def shutdown(self) -> None:
        """Stop every running process."""
        handles = list(self._processes)
        if handles:
            logger.info("Shutting down %d agent process(es)", len(handles))
            await asyncio.gather(*(self.stop(h) for h in handles), return_exceptions=True)

    async def wait_closed(self, stream_handle: str) -> int | None:
        """Wait until the process behind *stream_handle* has been torn down."""
        managed = self._processes.get(stream_handle)
        if managed is None or managed.watcher is None:
            return None
        await managed.watcher
        return managed.exit_code

    # ── Accessors ──

    def active_handles(self) -> list[str]:
        return list(self._processes)

    def is_active(self, stream_handle: str) -> bool:
        return stream_handle in self._processes

    def state(self, stream_handle: str) -> ProcessState | None:
        managed = self._processes.get(stream_handle)
        return managed.state if managed is not None else None

    # ── Internals ──

    async def _launch(self, argv: list[str], cwd: str) -> tuple[_ManagedProcess, Handshake]:
        stream_handle = str(uuid.uuid4())
        env = dict(os.environ)
        env.update(self._config.env_overrides)
        env[STREAM_HANDLE_ENV] = stream_handle

        logger.info("Spawning agent stream=%s cwd=%s argv0=%s", stream_handle, cwd, argv[0])
        try:
            process = await self._spawner(argv, cwd, env)
        except FileNotFoundError as exc:
            raise AgentNotFoundError(argv[0]) from exc
        except (OSError, ValueError) as exc:
            raise ProcessSpawnError(f"Failed to start agent: {exc}") from exc

        loop = asyncio.get_running_loop()
        managed = _ManagedProcess(
            stream_handle=stream_handle,
            process=process,
            handshake=loop.create_future(),
        )
        self._processes[stream_handle] = managed
        managed.watcher = asyncio.create_task(self._watch(managed))

        try:
            handshake = await asyncio.wait_for(
                managed.handshake, timeout=self._config.handshake_timeout_seconds,
            )
        except asyncio.TimeoutError:
            managed.state = ProcessState.FAILED
            logger.error(
                "Handshake timeout stream=%s after %.1fs",
                stream_handle, self._config.handshake_timeout_seconds,
            )
            await self._abort(managed)
            raise HandshakeTimeoutError(
                stream_handle, self._config.handshake_timeout_seconds, managed.stderr,
            ) from None
        except BrokerError:
            managed.state = ProcessState.FAILED
            await self._abort(managed)
            raise
        return managed, handshake

    async def _abort(self, managed: _ManagedProcess) -> None:
        await stop_process(managed.process, self._config.stop_grace_seconds)
        if managed.watcher is not None:
            await managed.watcher

    async def _watch(self, managed: _ManagedProcess) -> None:
        """Drain the process output, then tear the handle down."""
        handle = managed.stream_handle
        try:
            await asyncio.gather(self._read_stdout(managed), self._read_stderr(managed))
            managed.exit_code = await managed.process.wait()
        except Exception as exc:
            logger.exception("Output reader failed stream=%s", handle)
            self.process_error.emit(ProcessError(handle, str(exc)))
            await stop_process(managed.process, self._config.stop_grace_seconds)
            managed.exit_code = managed.process.returncode

        stopped = managed.state is ProcessState.STOPPING
        if not managed.handshake.done():
            managed.state = ProcessState.FAILED
            logger.error(
                "Agent exited before handshake stream=%s code=%s stderr=%s",
                handle, managed.exit_code, managed.stderr.strip()[:500],
            )
            managed.handshake.set_exception(ProcessExitedBeforeHandshakeError(
                handle, managed.exit_code, managed.stderr,
            ))
        elif managed.state is not ProcessState.FAILED:
            managed.state = ProcessState.EXITED

        if managed.exit_code not in (0, None) and managed.state is ProcessState.EXITED and not stopped:
            self.process_error.emit(ProcessError(
                handle, f"Agent exited with code {managed.exit_code}",
            ))
        logger.info(
            "Agent process closed stream=%s code=%s state=%s",
            handle, managed.exit_code, managed.state.value,
        )
        self._hub.close_session(handle)
        self._registry.unregister(handle)
        self._processes.pop(handle, None)
        self.process_closed.emit(ProcessClosed(handle, managed.exit_code))

    async def _read_stdout(self, managed: _ManagedProcess) -> None:
        while True:
            chunk = await managed.process.read_stdout()
            if not chunk:
                break
            for frame in managed.decoder.feed(chunk):
                self._dispatch(managed, frame)
        for frame in managed.decoder.flush():
            self._dispatch(managed, frame)

    async def _read_stderr(self, managed: _ManagedProcess) -> None:
        while True:
            chunk = await managed.process.read_stderr()
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            managed.stderr_parts.append(text)
            logger.debug("Agent stderr stream=%s: %s", managed.stream_handle, text.rstrip())

    def _dispatch(self, managed: _ManagedProcess, frame: Frame) -> None:
        handle = managed.stream_handle
        if managed.state is ProcessState.FAILED:
            return
        if not frame.ok:
            logger.warning("Undecodable agent output stream=%s: %s", handle, frame.error)
            error = str(frame.error)
            self._hub.broadcast(handle, Error(error=error, stream_handle=handle))
            self.process_error.emit(ProcessError(handle, error))
            return

        event = record_to_event(frame.value)
        if not managed.handshake.done():
            if isinstance(event, Handshake) and event.conversation_id:
                managed.state = ProcessState.RUNNING
                managed.handshake.set_result(event)
                logger.debug(
                    "Handshake stream=%s conversation=%s", handle, event.conversation_id,
                )
            else:
                logger.error(
                    "First record is not a handshake stream=%s type=%s",
                    handle, event.event_type,
                )
                managed.state = ProcessState.FAILED
                managed.handshake.set_exception(InvalidHandshakeError(
                    f"Expected a system init record first, got '{event.event_type}'",
                ))
                return

        self.message.emit(ProcessMessage(handle, event))
        self._hub.broadcast(handle, event)

    def _result(self, stream_handle: str, handshake: Handshake, working_directory: str) -> StartResult:
        return StartResult(
            stream_handle=stream_handle,
            conversation_id=handshake.conversation_id,
            model=handshake.model,
            tools=handshake.tools,
            working_directory=handshake.cwd or working_directory,
            permission_mode=handshake.permission_mode,
            mcp_servers=handshake.mcp_servers,
            api_key_source=handshake.api_key_source,
        )

    async def _record_start_revision(self, conversation_id: str, working_directory: str) -> None:
        if not self._config.record_git_head or self._session_info is None:
            return
        try:
            if self._session_info.get(conversation_id).initial_commit_head:
                return
            revision = await git_info.current_revision(working_directory)
            if revision:
                self._session_info.update(conversation_id, initial_commit_head=revision)
                logger.debug(
                    "Recorded start revision conversation=%s head=%s",
                    conversation_id, revision,
                )
        except Exception:
            logger.warning(
                "Failed to record start revision conversation=%s", conversation_id,
                exc_info=True,
            )
