"""Exception hierarchy for the session broker.

Each failure that is surfaced to a caller has its own class with a
stable ``code`` (rendered by the web layer) and an HTTP ``status``.
Failures that affect one unit of many (one line, one client, one file)
are absorbed where they happen and never reach this module.
"""
from __future__ import annotations


class BrokerError(Exception):
    """Base exception for all broker errors."""

    code: str = "BROKER_ERROR"
    status: int = 500

    def __init__(self, message: str, *, code: str | None = None, status: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


class ProcessSpawnError(BrokerError):
    """The agent process could not be started."""

    code = "PROCESS_SPAWN_FAILED"


class AgentNotFoundError(ProcessSpawnError):
    """The agent executable does not exist or is not on PATH."""

    code = "AGENT_NOT_FOUND"

    def __init__(self, executable: str):
        self.executable = executable
        super().__init__(
            f"Agent CLI '{executable}' not found. Ensure it is installed and on PATH."
        )


class ProcessExitedBeforeHandshakeError(BrokerError):
    """The agent process exited before it emitted its handshake record.

    This usually means bad credentials or an invalid resume target, so
    callers fail fast instead of retrying.
    """

    code = "PROCESS_EXITED_EARLY"

    def __init__(self, stream_handle: str, exit_code: int | None, stderr: str = ""):
        self.stream_handle = stream_handle
        self.exit_code = exit_code
        self.stderr = stderr
        message = "Agent process exited before sending its handshake record"
        if stderr:
            message += f". Error output: {stderr.strip()}"
        if exit_code is not None:
            message += f". Exit code: {exit_code}"
        super().__init__(message)


class HandshakeTimeoutError(BrokerError):
    """The agent process never produced a handshake record."""

    code = "HANDSHAKE_TIMEOUT"

    def __init__(self, stream_handle: str, timeout_seconds: float, stderr: str = ""):
        self.stream_handle = stream_handle
        self.timeout_seconds = timeout_seconds
        self.stderr = stderr
        message = f"Timed out after {timeout_seconds}s waiting for the agent handshake"
        if stderr:
            message += f". Error output: {stderr.strip()}"
        super().__init__(message)


class InvalidHandshakeError(BrokerError):
    """The first record was not a usable handshake."""

    code = "INVALID_HANDSHAKE"


class ConversationNotFoundError(BrokerError):
    """A durable conversation could not be located."""

    code = "CONVERSATION_NOT_FOUND"
    status = 404

    def __init__(self, conversation_id: str, detail: str | None = None):
        self.conversation_id = conversation_id
        super().__init__(detail or f"Conversation {conversation_id} not found")


class InvalidRequestError(BrokerError):
    """A request to the broker was malformed."""

    code = "INVALID_REQUEST"
    status = 400
