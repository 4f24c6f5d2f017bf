"""Agent process orchestration for the session broker."""
from .config import BrokerConfig
from .errors import (
    AgentNotFoundError,
    BrokerError,
    ConversationNotFoundError,
    HandshakeTimeoutError,
    InvalidHandshakeError,
    InvalidRequestError,
    ProcessExitedBeforeHandshakeError,
    ProcessSpawnError,
)
from .process_manager import ConversationConfig, ProcessManager, StartResult

__all__ = [
    "AgentNotFoundError",
    "BrokerConfig",
    "BrokerError",
    "ConversationConfig",
    "ConversationNotFoundError",
    "HandshakeTimeoutError",
    "InvalidHandshakeError",
    "InvalidRequestError",
    "ProcessExitedBeforeHandshakeError",
    "ProcessManager",
    "ProcessSpawnError",
    "StartResult",
]
