"""Data models shared across the broker."""

from .conversation import (
    ConversationChain,
    ConversationContext,
    ConversationDetails,
    ConversationMessage,
    ConversationSummary,
)
from .permission import PermissionRequestRecord, PermissionStatus, UNKNOWN_STREAM_HANDLE

__all__ = [
    "ConversationChain",
    "ConversationContext",
    "ConversationDetails",
    "ConversationMessage",
    "ConversationSummary",
    "PermissionRequestRecord",
    "PermissionStatus",
    "UNKNOWN_STREAM_HANDLE",
]
