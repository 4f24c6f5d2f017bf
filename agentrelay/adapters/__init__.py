"""Adapters package - in-memory state shared by the broker's components.

Holds the typed stream events, the notification signals, the session
status registry, the stream fan-out hub and the permission ledger.
"""
from __future__ import annotations

__all__ = [
    "Signal",
    "PermissionLedger",
    "SessionStatusRegistry",
    "StreamHub",
]

from agentrelay.adapters.event_bus import Signal
from agentrelay.adapters.permission_ledger import PermissionLedger
from agentrelay.adapters.status_registry import SessionStatusRegistry
from agentrelay.adapters.stream_hub import StreamHub
