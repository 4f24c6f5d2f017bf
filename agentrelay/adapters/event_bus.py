"""Typed, synchronous notification channels.

Each component exposes one ``Signal`` per notification it raises
(``session_started``, ``permission_request``, ...). Listeners are called
synchronously, in registration order, inside the operation that fires
the signal.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], None]


class Signal(Generic[T]):
    """Observer list for a single kind of notification."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: list[Callable[[T], None]] = []

    def connect(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register *listener*; returns a function that disconnects it."""
        self._listeners.append(listener)

        def _disconnect() -> None:
            self.disconnect(listener)

        return _disconnect

    def disconnect(self, listener: Callable[[T], None]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def emit(self, payload: T) -> None:
        """Deliver *payload* to every listener.

        A failing listener is logged and skipped; it never breaks the
        operation that fired the signal or the remaining listeners.
        """
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                logger.exception("Listener for %s failed", self.name)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)

    def __repr__(self) -> str:
        return f"Signal({self.name!r}, listeners={len(self._listeners)})"
