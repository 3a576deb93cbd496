"""
Event channel used to publish tool progress and final responses.

Each channel is owned by the component that emits on it, so subscription
lifetime follows that component rather than a process-wide bus.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E")


class EventChannel(Generic[E]):
    """Typed observer list with synchronous delivery."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._callbacks: list[Callable[[E], None]] = []

    def subscribe(self, callback: Callable[[E], None]) -> Callable[[], None]:
        """Register a listener and return a function that removes it."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def emit(self, event: E) -> None:
        """Deliver an event to every listener within the caller's stack."""
        # Copy so listeners may unsubscribe while being notified
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error("Error in %s listener: %s", self.name, e)

    def __len__(self) -> int:
        return len(self._callbacks)
