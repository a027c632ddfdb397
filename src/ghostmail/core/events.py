"""Publish/subscribe helper used for change notifications."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Generic, TypeVar

LOGGER = logging.getLogger(__name__)

E = TypeVar("E")


class ChangeNotifier(Generic[E]):
    """Deliver events to registered callbacks, isolating subscriber failures."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[E], None]] = []

    def subscribe(self, callback: Callable[[E], None]) -> Callable[[], None]:
        """Register ``callback``; the returned function unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: E) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Subscriber of %s failed", self._name)

    def __len__(self) -> int:
        return len(self._subscribers)


__all__ = ["ChangeNotifier"]
