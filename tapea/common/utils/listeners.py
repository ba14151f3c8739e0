"""Callback registries used by the state machines to publish state changes."""

import logging
from typing import Callable, List

logger = logging.getLogger(__name__)


class ListenerSet:
    """
    Ordered set of callbacks. ``add`` returns the matching unsubscribe function.

    A failing listener is logged and never prevents the others from running.
    """

    def __init__(self):
        self._listeners: List[Callable] = []

    def add(self, callback: Callable) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def notify(self, *args, **kwargs):
        for callback in list(self._listeners):
            try:
                callback(*args, **kwargs)
            except Exception:
                logger.exception("Listener %r failed", callback)

    def clear(self):
        self._listeners.clear()

    def __len__(self):
        return len(self._listeners)
