"""Minimal observer registration used by sessions and the recorder."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Signal:
    """A named event that any number of callbacks can subscribe to.

    Callbacks run on the emitting thread.  A callback that raises is
    logged and does not stop delivery to the others.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._callbacks: list[Callable[..., Any]] = []

    def connect(self, callback: Callable[..., Any]) -> Callable[..., Any]:
        with self._lock:
            self._callbacks.append(callback)
        return callback

    def disconnect(self, callback: Callable[..., Any]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def emit(self, *args: Any) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for cb in callbacks:
            try:
                cb(*args)
            except Exception:
                logger.exception("%s subscriber %r failed", self.name, cb)

    def __len__(self) -> int:
        return len(self._callbacks)
