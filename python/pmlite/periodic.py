"""Keep-alive style sender: one configurable message on a fixed interval."""

from __future__ import annotations

import logging
import threading
import time

from .events import Signal
from .messages import Message

logger = logging.getLogger(__name__)


class PeriodicSender:
    """Send ``message`` through ``session`` every ``interval`` seconds.

    ``message`` and ``interval`` may be changed while running; the change
    applies from the next tick.  A tick with no message is skipped.  Send
    failures are reported on ``error`` and the loop keeps going.

    Events: status(text), error(exception)
    """

    DEFAULT_INTERVAL = 30.0

    def __init__(self, session, message: Message | None = None,
                 interval: float = DEFAULT_INTERVAL):
        self.session = session
        self.message = message
        self.interval = interval
        self.status = Signal("status")
        self.error = Signal("error")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @interval.setter
    def interval(self, value: float) -> None:
        self._interval = value if value > 0 else self.DEFAULT_INTERVAL

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the loop, replacing any previous one."""
        self.stop()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, args=(self._stop,),
                                        name="pmlite-periodic", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 1.0) -> None:
        """Stop the loop.  Returns once the thread has exited (or timeout)."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self, stop: threading.Event) -> None:
        self.status.emit(f"[PERIODIC] Started - interval {self.interval:g}s")
        while not stop.wait(self.interval):
            message = self.message
            if message is None:
                self.status.emit("[PERIODIC] Skipped - no message configured")
                continue
            try:
                self.session.send(message)
            except OSError as exc:
                logger.warning("periodic send failed: %s", exc)
                self.error.emit(exc)
                continue
            self.status.emit(f"[PERIODIC] Sent {message.label} at "
                             f"{time.strftime('%H:%M:%S')}")
        self.status.emit("[PERIODIC] Stopped")
