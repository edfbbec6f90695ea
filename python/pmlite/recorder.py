"""MRS-triggered telemetry capture.

Every message fed in lands in a short rolling pre-buffer.  A Telemetry
message whose ``mrs_on`` flag rises (off -> on) while idle starts a
recording: the pre-buffer is snapshotted and messages from the next
``post_window_ms`` are collected.  A polling timer, independent of
message arrival, ends the recording once the post window has elapsed and
hands the merged, time-ordered entries to a writer thread, which saves a
``.bin``/``.txt`` pair via ``pmlite.storage``.
"""

from __future__ import annotations

import collections
import logging
import threading
import time
from pathlib import Path
from typing import Callable

from .events import Signal
from .messages import Message, TelemetryMessage
from .storage import format_time, write_capture

logger = logging.getLogger(__name__)


def mrs_on(message: Message) -> bool | None:
    """The MRS flag of a Telemetry message, None for other types."""
    if isinstance(message, TelemetryMessage):
        return message.mrs_on
    return None


class TelemetryRecorder:
    """Records a window of traffic around each MRS ON transition.

    Events (``pmlite.events.Signal``):
      recording_started(text), recording_stopped(text),
      recording_completed(text), error(exception)

    ``clock`` returns seconds since the epoch (``time.time`` by default).
    With ``poll_interval=None`` no timer is started and the caller drives
    stop detection by calling ``poll()``.
    """

    PRE_WINDOW_MS = 100.0
    POST_WINDOW_MS = 4000.0
    POLL_INTERVAL = 0.1

    def __init__(self, output_dir: str | Path, *,
                 pre_window_ms: float = PRE_WINDOW_MS,
                 post_window_ms: float = POST_WINDOW_MS,
                 clock: Callable[[], float] = time.time,
                 poll_interval: float | None = POLL_INTERVAL,
                 trigger: Callable[[Message], bool | None] = mrs_on):
        self.output_dir = Path(output_dir)
        self.pre_window_ms = pre_window_ms
        self.post_window_ms = post_window_ms
        self.poll_interval = poll_interval
        self._clock = clock
        self._trigger = trigger

        self.recording_started = Signal("recording_started")
        self.recording_stopped = Signal("recording_stopped")
        self.recording_completed = Signal("recording_completed")
        self.error = Signal("error")

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pre: collections.deque[tuple[int, bytes]] = collections.deque()
        self._snapshot: list[tuple[int, bytes]] = []
        self._post: list[tuple[int, bytes]] = []
        self._recording = False
        self._trigger_ms = 0
        self._last_flag = False
        self._pending_writes = 0
        self._timer: threading.Timer | None = None
        self._closed = False

    @property
    def is_recording(self) -> bool:
        return self._recording

    def now_ms(self) -> int:
        return int(round(self._clock() * 1000))

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def feed(self, message: Message, timestamp_ms: int | None = None) -> None:
        """Push one received message.  Suitable as a ``message_received`` slot."""
        ts = self.now_ms() if timestamp_ms is None else timestamp_ms
        frame = message.wire_bytes()
        flag = self._trigger(message)
        started = None

        with self._lock:
            self._pre.append((ts, frame))
            while self._pre and ts - self._pre[0][0] > self.pre_window_ms:
                self._pre.popleft()

            if self._recording:
                if ts <= self._trigger_ms + self.post_window_ms:
                    self._post.append((ts, frame))
            elif flag and not self._last_flag and not self._closed:
                # trigger frame is part of the snapshot, not the post list
                self._recording = True
                self._trigger_ms = ts
                self._snapshot = list(self._pre)
                self._post = []
                started = f"MRS ON detected at {format_time(ts)} - recording started."
                self._start_timer()

            if flag is not None:
                self._last_flag = flag

        if started is not None:
            logger.info(started)
            self.recording_started.emit(started)

    # ------------------------------------------------------------------
    # Stop detection
    # ------------------------------------------------------------------

    def _start_timer(self) -> None:
        if self.poll_interval is None:
            return
        self._timer = threading.Timer(self.poll_interval, self._on_timer)
        self._timer.daemon = True
        self._timer.start()

    def _on_timer(self) -> None:
        if not self.poll():
            with self._lock:
                if self._recording and not self._closed:
                    self._start_timer()

    def poll(self) -> bool:
        """End the recording if the post window has elapsed.

        Returns True if this call stopped a recording.
        """
        now = self.now_ms()
        with self._lock:
            if not self._recording or now - self._trigger_ms < self.post_window_ms:
                return False
            entries = sorted(self._snapshot + self._post, key=lambda e: e[0])
            capture_ms = self._trigger_ms
            self._recording = False
            self._snapshot = []
            self._post = []
            self._timer = None
            self._pending_writes += 1

        text = f"Recording stopped at {format_time(now)} - writing files."
        logger.info(text)
        self.recording_stopped.emit(text)

        writer = threading.Thread(target=self._write, args=(entries, capture_ms),
                                  name="pmlite-capture-writer", daemon=True)
        writer.start()
        return True

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _write(self, entries: list[tuple[int, bytes]], capture_ms: int) -> None:
        try:
            bin_path, txt_path = write_capture(
                self.output_dir, entries, capture_ms,
                self.pre_window_ms, self.post_window_ms)
        except OSError as exc:
            logger.warning("capture write failed: %s", exc)
            self.error.emit(exc)
        else:
            text = (f"Saved {len(entries)} frames -> "
                    f"{bin_path.name} + {txt_path.name}")
            logger.info(text)
            self.recording_completed.emit(text)
        finally:
            with self._idle:
                self._pending_writes -= 1
                self._idle.notify_all()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no recording is active and every write has finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._recording or self._pending_writes:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                if self.poll_interval is not None:
                    # the timer ends recordings without notifying; re-check
                    remaining = (self.poll_interval if remaining is None
                                 else min(remaining, self.poll_interval))
                self._idle.wait(remaining)
        return True

    def close(self) -> None:
        """Stop the polling timer.  A recording in progress is dropped."""
        with self._lock:
            self._closed = True
            timer, self._timer = self._timer, None
            self._recording = False
            self._snapshot = []
            self._post = []
            self._idle.notify_all()
        if timer is not None:
            timer.cancel()
