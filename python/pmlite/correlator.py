"""Send-then-await-reply correlation for protocol self-tests.

The waiter for a reply is always armed before the request goes out, so a
peer that answers faster than the send call returns is still matched.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent import futures
from dataclasses import dataclass, field
from typing import Callable, Protocol

from .events import Signal
from .messages import LoopbackMessage, Message, MessageType

logger = logging.getLogger(__name__)


class ExchangeCancelled(Exception):
    """Raised by ReplyWaiter.wait() when the waiter was cancelled."""


class MessageSource(Protocol):
    """What the correlator needs from a session."""

    message_received: Signal
    disconnected: Signal

    def send(self, message: Message, timeout: float | None = None) -> None: ...


class ReplyWaiter:
    """One-shot handoff of the first message accepted by ``predicate``.

    Completion happens at most once; offers after completion or after
    ``cancel()`` are ignored.
    """

    def __init__(self, predicate: Callable[[Message], bool]):
        self._predicate = predicate
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._message: Message | None = None
        self._cancelled = False

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def offer(self, message: Message) -> bool:
        """Try to complete the waiter.  Returns True if this call did."""
        if self._done.is_set() or not self._predicate(message):
            return False
        with self._lock:
            if self._done.is_set():
                return False
            self._message = message
            self._done.set()
        return True

    def cancel(self) -> bool:
        with self._lock:
            if self._done.is_set():
                return False
            self._cancelled = True
            self._done.set()
        return True

    def wait(self, timeout: float | None = None) -> Message | None:
        """Block for the reply.  None on timeout."""
        if not self._done.wait(timeout):
            return None
        if self._cancelled:
            raise ExchangeCancelled()
        return self._message


class Correlator:
    """Matches inbound messages to a single armed waiter."""

    def __init__(self, session: MessageSource):
        self._session = session
        self._lock = threading.Lock()
        self._waiter: ReplyWaiter | None = None
        session.message_received.connect(self._on_message)
        session.disconnected.connect(self.cancel)

    def arm(self, predicate: Callable[[Message], bool]) -> ReplyWaiter:
        """Install a waiter, discarding any previous one."""
        waiter = ReplyWaiter(predicate)
        with self._lock:
            previous, self._waiter = self._waiter, waiter
        if previous is not None:
            previous.cancel()
        return waiter

    def discard(self, waiter: ReplyWaiter) -> None:
        with self._lock:
            if self._waiter is waiter:
                self._waiter = None
        waiter.cancel()

    def cancel(self) -> None:
        """Release whatever waiter is pending, immediately."""
        with self._lock:
            waiter, self._waiter = self._waiter, None
        if waiter is not None:
            waiter.cancel()

    def exchange(self, request: Message, expected_type: int,
                 timeout: float, abort: threading.Event | None = None) -> Message | None:
        """Send ``request`` and return the next message of ``expected_type``.

        Returns None on timeout.  Raises ExchangeCancelled if cancelled
        (or if ``abort`` is already set), and lets send errors propagate.
        """
        waiter = self.arm(lambda m: m.msg_type == expected_type)
        if abort is not None and abort.is_set():
            waiter.cancel()
        try:
            if not waiter.done:
                self._session.send(request, timeout=timeout)
            return waiter.wait(timeout)
        finally:
            self.discard(waiter)

    def close(self) -> None:
        self.cancel()
        self._session.message_received.disconnect(self._on_message)
        self._session.disconnected.disconnect(self.cancel)

    def _on_message(self, message: Message) -> None:
        with self._lock:
            waiter = self._waiter
        if waiter is not None and waiter.offer(message):
            with self._lock:
                if self._waiter is waiter:
                    self._waiter = None


# ---------------------------------------------------------------------------
# Loopback self-test
# ---------------------------------------------------------------------------

class Outcome(enum.Enum):
    PASSED = "pass"
    FAILED = "fail"
    TIMED_OUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class ExchangeOutcome:
    index: int
    outcome: Outcome
    sent: LoopbackMessage
    received: Message | None = None
    mismatches: list[str] = field(default_factory=list)
    error: str | None = None
    elapsed: float = 0.0


@dataclass
class LoopbackSummary:
    outcomes: list[ExchangeOutcome] = field(default_factory=list)

    def _count(self, outcome: Outcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome is outcome)

    @property
    def passed(self) -> int:
        return self._count(Outcome.PASSED)

    @property
    def failed(self) -> int:
        return self._count(Outcome.FAILED)

    @property
    def timed_out(self) -> int:
        return self._count(Outcome.TIMED_OUT)

    @property
    def cancelled(self) -> int:
        return self._count(Outcome.CANCELLED)

    def __str__(self) -> str:
        return (f"{len(self.outcomes)} exchanges: {self.passed} passed, "
                f"{self.failed} failed, {self.timed_out} timed out, "
                f"{self.cancelled} cancelled")


LOOPBACK_FIELDS = ("count", "data0", "data1", "data2", "data3")


class LoopbackTest:
    """Repeated loopback round trips with field-by-field verification."""

    def __init__(self, correlator: Correlator, timeout: float = 1.0,
                 interval: float = 0.0):
        self.correlator = correlator
        self.timeout = timeout
        self.interval = interval
        self._stop = threading.Event()

    @staticmethod
    def make_request(index: int) -> LoopbackMessage:
        return LoopbackMessage(
            index & 0xFF,
            (index + 0x11) & 0xFF,
            (index + 0x22) & 0xFF,
            (index + 0x33) & 0xFF,
            (index + 0x44) & 0xFF,
        )

    def stop(self) -> None:
        """Stop issuing requests and release a pending wait immediately."""
        self._stop.set()
        self.correlator.cancel()

    def run(self, iterations: int,
            on_outcome: Callable[[ExchangeOutcome], None] | None = None) -> LoopbackSummary:
        self._stop.clear()
        summary = LoopbackSummary()

        for index in range(iterations):
            if self._stop.is_set():
                break
            result = self._exchange_once(index)
            summary.outcomes.append(result)
            if on_outcome is not None:
                on_outcome(result)
            if result.outcome is Outcome.CANCELLED or result.error is not None:
                break
            if self.interval > 0 and index < iterations - 1:
                self._stop.wait(self.interval)

        logger.info("loopback test: %s", summary)
        return summary

    def _exchange_once(self, index: int) -> ExchangeOutcome:
        request = self.make_request(index)
        t0 = time.monotonic()
        try:
            reply = self.correlator.exchange(
                request, MessageType.LOOPBACK, self.timeout, abort=self._stop)
        except ExchangeCancelled:
            return ExchangeOutcome(index, Outcome.CANCELLED, request,
                                   elapsed=time.monotonic() - t0)
        except (OSError, futures.TimeoutError) as exc:
            # futures.TimeoutError is not an OSError before 3.11
            logger.warning("loopback %d: send failed: %r", index, exc)
            return ExchangeOutcome(index, Outcome.FAILED, request,
                                   error=str(exc) or "send timed out",
                                   elapsed=time.monotonic() - t0)
        elapsed = time.monotonic() - t0

        if reply is None:
            logger.info("loopback %d: no reply within %.3fs", index, self.timeout)
            return ExchangeOutcome(index, Outcome.TIMED_OUT, request, elapsed=elapsed)

        mismatches = [name for name in LOOPBACK_FIELDS
                      if getattr(reply, name) != getattr(request, name)]
        outcome = Outcome.FAILED if mismatches else Outcome.PASSED
        return ExchangeOutcome(index, outcome, request, reply, mismatches,
                               elapsed=elapsed)
