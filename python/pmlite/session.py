"""TCP session: receive loop, ordered single-writer send path, lifecycle events.

One session owns one connection.  Bytes read from the transport go
through a ``FrameDecoder`` on the receive thread and come out as
``message_received`` / ``warning`` events in network order.  Every
outbound frame, from any thread, is queued on one ``OutboundChannel``
whose single worker writes them in submission order, so two frames can
never interleave on the wire.
"""

from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from typing import Mapping

from .decoder import DEFAULT_SPECS, FrameDecoder, MessageSpec
from .events import Signal
from .messages import MESSAGE_CLASSES, Message, encode_message
from .transport import TCPTransport, Transport

logger = logging.getLogger(__name__)


class OutboundChannel:
    """FIFO of outbound byte chunks drained by exactly one writer thread.

    Any number of producers may call ``put``; each chunk is written whole
    before the next one starts.  After a failed write nothing further is
    written (a partial frame may already be on the wire).
    """

    def __init__(self, transport: Transport, name: str = "pmlite-writer",
                 on_error=None):
        self._transport = transport
        self._on_error = on_error
        self._failed: BaseException | None = None
        self._executor = ThreadPoolExecutor(max_workers=1,
                                            thread_name_prefix=name)

    def put(self, data: bytes) -> Future:
        """Queue data; the returned future resolves once it is written."""
        try:
            return self._executor.submit(self._write, bytes(data))
        except RuntimeError:
            raise ConnectionError("outbound channel closed") from None

    def _write(self, data: bytes) -> int:
        if self._failed is not None:
            raise ConnectionError("outbound channel failed") from self._failed
        try:
            self._transport.write(data)
        except OSError as exc:
            self._failed = exc
            if self._on_error is not None:
                self._on_error(exc)
            raise
        return len(data)

    def close(self, cancel_pending: bool = True, wait: bool = False) -> None:
        """Stop accepting data; optionally drop whatever is still queued."""
        self._executor.shutdown(wait=wait, cancel_futures=cancel_pending)


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class _Connection:
    """State owned by one connection.  A reconnect gets a fresh instance,
    so a reader that is still tearing down never touches the new one."""

    def __init__(self, transport: Transport, decoder: FrameDecoder):
        self.transport = transport
        self.decoder = decoder
        self.stop = threading.Event()
        self.channel: OutboundChannel | None = None
        self.reader: threading.Thread | None = None


class Session:
    """Client side of a PM-LITE connection.

    Events (``pmlite.events.Signal``):
      message_received(message), warning(text), error(exception),
      connected(), disconnected()
    """

    READ_SIZE = 4096

    def __init__(self, specs: Mapping[int, MessageSpec] = DEFAULT_SPECS,
                 classes: Mapping[int, type[Message]] = MESSAGE_CLASSES, *,
                 read_size: int = READ_SIZE, connect_timeout: float = 5.0,
                 read_timeout: float = 0.5):
        self.read_size = read_size
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout

        self.message_received = Signal("message_received")
        self.warning = Signal("warning")
        self.error = Signal("error")
        self.connected = Signal("connected")
        self.disconnected = Signal("disconnected")

        self._specs = specs
        self._classes = classes
        self._lock = threading.Lock()
        self._state = SessionState.DISCONNECTED
        self._conn: _Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    def connect(self, host: str, port: int) -> None:
        """Open a TCP connection and start receiving."""
        transport = TCPTransport(host, port, timeout=self.connect_timeout,
                                 read_timeout=self.read_timeout)
        logger.info("connected to %s:%d", host, port)
        self.open(transport)

    def open(self, transport: Transport) -> None:
        """Start a session over an already-open transport."""
        with self._lock:
            if self._state is not SessionState.DISCONNECTED:
                transport.close()
                raise ConnectionError("session already connected")
            conn = _Connection(transport, FrameDecoder(self._specs, self._classes))
            conn.channel = OutboundChannel(
                transport, on_error=lambda exc: self._on_write_error(conn, exc))
            conn.reader = threading.Thread(
                target=self._receive_loop, args=(conn,),
                name="pmlite-reader", daemon=True)
            self._conn = conn
            self._state = SessionState.CONNECTED
        conn.reader.start()
        self.connected.emit()

    def disconnect(self, timeout: float | None = 2.0) -> None:
        """Close the connection, cancelling queued sends and pending reads."""
        with self._lock:
            conn = self._conn
            if conn is None:
                return
            closing = self._state is SessionState.CONNECTED
            if closing:
                self._state = SessionState.DISCONNECTING
                conn.channel.close(cancel_pending=True)
        if closing:
            conn.stop.set()
            conn.transport.close()
        if conn.reader is not threading.current_thread():
            conn.reader.join(timeout)

    def close(self) -> None:
        self.disconnect()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def submit(self, message: Message) -> Future:
        """Queue a message for sending; the future resolves when written."""
        frame = encode_message(message)
        with self._lock:
            if self._state is not SessionState.CONNECTED or self._conn is None:
                raise ConnectionError("Not connected.")
            return self._conn.channel.put(frame)

    def send(self, message: Message, timeout: float | None = None) -> None:
        """Send a message and wait until its frame has been written."""
        future = self.submit(message)
        try:
            future.result(timeout)
        except CancelledError:
            raise ConnectionError("send cancelled by disconnect") from None

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def _receive_loop(self, conn: _Connection) -> None:
        try:
            while not conn.stop.is_set():
                try:
                    data = conn.transport.read(self.read_size)
                except OSError as exc:
                    if not conn.stop.is_set():
                        logger.warning("read failed: %s", exc)
                        self.error.emit(exc)
                    break

                if data is None:
                    continue  # read timeout, re-check the stop flag
                if not data:
                    if not conn.stop.is_set():
                        self.warning.emit("Server closed the connection.")
                    break

                for result in conn.decoder.feed(data):
                    if result.message is None:
                        self.warning.emit(result.warning)
                    else:
                        self.message_received.emit(result.message)
        finally:
            self._finish(conn)

    def _on_write_error(self, conn: _Connection, exc: BaseException) -> None:
        if conn.stop.is_set():
            return  # socket closed under an in-flight write by disconnect()
        logger.warning("write failed: %s", exc)
        self.error.emit(exc)
        conn.stop.set()
        conn.transport.close()

    def _finish(self, conn: _Connection) -> None:
        """Tear down after the receive loop exits.  Runs on the reader thread.

        Everything belonging to ``conn`` is released before the session is
        marked DISCONNECTED, so a reconnect can start right after.
        """
        conn.stop.set()
        conn.channel.close(cancel_pending=True)
        conn.transport.close()
        conn.decoder.reset()
        with self._lock:
            if self._conn is conn:
                self._conn = None
                self._state = SessionState.DISCONNECTED
        logger.info("disconnected")
        self.disconnected.emit()
