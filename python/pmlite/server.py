"""Loopback/burst TCP server for exercising a PM-LITE client.

Each connected client gets a reader thread and one ``OutboundChannel``.
Bytes received are echoed back unchanged.  A read of exactly five bytes
starting ``[10, 5, 0]`` instead starts a burst: a run of fixed-size
chunks carrying an incrementing byte counter, spread over
``burst_duration`` seconds.  Echo and burst data go through the same
channel, so neither can split a chunk of the other on the wire.
"""

from __future__ import annotations

import logging
import socket
import threading
import time

from .messages import hex_dump
from .session import OutboundChannel
from .transport import TCPTransport

logger = logging.getLogger(__name__)

TRIGGER_PREFIX = bytes([10, 5, 0])
TRIGGER_LENGTH = 5


def is_trigger(data: bytes) -> bool:
    return len(data) == TRIGGER_LENGTH and data.startswith(TRIGGER_PREFIX)


def burst_chunks(total_bytes: int, chunk_size: int) -> list[bytes]:
    """Split ``total_bytes`` of a wrapping 0..255 counter into chunks."""
    counter = bytes(i & 0xFF for i in range(total_bytes))
    return [counter[i:i + chunk_size] for i in range(0, total_bytes, chunk_size)]


class _Client:
    def __init__(self, server: LoopbackServer, sock: socket.socket, addr):
        self.server = server
        self.addr = addr
        self.transport = TCPTransport.from_socket(sock, read_timeout=0.5)
        self.channel = OutboundChannel(self.transport, name="pmlite-server-writer",
                                       on_error=self._on_write_error)
        self.closed = threading.Event()
        self.thread = threading.Thread(target=self._run, name=f"pmlite-client-{addr[1]}",
                                       daemon=True)

    def _run(self) -> None:
        try:
            while not self.closed.is_set():
                data = self.transport.read(4096)
                if data is None:
                    continue
                if not data:
                    logger.info("client %s disconnected", self.addr)
                    break
                logger.debug("received %d byte(s): %s", len(data), hex_dump(data))
                if is_trigger(data):
                    logger.info("burst trigger from %s", self.addr)
                    threading.Thread(target=self._burst, name="pmlite-burst",
                                     daemon=True).start()
                else:
                    self.channel.put(data)
        except OSError as exc:
            if not self.closed.is_set():
                logger.warning("client %s read error: %s", self.addr, exc)
        finally:
            self.close()
            self.server._forget(self)

    def _burst(self) -> None:
        chunks = burst_chunks(self.server.burst_bytes, self.server.chunk_size)
        delay = 0.0
        if self.server.burst_duration > 0 and len(chunks) > 1:
            delay = self.server.burst_duration / (len(chunks) - 1)

        t0 = time.monotonic()
        sent = 0
        for i, chunk in enumerate(chunks):
            try:
                self.channel.put(chunk)
            except ConnectionError:
                return  # client went away
            sent += len(chunk)
            if delay and i < len(chunks) - 1 and self.closed.wait(delay):
                return
        logger.info("burst complete: %d bytes in %.0f ms", sent,
                    (time.monotonic() - t0) * 1000)

    def _on_write_error(self, exc: BaseException) -> None:
        if not self.closed.is_set():
            logger.warning("client %s write error: %s", self.addr, exc)

    def close(self, drain: bool = True) -> None:
        if self.closed.is_set():
            return
        self.closed.set()
        if drain:
            # queued echo/burst data goes out before the socket does
            self.channel.close(cancel_pending=False, wait=True)
        else:
            self.channel.close(cancel_pending=True)
        self.transport.close()


class LoopbackServer:
    """Echo server with a triggerable burst mode."""

    DEFAULT_PORT = 9000

    def __init__(self, host: str = "0.0.0.0", port: int = DEFAULT_PORT, *,
                 burst_bytes: int = 4200, burst_duration: float = 5.0,
                 chunk_size: int = 64):
        self.burst_bytes = burst_bytes
        self.burst_duration = burst_duration
        self.chunk_size = chunk_size

        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind((host, port))
        self._sock.listen(5)
        self._lock = threading.Lock()
        self._clients: list[_Client] = []
        self._shutdown = threading.Event()

    @property
    def address(self) -> tuple[str, int]:
        return self._sock.getsockname()[:2]

    def serve_forever(self) -> None:
        """Accept clients until ``shutdown()`` is called."""
        logger.info("listening on %s:%d", *self.address)
        self._sock.settimeout(0.5)
        while not self._shutdown.is_set():
            try:
                conn, addr = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._shutdown.is_set():
                    break
                raise
            conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            logger.info("client connected: %s", addr)
            client = _Client(self, conn, addr)
            with self._lock:
                self._clients.append(client)
            client.thread.start()

    def _forget(self, client: _Client) -> None:
        with self._lock:
            if client in self._clients:
                self._clients.remove(client)

    def shutdown(self) -> None:
        """Stop accepting and disconnect every client."""
        self._shutdown.set()
        self._sock.close()
        with self._lock:
            clients = list(self._clients)
        for client in clients:
            client.close(drain=False)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
