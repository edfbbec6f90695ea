"""Transport adapters for PM-LITE byte streams."""

from __future__ import annotations

import select
import socket
from typing import Protocol


class Transport(Protocol):
    """Abstract transport interface.

    ``read`` returns ``b""`` once the stream has ended and ``None`` when no
    data arrived within the transport's read timeout.
    """

    def read(self, n: int) -> bytes | None: ...
    def write(self, data: bytes) -> None: ...
    def close(self) -> None: ...


class TCPTransport:
    """TCP stream transport (client mode, or wrapping an accepted socket)."""

    def __init__(self, host: str, port: int, timeout: float = 5.0,
                 read_timeout: float | None = 0.5):
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self._init(sock, read_timeout)

    @classmethod
    def from_socket(cls, sock: socket.socket,
                    read_timeout: float | None = 0.5) -> TCPTransport:
        self = cls.__new__(cls)
        self._init(sock, read_timeout)
        return self

    def _init(self, sock: socket.socket, read_timeout: float | None) -> None:
        self._sock = sock
        # Blocking socket: only reads time out, writes wait for the peer.
        self._sock.settimeout(None)
        self._read_timeout = read_timeout
        self._closed = False

    @property
    def peer(self) -> tuple[str, int]:
        return self._sock.getpeername()

    def read(self, n: int) -> bytes | None:
        try:
            ready, _, _ = select.select([self._sock], [], [], self._read_timeout)
            if not ready:
                return None
            return self._sock.recv(n)
        except (OSError, ValueError):
            if self._closed:
                return b""  # closed locally while waiting
            raise

    def write(self, data: bytes) -> None:
        self._sock.sendall(data)

    def close(self) -> None:
        """Close the socket, waking any thread blocked in read or write."""
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # peer already gone
        self._sock.close()


class FileTransport:
    """Read from / write to a raw binary file (for replay or logging)."""

    def __init__(self, path: str, mode: str = "rb"):
        self._f = open(path, mode)

    def read(self, n: int) -> bytes | None:
        return self._f.read(n) or b""

    def write(self, data: bytes) -> None:
        self._f.write(data)

    def close(self) -> None:
        self._f.close()
