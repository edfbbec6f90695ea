"""Test the TCP session over real loopback sockets.

Run from the repo root:
    python3 tests/test_session.py
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "python"))

import socket
import threading
import time

from pmlite.decoder import FrameDecoder
from pmlite.messages import (
    DebugMessage, LoopbackMessage, NullMessage, TelemetryMessage, TestDataMessage,
)
from pmlite.session import Session, SessionState

TIMEOUT = 5.0


class PeerServer:
    """Accepts one connection on an ephemeral localhost port."""

    def __init__(self):
        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.bind(("127.0.0.1", 0))
        self.listener.listen(1)
        self.port = self.listener.getsockname()[1]
        self.conn = None
        self._accepted = threading.Event()
        threading.Thread(target=self._accept, daemon=True).start()

    def _accept(self):
        self.conn, _ = self.listener.accept()
        self._accepted.set()

    def wait_client(self):
        assert self._accepted.wait(TIMEOUT), "client never connected"
        return self.conn

    def recv_exactly(self, n):
        buf = bytearray()
        self.conn.settimeout(TIMEOUT)
        while len(buf) < n:
            chunk = self.conn.recv(n - len(buf))
            if not chunk:
                raise ConnectionError("connection closed before receiving all data")
            buf.extend(chunk)
        return bytes(buf)

    def close(self):
        if self.conn is not None:
            self.conn.close()
        self.listener.close()


def wait_for(predicate, timeout=TIMEOUT):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_receive_in_order():
    """Frames split across TCP writes arrive whole and in network order."""
    print("test_receive_in_order...", end="")

    server = PeerServer()
    session = Session()
    received = []
    session.message_received.connect(received.append)
    try:
        session.connect("127.0.0.1", server.port)
        conn = server.wait_client()

        msgs = [LoopbackMessage(i, i, i, i, i) for i in range(20)]
        msgs.append(TelemetryMessage({"mrs_on": True}))
        data = b"".join(m.to_bytes() for m in msgs)
        for i in range(0, len(data), 7):
            conn.sendall(data[i:i + 7])
            time.sleep(0.001)

        assert wait_for(lambda: len(received) == len(msgs))
        assert received == msgs
    finally:
        session.disconnect()
        server.close()

    print(" OK")


def test_framing_warning_event():
    """Garbage on the wire is reported as a warning; the stream continues."""
    print("test_framing_warning_event...", end="")

    server = PeerServer()
    session = Session()
    received, warnings = [], []
    session.message_received.connect(received.append)
    session.warning.connect(warnings.append)
    try:
        session.connect("127.0.0.1", server.port)
        conn = server.wait_client()
        conn.sendall(b"\xFF" + NullMessage().to_bytes())

        assert wait_for(lambda: len(received) == 1)
        assert received == [NullMessage()]
        assert warnings == ["Unknown type 0xFF at offset 0 - skipping byte."]
    finally:
        session.disconnect()
        server.close()

    print(" OK")


def test_concurrent_sends_never_interleave():
    """Frames sent from many threads reach the peer whole, each thread in order."""
    print("test_concurrent_sends_never_interleave...", end="")

    server = PeerServer()
    session = Session()
    n_threads, per_thread = 4, 50
    try:
        session.connect("127.0.0.1", server.port)
        server.wait_client()

        def producer(tid):
            for i in range(per_thread):
                # large frames make a torn write easy to spot
                session.submit(TestDataMessage(bytes([tid, i]) + bytes([tid]) * 400))

        threads = [threading.Thread(target=producer, args=(t,)) for t in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        frame_len = 3 + 402
        data = server.recv_exactly(frame_len * n_threads * per_thread)
        results = FrameDecoder().feed(data)
        assert all(r.warning is None for r in results)
        assert len(results) == n_threads * per_thread

        seen = {t: [] for t in range(n_threads)}
        for r in results:
            payload = r.message.data
            tid, seq = payload[0], payload[1]
            assert payload[2:] == bytes([tid]) * 400
            seen[tid].append(seq)
        for tid in range(n_threads):
            assert seen[tid] == list(range(per_thread))
    finally:
        session.disconnect()
        server.close()

    print(" OK")


def test_send_waits_for_write():
    """send() returns once the frame is on the wire."""
    print("test_send_waits_for_write...", end="")

    server = PeerServer()
    session = Session()
    try:
        session.connect("127.0.0.1", server.port)
        server.wait_client()
        session.send(DebugMessage("ping"), timeout=TIMEOUT)
        assert server.recv_exactly(7) == DebugMessage("ping").to_bytes()
    finally:
        session.disconnect()
        server.close()

    print(" OK")


def test_send_when_disconnected_raises():
    """Sending without a connection raises ConnectionError."""
    print("test_send_when_disconnected_raises...", end="")

    session = Session()
    try:
        session.send(NullMessage())
        assert False, "Should have raised ConnectionError"
    except ConnectionError as exc:
        assert str(exc) == "Not connected."

    print(" OK")


def test_peer_close_emits_events():
    """Remote close gives a warning and a disconnected event."""
    print("test_peer_close_emits_events...", end="")

    server = PeerServer()
    session = Session()
    warnings = []
    gone = threading.Event()
    session.warning.connect(warnings.append)
    session.disconnected.connect(gone.set)
    try:
        session.connect("127.0.0.1", server.port)
        conn = server.wait_client()
        conn.close()

        assert gone.wait(TIMEOUT)
        assert warnings == ["Server closed the connection."]
        assert session.state is SessionState.DISCONNECTED
    finally:
        session.disconnect()
        server.close()

    print(" OK")


def test_local_disconnect():
    """disconnect() is prompt, quiet and leaves the session reusable."""
    print("test_local_disconnect...", end="")

    server = PeerServer()
    session = Session(read_timeout=0.1)
    events = []
    session.connected.connect(lambda: events.append("connected"))
    session.disconnected.connect(lambda: events.append("disconnected"))
    session.warning.connect(lambda text: events.append(("warning", text)))
    session.error.connect(lambda exc: events.append(("error", exc)))
    try:
        session.connect("127.0.0.1", server.port)
        server.wait_client()
        assert session.is_connected

        t0 = time.monotonic()
        session.disconnect()
        assert time.monotonic() - t0 < 2.0
        assert wait_for(lambda: "disconnected" in events)
        assert events == ["connected", "disconnected"]

        try:
            session.submit(NullMessage())
            assert False, "Should have raised ConnectionError"
        except ConnectionError:
            pass
    finally:
        session.disconnect()
        server.close()

    server2 = PeerServer()
    try:
        session.connect("127.0.0.1", server2.port)
        server2.wait_client()
        assert session.is_connected
    finally:
        session.disconnect()
        server2.close()

    print(" OK")


def test_reconnect_after_peer_close():
    """A reconnect right after a peer close survives the old connection's teardown."""
    print("test_reconnect_after_peer_close...", end="")

    server = PeerServer()
    session = Session(read_timeout=0.1)
    handled = threading.Event()
    received = []

    def slow_disconnected():
        time.sleep(0.3)
        handled.set()

    session.disconnected.connect(slow_disconnected)
    session.message_received.connect(received.append)
    server2 = PeerServer()
    try:
        session.connect("127.0.0.1", server.port)
        server.wait_client().close()

        # reconnect while the old reader is still inside its disconnected handler
        assert wait_for(lambda: session.state is SessionState.DISCONNECTED)
        session.connect("127.0.0.1", server2.port)
        conn = server2.wait_client()
        assert not handled.is_set()

        frame = LoopbackMessage(9, 8, 7, 6, 5).to_bytes()
        conn.sendall(frame[:4])
        assert handled.wait(TIMEOUT)
        time.sleep(0.2)
        conn.sendall(frame[4:])

        assert wait_for(lambda: len(received) == 1)
        assert received == [LoopbackMessage(9, 8, 7, 6, 5)]
        assert session.is_connected

        session.send(NullMessage(), timeout=TIMEOUT)
        assert server2.recv_exactly(3) == NullMessage().to_bytes()
    finally:
        session.disconnect()
        server.close()
        server2.close()

    print(" OK")


if __name__ == "__main__":
    print("pmlite session tests")
    print("====================\n")

    test_receive_in_order()
    test_framing_warning_event()
    test_concurrent_sends_never_interleave()
    test_send_waits_for_write()
    test_send_when_disconnected_raises()
    test_peer_close_emits_events()
    test_local_disconnect()
    test_reconnect_after_peer_close()

    print("\nAll session tests passed.")
