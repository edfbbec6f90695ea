#!/usr/bin/env python3
"""Simulate a PM-LITE unit over TCP for client testing.

Serves telemetry frames on localhost:4200 and raises MRS for one frame
every few seconds, so a recording client has something to capture.
Loopback requests from the client are echoed back.

Usage:
    python examples/tcp_source.py

Then in another terminal:
    pmlite live --tcp localhost:4200 --record-dir /tmp/pmlite
or
    pmlite loopback --tcp localhost:4200 --count 20
"""

import math
import random
import socket
import threading
import time

from pmlite.decoder import FrameDecoder
from pmlite.messages import (
    DebugMessage, LoopbackMessage, StatusMessage, TelemetryMessage,
)


def make_telemetry(t: float, mrs: bool) -> TelemetryMessage:
    """One telemetry sample at time t (seconds)."""
    return TelemetryMessage({
        # power: slow sine waves + noise
        "itm": 28.0 + 0.5 * math.sin(2 * math.pi * t / 10.0) + random.gauss(0, 0.05),
        "mbc": 27.5 + 0.3 * math.sin(2 * math.pi * t / 7.0),
        "clock": t % 60.0,
        "twt": 3.3,
        "gyro": 5.0 + random.gauss(0, 0.01),
        "mrs_on": mrs,
        "itl_on": mrs,
        # temperatures drift up slowly
        "tvm_temp": 20.0 + 0.1 * t,
        "gyro_temp": 35.0 + 2.0 * math.sin(2 * math.pi * t / 30.0),
        "gyro_htr": math.sin(2 * math.pi * t / 30.0) < 0,
        "missile_frequency": 9.6,
    })


def echo_loop(conn: socket.socket, lock: threading.Lock, stop: threading.Event):
    """Echo Loopback requests back to the client."""
    decoder = FrameDecoder()
    while not stop.is_set():
        try:
            data = conn.recv(4096)
        except OSError:
            break
        if not data:
            break
        for result in decoder.feed(data):
            if isinstance(result.message, LoopbackMessage):
                with lock:
                    conn.sendall(result.frame)
    stop.set()


def serve(host: str = "0.0.0.0", port: int = 4200, rate_hz: float = 50.0,
          mrs_every: float = 10.0):
    """Accept TCP connections and stream telemetry."""
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    srv.bind((host, port))
    srv.listen(1)
    print(f"Listening on {host}:{port} at {rate_hz} Hz  (Ctrl-C to stop)")

    while True:
        print("Waiting for connection...")
        conn, addr = srv.accept()
        print(f"Client connected: {addr}")
        lock = threading.Lock()
        stop = threading.Event()
        threading.Thread(target=echo_loop, args=(conn, lock, stop), daemon=True).start()

        t0 = time.monotonic()
        seq = 0
        next_mrs = mrs_every
        try:
            with lock:
                conn.sendall(StatusMessage({"firmware_major": 1, "firmware_minor": 2,
                                            "mode": 1}).to_bytes())
                conn.sendall(DebugMessage("simulator ready").to_bytes())
            while not stop.is_set():
                t = time.monotonic() - t0
                mrs = t >= next_mrs
                if mrs:
                    next_mrs += mrs_every
                    print(f"  MRS ON at {t:.1f}s")
                with lock:
                    conn.sendall(make_telemetry(t, mrs).to_bytes())

                seq += 1
                if seq % int(rate_hz) == 0:
                    print(f"  sent {seq} frames ({t:.1f}s)")

                time.sleep(1.0 / rate_hz)
            print("Client disconnected.")
        except (BrokenPipeError, ConnectionResetError):
            print("Client disconnected.")
        except KeyboardInterrupt:
            print("\nShutting down.")
            stop.set()
            conn.close()
            srv.close()
            return
        stop.set()
        conn.close()


if __name__ == "__main__":
    serve()
