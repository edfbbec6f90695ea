"""pmlite command-line tool."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import threading

import numpy as np

from .correlator import Correlator, ExchangeOutcome, LoopbackTest
from .decoder import DEFAULT_SPECS, FrameDecoder
from .messages import MESSAGE_CLASSES, Message, NullMessage, type_label
from .periodic import PeriodicSender
from .recorder import TelemetryRecorder
from .schema import STATUS_LAYOUT, TELEMETRY_LAYOUT
from .server import LoopbackServer
from .session import Session
from .storage import CaptureEntry, format_time, parse_capture
from .transport import FileTransport


def _format_message(message: Message) -> str:
    return f"{message.label:<10s} {message.summary()}"


def _format_entry(entry: CaptureEntry) -> str:
    return f"[{format_time(entry.timestamp_ms)}] {_format_message(entry.message)}"


def _parse_hostport(value: str) -> tuple[str, int]:
    host, _, port = value.rpartition(":")
    if not host or not port.isdigit():
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {value!r}")
    return host, int(port)


def _load(path: str):
    result = parse_capture(path)
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        sys.exit(1)
    for w in result.warnings:
        print(f"warning: {w}", file=sys.stderr)
    return result


def cmd_dump(args: argparse.Namespace) -> None:
    """Dump a capture file to stdout."""
    result = _load(args.file)
    for entry in result.entries:
        print(_format_entry(entry))


def _format_duration(ms: int) -> str:
    if ms < 1_000:
        return f"{ms}ms"
    s = ms / 1_000
    if s < 60:
        return f"{s:.2f}s"
    return f"{s / 60:.1f}m"


def cmd_info(args: argparse.Namespace) -> None:
    """Print summary info about a capture file."""
    file_size = os.path.getsize(args.file)
    result = _load(args.file)
    info = result.info

    print(f"File:       {args.file}")
    print(f"Format:     {info.file_type} {info.version}")
    print(f"Size:       {file_size:,} bytes")
    print(f"Captured:   {info.capture_time:%Y-%m-%d %H:%M:%S}")
    if info.pre_window_ms is not None:
        print(f"Windows:    pre {info.pre_window_ms:g} ms, post {info.post_window_ms:g} ms")
    print(f"Frames:     {len(result.entries):,} (header says {info.entry_count:,})")

    ts = result.timestamps()
    if ts.size == 0:
        print("Time range: (empty)")
        return

    print(f"Time range: {format_time(int(ts.min()))} - {format_time(int(ts.max()))}")
    print(f"Duration:   {_format_duration(int(ts.max() - ts.min()))}")
    print(f"Trigger at: +{int(info.capture_ms - ts.min())} ms from first frame")

    types, counts = np.unique(result.type_bytes(), return_counts=True)
    lengths = result.frame_lengths()
    print(f"\nTypes ({len(types)}):")
    print(f"  {'Type':>4s}  {'Name':<10s}  {'Frames':>8s}  {'Avg size':>8s}")
    print(f"  {'-' * 4}  {'-' * 10}  {'-' * 8}  {'-' * 8}")
    for t, n in zip(types, counts):
        avg = lengths[result.type_bytes() == t].mean()
        print(f"  {int(t):4d}  {type_label(int(t)):<10s}  {int(n):8,}  {avg:8.1f}")


def cmd_schema(args: argparse.Namespace) -> None:
    """Print the frame size table and the fixed field layouts."""
    print("Frame sizes (including 3-byte header):")
    for t, spec in sorted(DEFAULT_SPECS.items()):
        print(f"  [{int(t):2d}] {type_label(t):<10s} {spec.description}")
    print()
    for layout in (TELEMETRY_LAYOUT, STATUS_LAYOUT):
        print(f"{layout.name} content ({layout.size} bytes):")
        for f in layout.fields:
            print(f"    {f.name:24s} offset={f.offset:3d} size={f.size} type={f.type.name}")
        print()


def cmd_replay(args: argparse.Namespace) -> None:
    """Run a raw byte capture through the stream decoder."""
    transport = FileTransport(args.file)
    decoder = FrameDecoder(DEFAULT_SPECS, MESSAGE_CLASSES)
    frames = 0
    try:
        while data := transport.read(4096):
            for result in decoder.feed(data):
                if result.message is None:
                    print(f"warning: {result.warning}")
                else:
                    frames += 1
                    print(_format_message(result.message))
    finally:
        transport.close()
    print(f"{frames} frames, {decoder.resyncs} resyncs, "
          f"{decoder.buffered} bytes left over", file=sys.stderr)


def cmd_live(args: argparse.Namespace) -> None:
    """Live decode from a TCP server, optionally recording MRS captures."""
    host, port = args.tcp
    session = Session()
    done = threading.Event()

    session.message_received.connect(lambda m: print(_format_message(m)))
    session.warning.connect(lambda text: print(f"warning: {text}", file=sys.stderr))
    session.error.connect(lambda exc: print(f"error: {exc}", file=sys.stderr))
    session.disconnected.connect(done.set)

    recorder = None
    if args.record_dir:
        recorder = TelemetryRecorder(args.record_dir, pre_window_ms=args.pre_ms,
                                     post_window_ms=args.post_ms)
        for signal in (recorder.recording_started, recorder.recording_stopped,
                       recorder.recording_completed):
            signal.connect(lambda text: print(f"[REC] {text}", file=sys.stderr))
        recorder.error.connect(lambda exc: print(f"[REC] error: {exc}", file=sys.stderr))
        session.message_received.connect(recorder.feed)

    keepalive = None
    if args.keepalive:
        keepalive = PeriodicSender(session, NullMessage(), interval=args.keepalive)
        keepalive.error.connect(lambda exc: print(f"keepalive: {exc}", file=sys.stderr))

    try:
        session.connect(host, port)
    except OSError as exc:
        print(f"Error: cannot connect to {host}:{port}: {exc}", file=sys.stderr)
        sys.exit(1)

    if keepalive is not None:
        keepalive.start()
    try:
        while not done.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        if keepalive is not None:
            keepalive.stop()
        session.disconnect()
        if recorder is not None:
            # let an in-flight capture finish writing
            recorder.wait_idle(timeout=args.post_ms / 1000 + 2.0)
            recorder.close()


def cmd_loopback(args: argparse.Namespace) -> None:
    """Loopback round-trip self-test against a server."""
    host, port = args.tcp
    session = Session()
    try:
        session.connect(host, port)
    except OSError as exc:
        print(f"Error: cannot connect to {host}:{port}: {exc}", file=sys.stderr)
        sys.exit(1)

    def report(o: ExchangeOutcome) -> None:
        line = f"#{o.index:<4d} {o.outcome.value:<9s} {o.elapsed * 1000:7.1f} ms"
        if o.mismatches:
            line += "  mismatch: " + ", ".join(o.mismatches)
        if o.error:
            line += f"  {o.error}"
        print(line)

    correlator = Correlator(session)
    test = LoopbackTest(correlator, timeout=args.timeout, interval=args.interval)
    try:
        summary = test.run(args.count, on_outcome=report)
    except KeyboardInterrupt:
        test.stop()
        sys.exit(130)
    finally:
        correlator.close()
        session.disconnect()

    print(summary)
    if summary.passed != args.count:
        sys.exit(1)


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the loopback/burst test server."""
    server = LoopbackServer(args.host, args.port, burst_bytes=args.burst_bytes,
                            burst_duration=args.burst_duration)
    print(f"Listening on {args.host}:{server.address[1]}  (Ctrl-C to stop)")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(prog="pmlite", description="PM-LITE telemetry tool")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="More logging (-v info, -vv debug)")
    sub = parser.add_subparsers(dest="command")

    # dump
    p_dump = sub.add_parser("dump", help="Dump a capture file")
    p_dump.add_argument("file", help="Path to .bin or .txt capture")

    # info
    p_info = sub.add_parser("info", help="Show summary info about a capture file")
    p_info.add_argument("file", help="Path to .bin or .txt capture")

    # schema
    sub.add_parser("schema", help="Show frame sizes and field layouts")

    # replay
    p_replay = sub.add_parser("replay", help="Decode a raw byte stream file")
    p_replay.add_argument("file", help="Path to raw stream bytes")

    # live
    p_live = sub.add_parser("live", help="Live decode from a TCP server")
    p_live.add_argument("--tcp", required=True, type=_parse_hostport,
                        help="TCP host:port to connect to")
    p_live.add_argument("--record-dir", help="Write MRS captures into this directory")
    p_live.add_argument("--pre-ms", type=float, default=TelemetryRecorder.PRE_WINDOW_MS,
                        help="Pre-trigger window in ms")
    p_live.add_argument("--post-ms", type=float, default=TelemetryRecorder.POST_WINDOW_MS,
                        help="Post-trigger window in ms")
    p_live.add_argument("--keepalive", type=float, default=0.0,
                        help="Send a Null message every N seconds (0 = off)")

    # loopback
    p_loop = sub.add_parser("loopback", help="Loopback round-trip self-test")
    p_loop.add_argument("--tcp", required=True, type=_parse_hostport,
                        help="TCP host:port to connect to")
    p_loop.add_argument("--count", type=int, default=10, help="Number of exchanges")
    p_loop.add_argument("--timeout", type=float, default=1.0,
                        help="Reply timeout per exchange in seconds")
    p_loop.add_argument("--interval", type=float, default=0.0,
                        help="Pause between exchanges in seconds")

    # serve
    p_serve = sub.add_parser("serve", help="Run the loopback/burst test server")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=LoopbackServer.DEFAULT_PORT)
    p_serve.add_argument("--burst-bytes", type=int, default=4200)
    p_serve.add_argument("--burst-duration", type=float, default=5.0,
                         help="Spread a burst over this many seconds")

    args = parser.parse_args()
    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(level=level, format="%(name)s: %(message)s")

    commands = {
        "dump": cmd_dump,
        "info": cmd_info,
        "schema": cmd_schema,
        "replay": cmd_replay,
        "live": cmd_live,
        "loopback": cmd_loopback,
        "serve": cmd_serve,
    }
    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
