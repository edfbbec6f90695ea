"""Capture archive files: binary (.bin) and human-readable text (.txt).

Binary format (little-endian):
  [magic: "PMLITE_TLM" 10 bytes]
  [version: uint8]
  [entry_count: int32]
  [capture_time: int64 Unix ms]
  then per entry:
  [timestamp: int64 Unix ms][frame_len: int32][frame bytes]

Text format:
  PM-LITE Telemetry Capture - MRS ON @ yyyy-mm-dd HH:MM:SS.fff
  Pre-window  : 100 ms
  Post-window : 4000 ms
  Total frames: N
  ----------
  column header
  ----------
  HH:MM:SS.fff  typeByte  TYPENAME  frameLen  hex bytes...

Both files are written from the same list of (timestamp_ms, frame) pairs.
Parsing never raises: a broken header fails the whole parse, a broken
entry or line becomes a warning next to whatever entries were recovered.
Times in the text file are local time.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Sequence

import numpy as np

from .decoder import decode_frame
from .messages import Message, hex_dump, type_label

logger = logging.getLogger(__name__)

MAGIC = b"PMLITE_TLM"
VERSION = 1
FILE_HEADER_FMT = "<10sBiq"
FILE_HEADER_SIZE = struct.calcsize(FILE_HEADER_FMT)  # 23
ENTRY_HEADER_FMT = "<qi"
ENTRY_HEADER_SIZE = struct.calcsize(ENTRY_HEADER_FMT)  # 12
MAX_FRAME_LEN = 0xFFFF

TEXT_TITLE = "PM-LITE Telemetry Capture - MRS ON @ "
TEXT_HEADER_LINES = 7
SEPARATOR = "-" * 80


@dataclass(frozen=True)
class CaptureEntry:
    timestamp_ms: int
    frame: bytes
    message: Message

    @property
    def timestamp(self) -> datetime:
        return _local(self.timestamp_ms)

    @property
    def type_byte(self) -> int:
        return self.frame[0] if self.frame else 0

    @property
    def size_field(self) -> int:
        if len(self.frame) < 3:
            return 0
        return self.frame[1] | (self.frame[2] << 8)

    @property
    def type_label(self) -> str:
        return type_label(self.type_byte)

    @property
    def hex_dump(self) -> str:
        return hex_dump(self.frame)


@dataclass
class CaptureInfo:
    path: str = ""
    file_type: str = ""  # "BIN" or "TXT"
    capture_ms: int = 0
    entry_count: int = 0
    version: str = ""
    pre_window_ms: float | None = None
    post_window_ms: float | None = None

    @property
    def capture_time(self) -> datetime:
        return _local(self.capture_ms)


@dataclass
class CaptureParseResult:
    success: bool
    error: str = ""
    info: CaptureInfo = field(default_factory=CaptureInfo)
    entries: list[CaptureEntry] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def fail(cls, error: str, path: str = "") -> CaptureParseResult:
        logger.warning("capture parse failed: %s", error)
        return cls(success=False, error=error, info=CaptureInfo(path=path))

    def timestamps(self) -> np.ndarray:
        """Entry timestamps (Unix ms) as an int64 array."""
        return np.array([e.timestamp_ms for e in self.entries], dtype=np.int64)

    def type_bytes(self) -> np.ndarray:
        return np.array([e.type_byte for e in self.entries], dtype=np.uint8)

    def frame_lengths(self) -> np.ndarray:
        return np.array([len(e.frame) for e in self.entries], dtype=np.int32)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _local(ms: int) -> datetime:
    """Unix milliseconds to a naive local datetime, exact to the millisecond."""
    return datetime.fromtimestamp(ms // 1000) + timedelta(milliseconds=ms % 1000)


def _to_ms(dt: datetime) -> int:
    return round(dt.timestamp() * 1000)


def format_time(ms: int) -> str:
    dt = _local(ms)
    return f"{dt:%H:%M:%S}.{dt.microsecond // 1000:03d}"


def _format_datetime(ms: int) -> str:
    dt = _local(ms)
    return f"{dt:%Y-%m-%d %H:%M:%S}.{dt.microsecond // 1000:03d}"


def file_stamp(ms: int) -> str:
    """yyyymmdd_HHMMSS_fff, used in capture file names."""
    dt = _local(ms)
    return f"{dt:%Y%m%d_%H%M%S}_{dt.microsecond // 1000:03d}"


def make_entry(timestamp_ms: int, frame: bytes) -> CaptureEntry:
    return CaptureEntry(timestamp_ms, bytes(frame), decode_frame(frame))


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

def build_binary(entries: Sequence[tuple[int, bytes]], capture_ms: int) -> bytes:
    """Serialise (timestamp_ms, frame) pairs to the binary capture format."""
    parts = [struct.pack(FILE_HEADER_FMT, MAGIC, VERSION, len(entries), capture_ms)]
    for ts, frame in entries:
        parts.append(struct.pack(ENTRY_HEADER_FMT, ts, len(frame)))
        parts.append(bytes(frame))
    return b"".join(parts)


def build_text(entries: Sequence[tuple[int, bytes]], capture_ms: int,
               pre_window_ms: float, post_window_ms: float) -> str:
    """Render (timestamp_ms, frame) pairs in the text capture format."""
    lines = [
        f"{TEXT_TITLE}{_format_datetime(capture_ms)}",
        f"Pre-window  : {pre_window_ms:g} ms",
        f"Post-window : {post_window_ms:g} ms",
        f"Total frames: {len(entries)}",
        SEPARATOR,
        f"{'Timestamp':<14}{'Type':<7}{'Name':<13}{'Size':<7}Hex Bytes",
        SEPARATOR,
    ]
    for ts, frame in entries:
        type_byte = frame[0] if frame else 0
        lines.append(f"{format_time(ts)}  {type_byte:<6} "
                     f"{type_label(type_byte):<12} {len(frame):<6} {hex_dump(frame)}")
    return "\n".join(lines) + "\n"


def write_capture(output_dir: str | Path, entries: Sequence[tuple[int, bytes]],
                  capture_ms: int, pre_window_ms: float,
                  post_window_ms: float) -> tuple[Path, Path]:
    """Write the .bin/.txt pair for one capture.  Returns both paths."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    stem = f"telemetry_MRS_{file_stamp(capture_ms)}"
    bin_path = out / f"{stem}.bin"
    txt_path = out / f"{stem}.txt"

    # build both in memory first, then one write each
    bin_path.write_bytes(build_binary(entries, capture_ms))
    txt_path.write_text(
        build_text(entries, capture_ms, pre_window_ms, post_window_ms),
        encoding="utf-8")
    return bin_path, txt_path


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

def parse_capture(path: str | Path) -> CaptureParseResult:
    """Parse a .bin or .txt capture file, chosen by extension."""
    path = Path(path)
    if not path.exists():
        return CaptureParseResult.fail(f"File not found: {path}", str(path))

    ext = path.suffix.lower()
    try:
        if ext == ".bin":
            return parse_binary(path.read_bytes(), str(path))
        if ext == ".txt":
            return parse_text(path.read_text(encoding="utf-8"), str(path))
    except (OSError, UnicodeDecodeError) as exc:
        return CaptureParseResult.fail(f"Read error: {exc}", str(path))
    return CaptureParseResult.fail(
        f"Unknown extension '{ext}' - expected .bin or .txt", str(path))


def parse_binary(data: bytes, path: str = "") -> CaptureParseResult:
    if len(data) < FILE_HEADER_SIZE:
        return CaptureParseResult.fail("Truncated file header", path)

    magic, version, entry_count, capture_ms = struct.unpack_from(
        FILE_HEADER_FMT, data, 0)
    if magic != MAGIC:
        return CaptureParseResult.fail(
            f"Bad magic {magic!r} - not a PM-LITE capture file", path)
    if entry_count < 0:
        return CaptureParseResult.fail(f"Bad entry count {entry_count}", path)

    warnings: list[str] = []
    if version != VERSION:
        warnings.append(f"Unsupported version {version}, reading as v{VERSION}")

    info = CaptureInfo(path=path, file_type="BIN", capture_ms=capture_ms,
                       entry_count=entry_count, version=f"v{version}")
    entries: list[CaptureEntry] = []

    pos = FILE_HEADER_SIZE
    for i in range(entry_count):
        if pos + ENTRY_HEADER_SIZE > len(data):
            warnings.append(f"Unexpected EOF at entry {i} of {entry_count}")
            break
        ts, frame_len = struct.unpack_from(ENTRY_HEADER_FMT, data, pos)
        pos += ENTRY_HEADER_SIZE

        # Entries are not self-synchronising: a bad length ends the scan
        if frame_len < 0 or frame_len > MAX_FRAME_LEN:
            warnings.append(f"Entry {i}: suspicious frame length {frame_len}, stopping")
            break
        frame = data[pos:pos + frame_len]
        if len(frame) != frame_len:
            warnings.append(f"Entry {i}: expected {frame_len} bytes, got {len(frame)}")
            break
        pos += frame_len
        entries.append(make_entry(ts, frame))

    if len(entries) == entry_count and pos < len(data):
        warnings.append(f"{len(data) - pos} trailing bytes after last entry")

    return CaptureParseResult(success=True, info=info, entries=entries,
                              warnings=warnings)


def _parse_window(line: str) -> float | None:
    _, _, value = line.partition(":")
    try:
        return float(value.strip().split()[0])
    except (ValueError, IndexError):
        return None


def parse_text(text: str, path: str = "") -> CaptureParseResult:
    lines = text.splitlines()
    if len(lines) < TEXT_HEADER_LINES:
        return CaptureParseResult.fail(
            "File too short - not a valid PM-LITE capture text file", path)

    title = lines[0]
    if not title.startswith(TEXT_TITLE):
        return CaptureParseResult.fail(f"Bad title line: {title!r}", path)
    try:
        capture_dt = datetime.strptime(title[len(TEXT_TITLE):].strip(),
                                       "%Y-%m-%d %H:%M:%S.%f")
    except ValueError:
        return CaptureParseResult.fail(f"Bad capture time in title: {title!r}", path)

    warnings: list[str] = []
    pre_ms = _parse_window(lines[1])
    post_ms = _parse_window(lines[2])
    if pre_ms is None or post_ms is None:
        warnings.append("Could not read pre/post window lengths")

    entry_count = 0
    if lines[3].startswith("Total frames:"):
        try:
            entry_count = int(lines[3].split(":", 1)[1].strip())
        except ValueError:
            warnings.append(f"Bad frame count line: {lines[3]!r}")
    else:
        warnings.append("Missing 'Total frames:' line")

    info = CaptureInfo(path=path, file_type="TXT", capture_ms=_to_ms(capture_dt),
                       entry_count=entry_count, version="n/a",
                       pre_window_ms=pre_ms, post_window_ms=post_ms)
    entries: list[CaptureEntry] = []

    for lineno in range(TEXT_HEADER_LINES, len(lines)):
        line = lines[lineno].strip()
        if not line:
            continue
        # time, type byte, type name, frame length, then the hex bytes
        tokens = line.split(maxsplit=4)
        if len(tokens) < 5:
            warnings.append(f"Line {lineno + 1}: too few tokens, skipping")
            continue

        try:
            tod = datetime.strptime(tokens[0], "%H:%M:%S.%f")
        except ValueError:
            warnings.append(f"Line {lineno + 1}: bad timestamp {tokens[0]!r}, skipping")
            continue
        entry_dt = datetime.combine(capture_dt.date(), tod.time())
        # windows are seconds long; a large gap means midnight was crossed
        if entry_dt - capture_dt > timedelta(hours=12):
            entry_dt -= timedelta(days=1)
        elif capture_dt - entry_dt > timedelta(hours=12):
            entry_dt += timedelta(days=1)

        try:
            frame = bytes.fromhex(tokens[4])
        except ValueError:
            warnings.append(f"Line {lineno + 1}: bad hex {tokens[4]!r}, skipping")
            continue

        if tokens[3].isdigit() and int(tokens[3]) != len(frame):
            warnings.append(f"Line {lineno + 1}: length column says {tokens[3]}, "
                            f"hex has {len(frame)} bytes")

        entries.append(make_entry(_to_ms(entry_dt), frame))

    if entry_count and entry_count != len(entries):
        warnings.append(f"Header lists {entry_count} frames, read {len(entries)}")

    return CaptureParseResult(success=True, info=info, entries=entries,
                              warnings=warnings)
