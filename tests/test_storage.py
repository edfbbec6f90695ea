"""Test capture archive writing and parsing (.bin and .txt).

Run from the repo root:
    python3 tests/test_storage.py
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "python"))

import struct
import tempfile
from datetime import datetime

import numpy as np

from pmlite.messages import (
    DebugMessage, InvalidMessage, LoopbackMessage, NullMessage, StatusMessage,
    TelemetryMessage,
)
from pmlite.storage import (
    FILE_HEADER_SIZE, build_binary, build_text, parse_binary, parse_capture,
    parse_text, write_capture,
)

CAPTURE_MS = 1_700_000_000_200


def make_entries():
    msgs = [
        TelemetryMessage({"itm": 1.5, "mrs_on": False}),
        NullMessage(),
        TelemetryMessage({"itm": 2.5, "mrs_on": True, "isa_temp": -40.0}),
        StatusMessage({"firmware_major": 1, "firmware_build": 77}),
        LoopbackMessage(3, 4, 5, 6, 7),
        DebugMessage("window open"),
    ]
    return [(CAPTURE_MS - 60 + 20 * i, m.to_bytes()) for i, m in enumerate(msgs)], msgs


def test_binary_and_text_agree():
    """Both files of a capture decode to identical timestamps and messages."""
    print("test_binary_and_text_agree...", end="")

    entries, msgs = make_entries()
    with tempfile.TemporaryDirectory() as outdir:
        bin_path, txt_path = write_capture(outdir, entries, CAPTURE_MS, 100, 4000)
        assert bin_path.name.startswith("telemetry_MRS_")
        assert bin_path.stem == txt_path.stem

        b = parse_capture(bin_path)
        t = parse_capture(txt_path)

    for r in (b, t):
        assert r.success, r.error
        assert r.warnings == [], r.warnings
        assert [e.message for e in r.entries] == msgs
        assert r.info.capture_ms == CAPTURE_MS

    assert [e.timestamp_ms for e in b.entries] == [ts for ts, _ in entries]
    assert [e.timestamp_ms for e in t.entries] == [ts for ts, _ in entries]
    assert [e.frame for e in b.entries] == [e.frame for e in t.entries]

    assert b.info.file_type == "BIN" and b.info.version == "v1"
    assert t.info.file_type == "TXT"
    assert t.info.pre_window_ms == 100 and t.info.post_window_ms == 4000
    assert t.info.entry_count == len(entries)

    print(" OK")


def test_binary_layout():
    """Header and entry fields sit where readers expect them."""
    print("test_binary_layout...", end="")

    frame = NullMessage().to_bytes()
    data = build_binary([(CAPTURE_MS, frame)], CAPTURE_MS)
    assert data[:10] == b"PMLITE_TLM"
    assert data[10] == 1
    assert struct.unpack_from("<iq", data, 11) == (1, CAPTURE_MS)
    assert FILE_HEADER_SIZE == 23
    assert struct.unpack_from("<qi", data, 23) == (CAPTURE_MS, 3)
    assert data[35:] == frame

    print(" OK")


def test_text_layout():
    """Header lines and row columns of the text format."""
    print("test_text_layout...", end="")

    frame = LoopbackMessage(1, 2, 3, 4, 5).to_bytes()
    text = build_text([(CAPTURE_MS, frame)], CAPTURE_MS, 100, 4000)
    lines = text.splitlines()

    assert lines[0].startswith("PM-LITE Telemetry Capture - MRS ON @ ")
    assert lines[0].endswith(".200")
    assert lines[1] == "Pre-window  : 100 ms"
    assert lines[2] == "Post-window : 4000 ms"
    assert lines[3] == "Total frames: 1"
    assert lines[4] == lines[6] == "-" * 80
    assert lines[5].startswith("Timestamp")

    tokens = lines[7].split()
    assert tokens[0].endswith(".200")
    assert tokens[1:4] == ["7", "LOOPBACK", "8"]
    assert " ".join(tokens[4:]) == "07 08 00 01 02 03 04 05"

    print(" OK")


def test_text_midnight_rollover():
    """Row times after midnight belong to the day after the capture date."""
    print("test_text_midnight_rollover...", end="")

    capture = datetime(2024, 1, 15, 23, 59, 59, 950000)
    capture_ms = round(capture.timestamp() * 1000)
    entries = [
        (capture_ms - 100, NullMessage().to_bytes()),
        (capture_ms + 150, NullMessage().to_bytes()),  # 00:00:00.100 next day
    ]
    result = parse_text(build_text(entries, capture_ms, 100, 4000))
    assert result.success, result.error
    assert [e.timestamp_ms for e in result.entries] == [ts for ts, _ in entries]
    assert result.entries[1].timestamp.day == 16

    print(" OK")


def test_bad_magic():
    """A file that is not a capture fails as a whole."""
    print("test_bad_magic...", end="")

    data = bytearray(build_binary([], CAPTURE_MS))
    data[:10] = b"NOT_PMLITE"
    result = parse_binary(bytes(data))
    assert not result.success
    assert "Bad magic" in result.error
    assert result.entries == []

    result = parse_binary(b"PMLITE")
    assert not result.success
    assert result.error == "Truncated file header"

    print(" OK")


def test_truncated_entries():
    """A cut-off file keeps the complete entries and warns about the rest."""
    print("test_truncated_entries...", end="")

    entries, msgs = make_entries()
    data = build_binary(entries, CAPTURE_MS)

    result = parse_binary(data[:-4])
    assert result.success
    assert [e.message for e in result.entries] == msgs[:-1]
    assert len(result.warnings) == 1
    assert "expected" in result.warnings[0]

    result = parse_binary(data[:-len(entries[-1][1]) - 6])
    assert result.success
    assert len(result.entries) == len(entries) - 1
    assert result.warnings == [f"Unexpected EOF at entry {len(entries) - 1} of {len(entries)}"]

    print(" OK")


def test_suspicious_length_stops():
    """An absurd frame length ends the scan with a warning."""
    print("test_suspicious_length_stops...", end="")

    entries, _ = make_entries()
    data = bytearray(build_binary(entries[:2], CAPTURE_MS))
    # second entry's frame_len field
    offset = FILE_HEADER_SIZE + 12 + len(entries[0][1]) + 8
    struct.pack_into("<i", data, offset, 1_000_000)
    result = parse_binary(bytes(data))
    assert result.success
    assert len(result.entries) == 1
    assert "suspicious frame length 1000000" in result.warnings[0]

    print(" OK")


def test_text_bad_lines():
    """Bad hex or timestamps in rows are warnings; good rows survive."""
    print("test_text_bad_lines...", end="")

    entries, msgs = make_entries()
    lines = build_text(entries, CAPTURE_MS, 100, 4000).splitlines()
    lines[8] = lines[8].rsplit(" ", 1)[0] + " ZZ"
    lines[9] = "xx:yy" + lines[9][5:]
    lines.append("short line")
    result = parse_text("\n".join(lines))

    assert result.success
    assert [e.message for e in result.entries] == [msgs[0]] + msgs[3:]
    assert any("bad hex" in w for w in result.warnings)
    assert any("bad timestamp" in w for w in result.warnings)
    assert any("too few tokens" in w for w in result.warnings)
    assert any("Header lists 6 frames, read 4" in w for w in result.warnings)

    print(" OK")


def test_text_too_short_and_missing_file():
    """Top-level failures: short text, unknown file, unknown extension."""
    print("test_text_too_short_and_missing_file...", end="")

    result = parse_text("PM-LITE Telemetry Capture - MRS ON @ 2024-01-01 00:00:00.000\n")
    assert not result.success
    assert "too short" in result.error

    result = parse_capture("/nonexistent/capture.bin")
    assert not result.success
    assert result.error.startswith("File not found")

    with tempfile.NamedTemporaryFile(suffix=".csv", delete=False) as f:
        tmppath = f.name
    try:
        result = parse_capture(tmppath)
        assert not result.success
        assert "Unknown extension" in result.error
    finally:
        os.unlink(tmppath)

    print(" OK")


def test_corrupt_frame_decodes_invalid():
    """A stored frame of unknown type comes back as an Invalid message."""
    print("test_corrupt_frame_decodes_invalid...", end="")

    data = build_binary([(CAPTURE_MS, bytes([0x30, 4, 0, 0x01]))], CAPTURE_MS)
    result = parse_binary(data)
    assert result.success
    entry = result.entries[0]
    assert isinstance(entry.message, InvalidMessage)
    assert entry.type_label == "0x30"
    assert entry.size_field == 4
    assert entry.hex_dump == "30 04 00 01"

    print(" OK")


def test_numpy_views():
    """Summary arrays line up with the parsed entries."""
    print("test_numpy_views...", end="")

    entries, msgs = make_entries()
    result = parse_binary(build_binary(entries, CAPTURE_MS))
    ts = result.timestamps()
    assert ts.dtype == np.int64
    np.testing.assert_array_equal(ts, [t for t, _ in entries])
    np.testing.assert_array_equal(result.type_bytes(), [m.type_byte for m in msgs])
    np.testing.assert_array_equal(result.frame_lengths(), [len(f) for _, f in entries])
    assert int(np.diff(ts).min()) == 20

    print(" OK")


if __name__ == "__main__":
    print("pmlite storage tests")
    print("====================\n")

    test_binary_and_text_agree()
    test_binary_layout()
    test_text_layout()
    test_text_midnight_rollover()
    test_bad_magic()
    test_truncated_entries()
    test_suspicious_length_stops()
    test_text_bad_lines()
    test_text_too_short_and_missing_file()
    test_corrupt_frame_decodes_invalid()
    test_numpy_views()

    print("\nAll storage tests passed.")
