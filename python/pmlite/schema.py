"""Fixed-offset field layouts for Telemetry and Status content.

The concrete offsets belong to the firmware interface document.  The
layouts below are placeholders that keep every field inside the frame
sizes listed in ``decoder.DEFAULT_SPECS``; swap in a real ``Layout`` when
the firmware table is known.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any


class FieldType(IntEnum):
    U8 = 0
    U16 = 1
    U32 = 2
    I8 = 3
    I16 = 4
    I32 = 5
    F32 = 6
    BOOL = 7


# struct format chars indexed by FieldType (little-endian)
_TYPE_FMT = {
    FieldType.U8: "B",
    FieldType.U16: "H",
    FieldType.U32: "I",
    FieldType.I8: "b",
    FieldType.I16: "h",
    FieldType.I32: "i",
    FieldType.F32: "f",
    FieldType.BOOL: "?",
}


@dataclass(frozen=True)
class FieldDef:
    name: str
    offset: int
    type: FieldType

    @property
    def size(self) -> int:
        return struct.calcsize("<" + _TYPE_FMT[self.type])

    @property
    def default(self) -> Any:
        if self.type == FieldType.BOOL:
            return False
        if self.type == FieldType.F32:
            return 0.0
        return 0


class Layout:
    """An ordered set of fields at fixed byte offsets within message content."""

    def __init__(self, name: str, fields: list[FieldDef]):
        self.name = name
        self.fields: tuple[FieldDef, ...] = tuple(fields)
        self.size = max((f.offset + f.size for f in self.fields), default=0)

    def defaults(self) -> dict[str, Any]:
        return {f.name: f.default for f in self.fields}

    def decode(self, content: bytes) -> dict[str, Any]:
        """Decode content into a dict of field name -> value.

        A field is read only when all of its bytes are present; otherwise
        it keeps its default value.
        """
        result = self.defaults()
        for f in self.fields:
            if f.offset + f.size > len(content):
                continue
            result[f.name] = struct.unpack_from(
                "<" + _TYPE_FMT[f.type], content, f.offset)[0]
        return result

    def encode(self, values: dict[str, Any]) -> bytes:
        """Pack values into a zero-filled buffer of ``self.size`` bytes."""
        buf = bytearray(self.size)
        for f in self.fields:
            val = values.get(f.name, f.default)
            if f.type == FieldType.BOOL:
                val = bool(val)
            elif f.type != FieldType.F32:
                val = int(val)
            struct.pack_into("<" + _TYPE_FMT[f.type], buf, f.offset, val)
        return bytes(buf)


def _floats(start: int, names: list[str]) -> list[FieldDef]:
    return [FieldDef(n, start + 4 * i, FieldType.F32) for i, n in enumerate(names)]


def _flags(start: int, names: list[str]) -> list[FieldDef]:
    return [FieldDef(n, start + i, FieldType.BOOL) for i, n in enumerate(names)]


# Placeholder: 89 content bytes, matching the 92-byte Telemetry frame.
TELEMETRY_LAYOUT = Layout("telemetry", [
    # power
    *_floats(0, ["itm", "mbc", "clock", "twt", "gyro"]),
    # launch sequence
    *_flags(20, ["mrs_on", "itl_on", "sls_on", "mir_on", "awy_on", "lsf_on"]),
    # temperatures
    *_floats(26, ["tvm_temp", "mmp_temp", "pllo_temp", "delay_temp",
                  "gyro_temp", "isa_temp", "cas_temp"]),
    # heaters
    *_flags(54, ["tvm_htr", "mmp_htr", "pllo_htr", "delay_htr",
                 "gyro_htr", "isa_htr", "cas_htr"]),
    # one shots
    *_floats(61, ["one_tvm", "one_mmp", "one_cas", "one_gas", "one_pafu"]),
    # missile
    *_floats(81, ["missile_frequency", "missile_address"]),
])

# Placeholder: 7 content bytes, matching the 10-byte Status frame.
STATUS_LAYOUT = Layout("status", [
    FieldDef("firmware_major", 0, FieldType.U8),
    FieldDef("firmware_minor", 1, FieldType.U8),
    FieldDef("firmware_patch", 2, FieldType.U8),
    FieldDef("firmware_build", 3, FieldType.U16),
    FieldDef("mode", 5, FieldType.U8),
    FieldDef("serial", 6, FieldType.U8),
])

STATUS_MODES = ("Standby", "Active")
