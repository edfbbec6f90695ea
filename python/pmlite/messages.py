"""PM-LITE message types and their wire encoding.

Every message travels as one frame::

    [type: u8][size: u16 LE][content: size - 3 bytes]

``size`` includes the 3-byte header.  Each message class knows how to
build itself from content bytes (``from_content``) and how to produce
them again (``content``); framing and dispatch live in ``decoder``.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from types import MappingProxyType
from typing import Any, ClassVar

from .schema import Layout, STATUS_LAYOUT, STATUS_MODES, TELEMETRY_LAYOUT

HEADER_FMT = "<BH"
HEADER_SIZE = struct.calcsize(HEADER_FMT)  # 3
MAX_FRAME_SIZE = 0xFFFF


class MessageType(IntEnum):
    INVALID = 0
    START = 1
    TELEMETRY = 2
    DEBUG = 3
    REQUEST = 4
    STATUS = 5
    TEST_DATA = 6
    LOOPBACK = 7
    CONFIGURATION = 8
    NULL = 9


TYPE_LABELS = MappingProxyType({
    MessageType.INVALID: "INVALID",
    MessageType.START: "START",
    MessageType.TELEMETRY: "TELEMETRY",
    MessageType.DEBUG: "DEBUG",
    MessageType.REQUEST: "REQUEST",
    MessageType.STATUS: "STATUS",
    MessageType.TEST_DATA: "TESTDATA",
    MessageType.LOOPBACK: "LOOPBACK",
    MessageType.CONFIGURATION: "CONFIG",
    MessageType.NULL: "NULL",
})


def type_label(type_byte: int) -> str:
    """Short upper-case name for a type byte, hex for unknown types."""
    return TYPE_LABELS.get(type_byte, f"0x{type_byte:02X}")


def build_frame(type_byte: int, content: bytes) -> bytes:
    """Prefix content with a header whose size matches the payload."""
    size = HEADER_SIZE + len(content)
    if size > MAX_FRAME_SIZE:
        raise ValueError(f"frame too large: {size} bytes")
    return struct.pack(HEADER_FMT, type_byte, size) + bytes(content)


def hex_dump(data: bytes) -> str:
    return " ".join(f"{b:02X}" for b in data)


@dataclass
class Message:
    """Base class for all decoded/constructed messages.

    ``raw`` holds the content bytes the message was decoded from (or, for
    constructed messages, its encoded content).  ``frame`` is the complete
    frame as received, empty for constructed messages.  Neither is part of
    equality: two messages are equal when their decoded fields are.
    """

    msg_type: ClassVar[MessageType] = MessageType.INVALID

    raw: bytes = field(default=b"", repr=False, compare=False, kw_only=True)
    frame: bytes = field(default=b"", repr=False, compare=False, kw_only=True)

    def __post_init__(self) -> None:
        if not self.raw:
            self.raw = self.content()

    @classmethod
    def from_content(cls, content: bytes) -> Message:
        raise NotImplementedError

    def content(self) -> bytes:
        raise NotImplementedError

    @property
    def type_byte(self) -> int:
        return int(self.msg_type)

    @property
    def size(self) -> int:
        return HEADER_SIZE + len(self.content())

    @property
    def label(self) -> str:
        return type_label(self.type_byte)

    def to_bytes(self) -> bytes:
        return build_frame(self.type_byte, self.content())

    def wire_bytes(self) -> bytes:
        """The received frame unchanged, or the encoding if none was received."""
        return self.frame or self.to_bytes()

    def summary(self) -> str:
        return f"Raw: {hex_dump(self.raw)}"


def encode_message(message: Message) -> bytes:
    """Serialise a message to its wire frame."""
    return message.to_bytes()


# -- 0 ------------------------------------------------------------------------

@dataclass
class InvalidMessage(Message):
    """Anything that could not be decoded, including unknown type bytes.

    When decoded from a frame, ``raw`` is the whole frame, header included.
    """

    msg_type: ClassVar[MessageType] = MessageType.INVALID

    reason: str = ""
    original_type: int = 0

    @classmethod
    def from_content(cls, content: bytes) -> InvalidMessage:
        return cls("Received type 0", raw=build_frame(0, content))

    def content(self) -> bytes:
        return self.raw[HEADER_SIZE:]

    @property
    def type_byte(self) -> int:
        return self.original_type

    def summary(self) -> str:
        return f"INVALID - {self.reason}"


# -- 1 ------------------------------------------------------------------------

@dataclass
class StartMessage(Message):
    msg_type: ClassVar[MessageType] = MessageType.START

    data: bytes = b""

    @classmethod
    def from_content(cls, content: bytes) -> StartMessage:
        return cls(bytes(content), raw=bytes(content))

    def content(self) -> bytes:
        return bytes(self.data)

    def summary(self) -> str:
        return f"Raw content: {hex_dump(self.data)}"


# -- 2 ------------------------------------------------------------------------

@dataclass
class _LayoutMessage(Message):
    """Message whose content is a fixed-offset field layout."""

    layout: ClassVar[Layout]

    fields: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        unknown = set(self.fields) - set(self.layout.defaults())
        if unknown:
            raise ValueError(
                f"unknown {self.layout.name} fields: {sorted(unknown)}")
        self.fields = {**self.layout.defaults(), **self.fields}
        super().__post_init__()

    @classmethod
    def from_content(cls, content: bytes):
        return cls(cls.layout.decode(content), raw=bytes(content))

    def content(self) -> bytes:
        return self.layout.encode(self.fields)

    def __getitem__(self, name: str) -> Any:
        return self.fields[name]


@dataclass
class TelemetryMessage(_LayoutMessage):
    msg_type: ClassVar[MessageType] = MessageType.TELEMETRY
    layout: ClassVar[Layout] = TELEMETRY_LAYOUT

    @property
    def mrs_on(self) -> bool:
        return bool(self.fields.get("mrs_on", False))

    def summary(self) -> str:
        f = self.fields
        mrs = "ON" if f["mrs_on"] else "OFF"
        itl = "ON" if f["itl_on"] else "OFF"
        return (f"ITM={f['itm']:.2f}  MBC={f['mbc']:.2f}  "
                f"CLK={f['clock']:.2f}  MRS={mrs}  ITL={itl}")


# -- 3 ------------------------------------------------------------------------

@dataclass
class DebugMessage(Message):
    msg_type: ClassVar[MessageType] = MessageType.DEBUG

    text: str = ""

    @classmethod
    def from_content(cls, content: bytes) -> DebugMessage:
        text = bytes(content).decode("ascii", errors="replace").rstrip("\x00")
        return cls(text, raw=bytes(content))

    def content(self) -> bytes:
        return self.text.encode("ascii", errors="replace")

    def summary(self) -> str:
        return self.text


# -- 4 ------------------------------------------------------------------------

@dataclass
class RequestMessage(Message):
    msg_type: ClassVar[MessageType] = MessageType.REQUEST

    requested_type: int = 0

    @classmethod
    def from_content(cls, content: bytes) -> RequestMessage:
        requested = content[0] if len(content) > 0 else 0
        return cls(requested, raw=bytes(content))

    def content(self) -> bytes:
        return bytes([self.requested_type])

    def summary(self) -> str:
        return f"Requested={type_label(self.requested_type)}"


# -- 5 ------------------------------------------------------------------------

@dataclass
class StatusMessage(_LayoutMessage):
    msg_type: ClassVar[MessageType] = MessageType.STATUS
    layout: ClassVar[Layout] = STATUS_LAYOUT

    @property
    def firmware_version(self) -> str:
        f = self.fields
        return f"{f['firmware_major']}.{f['firmware_minor']}.{f['firmware_patch']}"

    @property
    def mode_text(self) -> str:
        mode = self.fields["mode"]
        return STATUS_MODES[mode] if mode < len(STATUS_MODES) else "Unknown"

    def summary(self) -> str:
        return (f"FW={self.firmware_version}  Build={self.fields['firmware_build']}"
                f"  Mode={self.mode_text}")


# -- 6 ------------------------------------------------------------------------

@dataclass
class TestDataMessage(Message):
    __test__ = False  # not a pytest class

    msg_type: ClassVar[MessageType] = MessageType.TEST_DATA

    data: bytes = b""

    @classmethod
    def from_content(cls, content: bytes) -> TestDataMessage:
        return cls(bytes(content), raw=bytes(content))

    def content(self) -> bytes:
        return bytes(self.data)

    def summary(self) -> str:
        return f"{len(self.data)} bytes: {hex_dump(self.data[:16])}"


# -- 7 ------------------------------------------------------------------------

@dataclass
class LoopbackMessage(Message):
    """Content layout: [count][data0][data1][data2][data3]."""

    msg_type: ClassVar[MessageType] = MessageType.LOOPBACK

    count: int = 0
    data0: int = 0
    data1: int = 0
    data2: int = 0
    data3: int = 0

    @classmethod
    def from_content(cls, content: bytes) -> LoopbackMessage:
        values = [content[i] if i < len(content) else 0 for i in range(5)]
        return cls(*values, raw=bytes(content))

    def content(self) -> bytes:
        return bytes([self.count, self.data0, self.data1, self.data2, self.data3])

    def summary(self) -> str:
        return (f"Count={self.count}  D0=0x{self.data0:02X}  D1=0x{self.data1:02X}  "
                f"D2=0x{self.data2:02X}  D3=0x{self.data3:02X}")


# -- 8 ------------------------------------------------------------------------

BIT_PAC_FLIGHT = 0
BIT_PAC_MISSILE = 1
BIT_TERM_SAFED = 2
BIT_TERM_ARMED = 3
BIT_DUD_OVERRIDE = 4
BIT_RESET = 5


@dataclass
class ConfigurationMessage(Message):
    """Content layout: [reserved=0][flags], flags packed one bit per switch.

    bit 0 PacFlight, 1 PacMissile, 2 TermSafed, 3 TermArmed,
    4 DudOverride, 5 Reset; bits 6-7 unused.
    """

    msg_type: ClassVar[MessageType] = MessageType.CONFIGURATION

    pac_flight: bool = False
    pac_missile: bool = False
    term_safed: bool = False
    term_armed: bool = False
    dud_override: bool = False
    reset: bool = False

    @classmethod
    def from_content(cls, content: bytes) -> ConfigurationMessage:
        flags = content[1] if len(content) >= 2 else 0
        return cls(
            pac_flight=bool(flags & (1 << BIT_PAC_FLIGHT)),
            pac_missile=bool(flags & (1 << BIT_PAC_MISSILE)),
            term_safed=bool(flags & (1 << BIT_TERM_SAFED)),
            term_armed=bool(flags & (1 << BIT_TERM_ARMED)),
            dud_override=bool(flags & (1 << BIT_DUD_OVERRIDE)),
            reset=bool(flags & (1 << BIT_RESET)),
            raw=bytes(content),
        )

    @property
    def flags(self) -> int:
        flags = 0
        if self.pac_flight:
            flags |= 1 << BIT_PAC_FLIGHT
        if self.pac_missile:
            flags |= 1 << BIT_PAC_MISSILE
        if self.term_safed:
            flags |= 1 << BIT_TERM_SAFED
        if self.term_armed:
            flags |= 1 << BIT_TERM_ARMED
        if self.dud_override:
            flags |= 1 << BIT_DUD_OVERRIDE
        if self.reset:
            flags |= 1 << BIT_RESET
        return flags

    def content(self) -> bytes:
        return bytes([0x00, self.flags])

    def summary(self) -> str:
        return (f"PacFlight={self.pac_flight}  PacMissile={self.pac_missile}  "
                f"TermSafed={self.term_safed}  TermArmed={self.term_armed}  "
                f"Dud={self.dud_override}  Reset={self.reset}")


# -- 9 ------------------------------------------------------------------------

@dataclass
class NullMessage(Message):
    msg_type: ClassVar[MessageType] = MessageType.NULL

    @classmethod
    def from_content(cls, content: bytes) -> NullMessage:
        return cls(raw=bytes(content))

    def content(self) -> bytes:
        return b""

    def summary(self) -> str:
        return "Null keepalive"


MESSAGE_CLASSES: MappingProxyType[int, type[Message]] = MappingProxyType({
    MessageType.INVALID: InvalidMessage,
    MessageType.START: StartMessage,
    MessageType.TELEMETRY: TelemetryMessage,
    MessageType.DEBUG: DebugMessage,
    MessageType.REQUEST: RequestMessage,
    MessageType.STATUS: StatusMessage,
    MessageType.TEST_DATA: TestDataMessage,
    MessageType.LOOPBACK: LoopbackMessage,
    MessageType.CONFIGURATION: ConfigurationMessage,
    MessageType.NULL: NullMessage,
})
