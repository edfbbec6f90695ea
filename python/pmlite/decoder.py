"""Stream reassembly and frame dispatch for PM-LITE messages."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from .messages import (
    HEADER_FMT, HEADER_SIZE, MESSAGE_CLASSES,
    InvalidMessage, Message, MessageType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageSpec:
    """Acceptable frame size for one message type (sizes include the header).

    With ``exact_size`` set the size field must match it; otherwise it must
    fall within ``min_size..max_size`` inclusive.
    """

    exact_size: int | None = None
    min_size: int = HEADER_SIZE
    max_size: int = 512

    def is_size_valid(self, size: int) -> bool:
        if self.exact_size is not None:
            return size == self.exact_size
        return self.min_size <= size <= self.max_size

    @property
    def description(self) -> str:
        if self.exact_size is not None:
            return f"exactly {self.exact_size}"
        return f"{self.min_size}-{self.max_size}"


DEFAULT_SPECS: Mapping[int, MessageSpec] = MappingProxyType({
    MessageType.START: MessageSpec(exact_size=12),
    MessageType.TELEMETRY: MessageSpec(exact_size=92),
    MessageType.STATUS: MessageSpec(exact_size=10),
    MessageType.LOOPBACK: MessageSpec(exact_size=8),
    MessageType.CONFIGURATION: MessageSpec(exact_size=5),
    MessageType.NULL: MessageSpec(exact_size=3),
    MessageType.DEBUG: MessageSpec(min_size=4, max_size=256),
    MessageType.REQUEST: MessageSpec(min_size=3, max_size=64),
    MessageType.TEST_DATA: MessageSpec(min_size=4, max_size=512),
    # type 0 should never be sent, but a well-formed one is still a frame
    MessageType.INVALID: MessageSpec(min_size=3, max_size=16),
})


@dataclass(frozen=True)
class ParseResult:
    """One outcome of ``FrameBuffer.drain``: a frame or a resync reason."""

    frame: bytes | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.frame is not None

    @classmethod
    def success(cls, frame: bytes) -> ParseResult:
        return cls(frame=frame)

    @classmethod
    def failure(cls, reason: str) -> ParseResult:
        return cls(error=reason)


def decode_frame(frame: bytes,
                 classes: Mapping[int, type[Message]] = MESSAGE_CLASSES) -> Message:
    """Decode one frame into a typed message.

    Never raises: short frames, unknown types and content the variant
    cannot interpret all come back as ``InvalidMessage``.
    """
    frame = bytes(frame)
    if len(frame) < HEADER_SIZE:
        return InvalidMessage("Frame too small", raw=frame, frame=frame)

    msg_type, size = struct.unpack_from(HEADER_FMT, frame, 0)
    content_len = max(0, size - HEADER_SIZE)
    content = frame[HEADER_SIZE:HEADER_SIZE + content_len]

    cls = classes.get(msg_type)
    if cls is None:
        return InvalidMessage(f"Unknown type 0x{msg_type:02X}",
                              original_type=msg_type, raw=frame, frame=frame)
    try:
        message = cls.from_content(content)
    except (ValueError, struct.error) as exc:
        return InvalidMessage(f"Parse error: {exc}",
                              original_type=msg_type, raw=frame, frame=frame)
    message.frame = frame
    return message


class FrameBuffer:
    """Accumulates raw bytes and extracts complete, validated frames.

    A header with an unknown type or a size outside that type's spec is
    treated as garbage: the buffer reports a failure and retries one byte
    further on.  Running out of bytes is the only thing that stops a drain.
    """

    def __init__(self, specs: Mapping[int, MessageSpec] = DEFAULT_SPECS):
        self.specs = specs
        self._buf = bytearray()

    def append(self, data: bytes) -> None:
        self._buf.extend(data)

    def drain(self) -> list[ParseResult]:
        results: list[ParseResult] = []
        offset = 0
        buf = self._buf

        while len(buf) - offset >= HEADER_SIZE:
            msg_type, size = struct.unpack_from(HEADER_FMT, buf, offset)

            spec = self.specs.get(msg_type)
            if spec is None:
                results.append(ParseResult.failure(
                    f"Unknown type 0x{msg_type:02X} at offset {offset}"
                    " - skipping byte."))
                offset += 1
                continue

            if not spec.is_size_valid(size):
                results.append(ParseResult.failure(
                    f"Type 0x{msg_type:02X} at offset {offset}: size={size}"
                    f" expected {spec.description} - skipping byte."))
                offset += 1
                continue

            # Header is plausible; wait for the rest of the frame
            if len(buf) - offset < size:
                break

            results.append(ParseResult.success(bytes(buf[offset:offset + size])))
            offset += size

        if offset:
            del buf[:offset]
        return results

    def clear(self) -> None:
        self._buf.clear()

    def __len__(self) -> int:
        return len(self._buf)


@dataclass(frozen=True)
class DecodeResult:
    """A decoded message with its frame, or a framing warning."""

    message: Message | None = None
    frame: bytes | None = None
    warning: str | None = None


class FrameDecoder:
    """Stateful stream decoder: feed raw bytes, get decoded messages.

    For already-separated frames (files, tests) use decode_frame() directly.
    """

    def __init__(self, specs: Mapping[int, MessageSpec] = DEFAULT_SPECS,
                 classes: Mapping[int, type[Message]] = MESSAGE_CLASSES):
        self.classes = classes
        self.resyncs: int = 0
        self._frames = FrameBuffer(specs)

    def feed(self, data: bytes) -> list[DecodeResult]:
        """Feed raw bytes, return results for every frame completed so far."""
        self._frames.append(data)
        results: list[DecodeResult] = []
        for r in self._frames.drain():
            if not r.ok:
                self.resyncs += 1
                logger.debug("resync: %s", r.error)
                results.append(DecodeResult(warning=r.error))
                continue
            results.append(DecodeResult(
                message=decode_frame(r.frame, self.classes), frame=r.frame))
        return results

    def reset(self) -> None:
        """Clear internal buffer."""
        self._frames.clear()

    @property
    def buffered(self) -> int:
        return len(self._frames)
