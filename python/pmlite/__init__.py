"""pmlite - PM-LITE telemetry protocol decoder and tooling."""

from .schema import FieldType, FieldDef, Layout
from .messages import (
    MessageType, Message, InvalidMessage, StartMessage, TelemetryMessage,
    DebugMessage, RequestMessage, StatusMessage, TestDataMessage,
    LoopbackMessage, ConfigurationMessage, NullMessage, MESSAGE_CLASSES,
    build_frame, encode_message,
)
from .decoder import (
    MessageSpec, DEFAULT_SPECS, ParseResult, FrameBuffer, DecodeResult,
    FrameDecoder, decode_frame,
)
from .events import Signal
from .transport import TCPTransport, FileTransport
from .session import OutboundChannel, Session, SessionState
from .correlator import (
    Correlator, ReplyWaiter, ExchangeCancelled, LoopbackTest, LoopbackSummary,
    Outcome,
)
from .recorder import TelemetryRecorder
from .storage import (
    CaptureEntry, CaptureInfo, CaptureParseResult, build_binary, build_text,
    write_capture, parse_capture, parse_binary, parse_text,
)
from .periodic import PeriodicSender
from .server import LoopbackServer

__all__ = [
    "FieldType", "FieldDef", "Layout",
    "MessageType", "Message", "InvalidMessage", "StartMessage",
    "TelemetryMessage", "DebugMessage", "RequestMessage", "StatusMessage",
    "TestDataMessage", "LoopbackMessage", "ConfigurationMessage",
    "NullMessage", "MESSAGE_CLASSES", "build_frame", "encode_message",
    "MessageSpec", "DEFAULT_SPECS", "ParseResult", "FrameBuffer",
    "DecodeResult", "FrameDecoder", "decode_frame",
    "Signal", "TCPTransport", "FileTransport",
    "OutboundChannel", "Session", "SessionState",
    "Correlator", "ReplyWaiter", "ExchangeCancelled", "LoopbackTest",
    "LoopbackSummary", "Outcome",
    "TelemetryRecorder",
    "CaptureEntry", "CaptureInfo", "CaptureParseResult", "build_binary",
    "build_text", "write_capture", "parse_capture", "parse_binary",
    "parse_text",
    "PeriodicSender", "LoopbackServer",
]
