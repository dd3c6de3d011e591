"""Agent stream: wire framing and the streaming HTTP transport."""

from chargur.stream.frames import (
    FRAME_MARKER,
    EventType,
    FrameParser,
    FrameStats,
    StreamEvent,
    decode_frame,
    iter_events,
)
from chargur.stream.transport import AgentRequest, AgentTransport

__all__ = [
    "FRAME_MARKER",
    "EventType",
    "FrameParser",
    "FrameStats",
    "StreamEvent",
    "decode_frame",
    "iter_events",
    "AgentRequest",
    "AgentTransport",
]
