"""
Frame Parser - incremental decoder for the agent event stream.

The agent endpoint answers with newline-delimited frames:

    data: {"type": "content", "content": "Hello wor"}
    data: {"type": "ping", "timestamp": "..."}
    data: {"type": "complete", "suggestions": [...], "autoFillData": {...}}

Bytes arrive in arbitrary chunks, so a frame (or a multi-byte character)
may be split across reads. The parser buffers until a newline, then decodes
one frame at a time. A bad frame is dropped and counted; it never aborts
the stream.
"""

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chargur.exceptions import MalformedFrame

logger = logging.getLogger(__name__)

FRAME_MARKER = "data: "


class EventType(Enum):
    """Kinds of events understood by the engine."""

    CONTENT = "content"
    COMPLETE = "complete"
    ERROR = "error"
    HEARTBEAT = "heartbeat"


# Wire names mapped to event types; "ping" is what the edge function emits
WIRE_TYPES: dict[str, EventType] = {
    "content": EventType.CONTENT,
    "complete": EventType.COMPLETE,
    "error": EventType.ERROR,
    "heartbeat": EventType.HEARTBEAT,
    "ping": EventType.HEARTBEAT,
}


@dataclass(frozen=True)
class StreamEvent:
    """A single decoded frame."""

    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> str:
        value = self.payload.get("content")
        return value if isinstance(value, str) else ""

    @property
    def suggestions(self) -> list[str]:
        value = self.payload.get("suggestions")
        return list(value) if isinstance(value, list) else []

    @property
    def auto_fill_data(self) -> dict[str, Any]:
        value = self.payload.get("autoFillData")
        return dict(value) if isinstance(value, dict) else {}

    @property
    def stage_complete(self) -> bool:
        return bool(self.payload.get("stageComplete"))

    @property
    def next_stage_id(self) -> str | None:
        value = self.payload.get("nextStageId") or self.payload.get("goToStageId")
        return value if isinstance(value, str) and value else None

    @property
    def context(self) -> dict[str, Any]:
        value = self.payload.get("context")
        return dict(value) if isinstance(value, dict) else {}

    @property
    def error_message(self) -> str:
        value = self.payload.get("error") or self.payload.get("message")
        return str(value) if value else "Stream error occurred"


@dataclass
class FrameStats:
    """Counters for one parsed stream."""

    frames: int = 0
    events: int = 0
    malformed: int = 0
    unknown: int = 0
    heartbeats: int = 0


def decode_frame(line: str) -> StreamEvent | None:
    """
    Decode one line of the stream.

    Returns:
        The event, or None for blank lines, non-frame lines and unknown types

    Raises:
        MalformedFrame: If the line carries the marker but not a valid event
    """
    line = line.rstrip("\r")
    if not line.strip() or not line.startswith(FRAME_MARKER):
        return None

    body = line[len(FRAME_MARKER):]
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise MalformedFrame(f"Invalid JSON in frame: {e.msg}", line)

    if not isinstance(data, dict):
        raise MalformedFrame("Frame body is not a JSON object", line)

    wire_type = data.get("type")
    if not isinstance(wire_type, str):
        raise MalformedFrame("Frame has no 'type' field", line)

    event_type = WIRE_TYPES.get(wire_type)
    if event_type is None:
        logger.debug(f"Ignoring unknown frame type: {wire_type}")
        return None

    return StreamEvent(type=event_type, payload=data)


class FrameParser:
    """
    Stateful parser fed with raw byte chunks in transport order.

    Usage:
        parser = FrameParser()
        for chunk in chunks:
            for event in parser.feed(chunk):
                ...
        for event in parser.close():
            ...
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.stats = FrameStats()

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Consume a chunk and return every event completed by it."""
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []

        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def close(self) -> list[StreamEvent]:
        """Flush the decoder and parse a trailing unterminated line."""
        self._buffer += self._decoder.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        return self._parse_lines([remaining]) if remaining else []

    def _parse_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            if line.startswith(FRAME_MARKER):
                self.stats.frames += 1
            try:
                event = decode_frame(line)
            except MalformedFrame as e:
                self.stats.malformed += 1
                logger.warning(f"Dropping malformed frame: {e.message}")
                continue

            if event is None:
                if line.startswith(FRAME_MARKER):
                    self.stats.unknown += 1
                continue

            if event.type == EventType.HEARTBEAT:
                self.stats.heartbeats += 1
            self.stats.events += 1
            events.append(event)
        return events


async def iter_events(
    chunks: AsyncIterable[bytes],
    parser: FrameParser | None = None,
) -> AsyncIterator[StreamEvent]:
    """
    Lazily turn a byte stream into an ordered stream of events.

    Args:
        chunks: Raw byte chunks in arrival order
        parser: Optional parser instance (to read its stats afterwards)
    """
    parser = parser or FrameParser()
    async for chunk in chunks:
        for event in parser.feed(chunk):
            yield event
    for event in parser.close():
        yield event
