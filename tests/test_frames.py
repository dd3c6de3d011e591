"""Tests for the frame parser."""

import pytest

from chargur.exceptions import MalformedFrame
from chargur.stream.frames import EventType, FrameParser, StreamEvent, decode_frame, iter_events

from conftest import frame

STREAM = b"".join(
    [
        frame(type="content", content="Hel"),
        frame(type="ping", timestamp="2026-01-01T00:00:00Z"),
        frame(type="content", content="Hello, café ☕"),
        frame(
            type="complete",
            suggestions=["Add a feature", "Skip"],
            autoFillData={"appName": "Recipe Hub"},
            stageComplete=True,
            goToStageId="feature-planning",
        ),
    ]
)


def parse_all(chunks: list[bytes]) -> list[StreamEvent]:
    parser = FrameParser()
    events = []
    for chunk in chunks:
        events.extend(parser.feed(chunk))
    events.extend(parser.close())
    return events


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


class TestDecodeFrame:
    """Tests for single-line decoding."""

    def test_content_frame(self):
        event = decode_frame('data: {"type": "content", "content": "Hi"}')
        assert event.type == EventType.CONTENT
        assert event.content == "Hi"

    def test_ping_is_heartbeat(self):
        event = decode_frame('data: {"type": "ping"}')
        assert event.type == EventType.HEARTBEAT

    def test_unknown_type_is_ignored(self):
        """New event kinds are skipped, not treated as errors."""
        assert decode_frame('data: {"type": "competitor_results", "data": []}') is None

    @pytest.mark.parametrize("line", ["", "   ", ": keep-alive", "event: message", "\r"])
    def test_non_frame_lines_ignored(self, line):
        assert decode_frame(line) is None

    def test_invalid_json_raises(self):
        with pytest.raises(MalformedFrame) as exc_info:
            decode_frame('data: {"type": "content", "content": ')
        assert exc_info.value.line.startswith("data: ")

    @pytest.mark.parametrize("body", ["[1, 2]", '"text"', '{"content": "no type"}'])
    def test_body_without_type_raises(self, body):
        with pytest.raises(MalformedFrame):
            decode_frame(f"data: {body}")

    def test_carriage_return_stripped(self):
        event = decode_frame('data: {"type": "content", "content": "x"}\r')
        assert event.content == "x"


class TestStreamEvent:
    """Tests for typed payload accessors."""

    def test_complete_accessors(self):
        event = parse_all([STREAM])[-1]
        assert event.type == EventType.COMPLETE
        assert event.suggestions == ["Add a feature", "Skip"]
        assert event.auto_fill_data == {"appName": "Recipe Hub"}
        assert event.stage_complete is True
        assert event.next_stage_id == "feature-planning"

    def test_next_stage_id_prefers_explicit_field(self):
        event = StreamEvent(EventType.COMPLETE, {"nextStageId": "structure-flow", "goToStageId": "x"})
        assert event.next_stage_id == "structure-flow"

    def test_wrong_shapes_fall_back_to_defaults(self):
        event = StreamEvent(EventType.COMPLETE, {"suggestions": "nope", "autoFillData": [], "content": 3})
        assert event.suggestions == []
        assert event.auto_fill_data == {}
        assert event.content == ""
        assert event.next_stage_id is None

    def test_error_message_default(self):
        assert StreamEvent(EventType.ERROR, {}).error_message == "Stream error occurred"
        assert StreamEvent(EventType.ERROR, {"error": "quota"}).error_message == "quota"


class TestFrameParser:
    """Tests for incremental parsing."""

    def test_whole_stream(self):
        events = parse_all([STREAM])
        assert [e.type for e in events] == [
            EventType.CONTENT,
            EventType.HEARTBEAT,
            EventType.CONTENT,
            EventType.COMPLETE,
        ]
        assert events[2].content == "Hello, café ☕"

    @pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 16, 64])
    def test_chunk_boundary_invariance(self, size):
        """Splitting the bytes anywhere never changes the parsed events."""
        assert parse_all(split_every(STREAM, size)) == parse_all([STREAM])

    def test_every_two_way_split(self):
        expected = parse_all([STREAM])
        for cut in range(len(STREAM) + 1):
            assert parse_all([STREAM[:cut], STREAM[cut:]]) == expected

    def test_malformed_frame_is_dropped(self):
        """One bad frame among N valid frames yields exactly N events."""
        valid = [frame(type="content", content=str(i)) for i in range(5)]
        data = b"".join(valid[:2]) + b'data: {"type": "content", "content": "oops\n\n' + b"".join(valid[2:])

        parser = FrameParser()
        events = parser.feed(data) + parser.close()

        assert [e.content for e in events] == ["0", "1", "2", "3", "4"]
        assert parser.stats.malformed == 1

    def test_stats(self):
        parser = FrameParser()
        parser.feed(STREAM + frame(type="competitor", name="x"))
        parser.close()
        assert parser.stats.events == 4
        assert parser.stats.heartbeats == 1
        assert parser.stats.unknown == 1
        assert parser.stats.malformed == 0

    def test_trailing_frame_without_newline(self):
        parser = FrameParser()
        assert parser.feed(b'data: {"type": "content", "content": "tail"}') == []
        events = parser.close()
        assert [e.content for e in events] == ["tail"]

    def test_split_multibyte_character(self):
        data = frame(type="content", content="é")
        cut = data.index(b"\xc3") + 1
        events = parse_all([data[:cut], data[cut:]])
        assert events[0].content == "é"

    def test_invalid_utf8_does_not_abort(self):
        events = parse_all([b'data: {"type": "content", "content": "a\xff"}\n', frame(type="ping")])
        assert len(events) == 2
        assert events[0].content.startswith("a")


class TestIterEvents:
    """Tests for the async adapter."""

    @pytest.mark.asyncio
    async def test_lazily_yields_in_order(self):
        async def chunks():
            for chunk in split_every(STREAM, 9):
                yield chunk

        parser = FrameParser()
        events = [event async for event in iter_events(chunks(), parser)]
        assert events == parse_all([STREAM])
        assert parser.stats.events == 4
