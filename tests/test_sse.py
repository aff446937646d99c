"""Tests for genflow.utils.sse: decode_line, EventFrameParser, iter_events."""

import asyncio
import json

import pytest

from genflow.utils.sse import EventFrameParser, decode_line, iter_events

from conftest import sse


def _feed_all(parser, chunks):
    events = []
    for chunk in chunks:
        events.extend(parser.feed(chunk))
    events.extend(parser.flush())
    return events


class TestDecodeLine:
    def test_data_line(self):
        assert decode_line('data: {"type": "start"}') == {"type": "start"}

    @pytest.mark.parametrize("line", ["", "   ", ": keep-alive", ":", "event: message", "id: 7"])
    def test_non_event_lines_ignored(self, line):
        assert decode_line(line) is None

    def test_done_sentinel_ignored(self):
        assert decode_line("data: [DONE]") is None

    def test_invalid_json_skipped(self):
        assert decode_line('data: {"type": "code_chunk", "content": ') is None

    @pytest.mark.parametrize("payload", ["[1, 2]", '"text"', "{}", '{"type": 3}'])
    def test_records_without_type_skipped(self, payload):
        assert decode_line(f"data: {payload}") is None


class TestEventFrameParser:
    def test_event_split_across_reads(self):
        """An event is emitted only once its terminator arrives."""
        parser = EventFrameParser()
        assert parser.feed('data: {"type":"code_') == []
        assert parser.pending == 'data: {"type":"code_'
        events = parser.feed('chunk","content":"<h1>"}\n\n')
        assert events == [{"type": "code_chunk", "content": "<h1>"}]
        assert parser.pending == ""

    def test_several_events_in_one_read(self, scenario_a_events):
        parser = EventFrameParser()
        events = parser.feed(sse(*scenario_a_events))
        assert events == scenario_a_events

    def test_output_independent_of_chunking(self, scenario_a_events):
        text = sse(*scenario_a_events, comments=True)
        whole = _feed_all(EventFrameParser(), [text])
        byte_by_byte = _feed_all(EventFrameParser(), list(text))
        uneven = _feed_all(EventFrameParser(), [text[i:i + 7] for i in range(0, len(text), 7)])
        assert whole == byte_by_byte == uneven == scenario_a_events

    def test_malformed_record_skipped_rest_kept(self):
        parser = EventFrameParser()
        events = parser.feed(
            'data: {"type": "start"}\n\n'
            'data: {broken\n\n'
            'data: {"type": "complete", "code": "x"}\n\n'
        )
        assert [e["type"] for e in events] == ["start", "complete"]

    def test_crlf_terminators(self):
        parser = EventFrameParser()
        events = parser.feed('data: {"type": "start"}\r\n\r\n: ping\r\n')
        assert events == [{"type": "start"}]

    def test_comments_and_blank_lines_produce_nothing(self):
        parser = EventFrameParser()
        assert parser.feed(": keep-alive\n\n\n: another\n") == []

    def test_unterminated_remainder_dropped_on_flush(self):
        parser = EventFrameParser()
        assert parser.feed('data: {"type": "complete", "code": "x"}') == []
        assert parser.flush() == []
        assert parser.pending == ""

    def test_utf8_content_preserved(self):
        parser = EventFrameParser()
        line = "data: " + json.dumps({"type": "code_chunk", "content": "<p>Café ✓</p>"}, ensure_ascii=False)
        events = parser.feed(line[:12]) + parser.feed(line[12:] + "\n")
        assert events[0]["content"] == "<p>Café ✓</p>"


class TestIterEvents:
    def test_async_adapter(self, scenario_a_events):
        text = sse(*scenario_a_events)

        async def chunks():
            for i in range(0, len(text), 5):
                yield text[i:i + 5]

        async def collect():
            return [e async for e in iter_events(chunks())]

        assert asyncio.run(collect()) == scenario_a_events
