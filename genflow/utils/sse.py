"""Event-stream frame parser: incremental text → generation events.

The producer speaks a minimal subset of Server-Sent Events: one JSON object
per ``data: `` line, ``:`` comment lines as keep-alives, and a ``[DONE]``
sentinel at the end. Reads arrive in arbitrary slices, so a line is only
decoded once its terminator has been seen.
"""

import json
import logging
from typing import AsyncIterable, AsyncIterator

from genflow.state import GenerationEvent

logger = logging.getLogger("genflow.sse")

FIELD_MARKER = "data: "
COMMENT_MARKER = ":"
DONE_SENTINEL = "[DONE]"


def decode_line(line: str) -> GenerationEvent | None:
    """Decode one complete line. Returns None for anything that is not an event."""
    if not line.strip() or line.startswith(COMMENT_MARKER):
        return None
    if not line.startswith(FIELD_MARKER):
        return None

    payload = line[len(FIELD_MARKER):].strip()
    if payload == DONE_SENTINEL:
        return None

    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping undecodable record: %.80s", payload)
        return None

    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        logger.debug("Skipping record without a type: %.80s", payload)
        return None
    return event


class EventFrameParser:
    """Stateful line splitter with a carry-over buffer."""

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Unterminated text waiting for the next read."""
        return self._buffer

    def feed(self, text: str) -> list[GenerationEvent]:
        """Consume one read and return the events completed by it, in order."""
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")

        events = []
        for line in lines:
            event = decode_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[GenerationEvent]:
        """End of stream. An unterminated remainder is dropped, never decoded."""
        if self._buffer.strip():
            logger.debug("Dropping unterminated trailing data: %.80s", self._buffer)
        self._buffer = ""
        return []


async def iter_events(chunks: AsyncIterable[str]) -> AsyncIterator[GenerationEvent]:
    """Adapt an async stream of text slices into an async stream of events."""
    parser = EventFrameParser()
    async for chunk in chunks:
        for event in parser.feed(chunk):
            yield event
    for event in parser.flush():
        yield event
