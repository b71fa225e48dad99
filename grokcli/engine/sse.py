"""Server-Sent Events decoding.

Used by the sse/http protocol transports. Works on any async iterator of raw
byte lines, e.g. ``aiohttp.ClientResponse.content``.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class SSEEvent:
    """One dispatched event. ``event`` defaults to ``"message"``."""
    event: str = "message"
    data: str = ""
    id: str | None = None


class SSEDecoder:
    """Incremental line-oriented decoder (WHATWG event-stream rules)."""

    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []
        self._id: str | None = None

    def feed_line(self, line: str) -> SSEEvent | None:
        """Feed one line without its terminator. Returns an event on blank lines."""
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None  # comment / keepalive
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._id = value
        # "retry" and unknown fields are ignored
        return None

    def flush(self) -> SSEEvent | None:
        """Dispatch whatever is buffered at end of stream."""
        return self._dispatch()

    def _dispatch(self) -> SSEEvent | None:
        if not self._data and self._event is None:
            return None
        event = SSEEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self._id,
        )
        self._event = None
        self._data = []
        return event


async def iter_sse_events(lines: AsyncIterable[bytes]) -> AsyncIterator[SSEEvent]:
    """Yield SSE events from an async iterator of raw lines."""
    decoder = SSEDecoder()
    async for raw in lines:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        event = decoder.feed_line(line)
        if event is not None:
            yield event
    tail = decoder.flush()
    if tail is not None:
        yield tail
