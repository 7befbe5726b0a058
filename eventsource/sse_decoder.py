"""
sse_decoder.py — W3C-compliant Server-Sent Events decoder

Pipeline: bytes -> LineBuffer -> classify -> EventAssembler -> EventQueue.
Handles: multi-line data fields, CR/LF/CRLF line endings (also split across
chunks), comments, id/retry state that persists across events.

See: https://html.spec.whatwg.org/multipage/server-sent-events.html#parsing-an-event-stream
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterable, Iterable, Iterator, List, Optional

from sse_fields import Comment, DispatchBoundary, Field, FieldEvent, Unknown, classify
from sse_lines import LineBuffer
from sse_queue import EventQueue

logger = logging.getLogger("eventsource.decoder")

DEFAULT_EVENT_TYPE = "message"
DEFAULT_RETRY_MS = 3000

_UTF8_BOM = "\ufeff"
_DIGITS_RE = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class SSEEvent:
    """A single Server-Sent Event."""
    event_type: str = DEFAULT_EVENT_TYPE
    data: str = ""
    id: Optional[str] = None


class EventAssembler:
    """Folds classified lines into events.

    Per-event state (type, data lines) resets at every dispatch boundary.
    The last event id and retry interval persist for the lifetime of
    the assembler.
    """

    def __init__(
        self,
        queue: EventQueue,
        last_event_id: Optional[str] = None,
        retry_ms: int = DEFAULT_RETRY_MS,
    ) -> None:
        self.queue = queue
        self.retry_ms = retry_ms
        # Most recent valid id field; stamped on every event and sent on reconnect
        self.last_event_id = last_event_id
        self._event_type = ""
        self._data_lines: List[str] = []

    @property
    def has_pending(self) -> bool:
        return bool(self._data_lines)

    def process(self, item: FieldEvent) -> None:
        if isinstance(item, Field):
            self._apply_field(item.name, item.value)
        elif isinstance(item, DispatchBoundary):
            self.dispatch()
        elif isinstance(item, Comment):
            pass
        elif isinstance(item, Unknown):
            logger.debug("Ignoring unknown field %r", item.name)

    def _apply_field(self, name: str, value: str) -> None:
        if name == "data":
            self._data_lines.append(value)
        elif name == "event":
            self._event_type = value
        elif name == "id":
            if "\0" in value:
                logger.debug("Ignoring id field containing NULL")
                return
            self.last_event_id = value
        elif name == "retry":
            if _DIGITS_RE.fullmatch(value):
                self.retry_ms = int(value)
            else:
                logger.debug("Ignoring non-numeric retry %r", value)

    def dispatch(self) -> Optional[SSEEvent]:
        """Handle a blank line. Returns the enqueued event, if any."""
        event = None
        if self._data_lines:
            event = SSEEvent(
                event_type=self._event_type or DEFAULT_EVENT_TYPE,
                data="\n".join(self._data_lines),
                id=self.last_event_id,
            )
            self.queue.enqueue(event)
        self._event_type = ""
        self._data_lines = []
        return event

    def finish(self, dispatch_pending: bool = True) -> None:
        """End of input: optionally dispatch a record missing its blank line."""
        if dispatch_pending and self._data_lines:
            self.dispatch()
        else:
            self._event_type = ""
            self._data_lines = []
        self.queue.finish()


class EventDecoder:
    """Incremental SSE decoder: feed bytes, drain events from .queue."""

    def __init__(
        self,
        last_event_id: Optional[str] = None,
        retry_ms: int = DEFAULT_RETRY_MS,
        queue: Optional[EventQueue] = None,
    ) -> None:
        self.queue = queue if queue is not None else EventQueue()
        self._lines = LineBuffer()
        self._assembler = EventAssembler(self.queue, last_event_id, retry_ms)
        self._first_line = True

    @property
    def last_event_id(self) -> Optional[str]:
        return self._assembler.last_event_id

    @property
    def retry_ms(self) -> int:
        return self._assembler.retry_ms

    def feed(self, chunk: bytes) -> None:
        for line in self._lines.feed(chunk):
            self._process_line(line)

    def close(self, dispatch_pending: bool = True) -> None:
        """Flush trailing bytes and push the end-of-stream marker."""
        for line in self._lines.flush():
            self._process_line(line)
        self._assembler.finish(dispatch_pending)

    def _process_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace")
        if self._first_line:
            self._first_line = False
            if line.startswith(_UTF8_BOM):
                line = line[1:]
        self._assembler.process(classify(line))


def iter_events(chunks: Iterable[bytes]) -> Iterator[SSEEvent]:
    """Decode SSE events from a synchronous iterable of byte chunks.

    A final record without its blank line is still yielded when the
    iterable is exhausted.
    """
    decoder = EventDecoder()
    for chunk in chunks:
        decoder.feed(chunk)
        yield from decoder.queue.drain()
    decoder.close()
    yield from decoder.queue.drain()


async def sse_decode(stream: AsyncIterable[bytes]) -> AsyncGenerator[SSEEvent, None]:
    """Decode SSE events from an async byte stream (httpx response.aiter_bytes()).

    Yields SSEEvent objects as they are parsed. Handles:
    - Multi-line data fields (accumulated with newlines per W3C spec)
    - CRLF / CR / LF line endings, including a CRLF split across chunks
    - Comment lines (starting with ':')
    - id and retry fields
    - Events spanning multiple TCP chunks

    Event dispatch occurs on empty lines (double newline = event boundary).
    """
    decoder = EventDecoder()
    async for chunk in stream:
        decoder.feed(chunk)
        for event in decoder.queue.drain():
            yield event
    decoder.close()
    for event in decoder.queue.drain():
        yield event
