"""Line splitting for Server-Sent Events byte streams.

Turns arbitrary byte chunks into logical lines. LF, CR and CRLF all count as
one line boundary, including a CRLF whose two bytes arrive in separate chunks.

See: https://html.spec.whatwg.org/multipage/server-sent-events.html#event-stream-interpretation
"""

from __future__ import annotations

from typing import Iterator

CR = 0x0D
LF = 0x0A


class LineBuffer:
    """Accumulates bytes and yields complete lines (without terminators).

    No limit is placed on line length; memory is bounded by the longest line.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._saw_cr = False

    @property
    def pending(self) -> int:
        """Number of bytes buffered since the last line boundary."""
        return len(self._buffer)

    def feed(self, data: bytes) -> Iterator[bytes]:
        """Consume a chunk and lazily yield every line it completes."""
        start = 0
        for i, byte in enumerate(data):
            if byte == LF:
                if self._saw_cr:
                    # Second half of a CRLF pair
                    self._saw_cr = False
                    start = i + 1
                    continue
                self._saw_cr = False
                yield self._take(data, start, i)
                start = i + 1
            elif byte == CR:
                self._saw_cr = True
                yield self._take(data, start, i)
                start = i + 1
            else:
                self._saw_cr = False
        if start < len(data):
            self._buffer.extend(data[start:])

    def flush(self) -> Iterator[bytes]:
        """Yield unterminated trailing content as a final line, then reset."""
        self._saw_cr = False
        if self._buffer:
            line = bytes(self._buffer)
            self._buffer.clear()
            yield line

    def _take(self, data: bytes, start: int, end: int) -> bytes:
        if self._buffer:
            self._buffer.extend(data[start:end])
            line = bytes(self._buffer)
            self._buffer.clear()
            return line
        return bytes(data[start:end])
