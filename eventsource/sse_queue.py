"""Ordered, drainable queue of decoded events.

Distinguishes "no event yet" (None) from "no more events ever"
(END_OF_STREAM). Safe to fill from one thread and drain from another.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import TYPE_CHECKING, Deque, Iterator, List, Optional, Union

if TYPE_CHECKING:
    from sse_decoder import SSEEvent


class _EndOfStream:
    """Sentinel returned by drain_next once the queue is finished and empty."""

    _instance: Optional["_EndOfStream"] = None

    def __new__(cls) -> "_EndOfStream":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"

    def __bool__(self) -> bool:
        return False


END_OF_STREAM = _EndOfStream()


class EventQueue:
    """FIFO of finalized events plus a terminal finished marker."""

    def __init__(self) -> None:
        self._events: Deque["SSEEvent"] = deque()
        self._finished = False
        self._cond = threading.Condition()

    def enqueue(self, event: "SSEEvent") -> None:
        with self._cond:
            if self._finished:
                raise RuntimeError("Cannot enqueue after the stream finished")
            self._events.append(event)
            self._cond.notify()

    def finish(self) -> None:
        """Mark the source exhausted. Idempotent."""
        with self._cond:
            self._finished = True
            self._cond.notify_all()

    @property
    def finished(self) -> bool:
        with self._cond:
            return self._finished

    def drain_next(
        self, block: bool = False, timeout: Optional[float] = None
    ) -> Union["SSEEvent", _EndOfStream, None]:
        """Remove and return the oldest event.

        Returns END_OF_STREAM when finished and empty, or None when nothing is
        available (non-blocking, or the timeout elapsed).
        """
        with self._cond:
            if block:
                self._cond.wait_for(
                    lambda: self._events or self._finished, timeout=timeout
                )
            if self._events:
                return self._events.popleft()
            if self._finished:
                return END_OF_STREAM
            return None

    def drain(self) -> List["SSEEvent"]:
        """Remove and return every event currently queued."""
        with self._cond:
            events = list(self._events)
            self._events.clear()
            return events

    def __len__(self) -> int:
        with self._cond:
            return len(self._events)

    def __iter__(self) -> Iterator["SSEEvent"]:
        """Blocking iteration until the stream is finished."""
        while True:
            item = self.drain_next(block=True)
            if item is END_OF_STREAM:
                return
            if item is not None:
                yield item
