"""
sse_connection.py — EventSource connection manager

Owns one streaming connection at a time, feeds received bytes through the
decoder pipeline, fires on_open / on_message / on_error, and reconnects.

State machine:
  IDLE -> CONNECTING -> OPEN -> CLOSED -> (delay) -> CONNECTING ...
  close() from any state -> CLOSING -> CLOSED (terminal)
  non-retryable failure            -> CLOSED (terminal)

Only last_event_id and retry_ms cross from one attempt to the next. Each
attempt gets a fresh decoder seeded with them and hands them back as it
consumes the stream. All state is mutated by the single run task; close()
from another thread is marshalled onto the event loop.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sse_config import ConnectionConfig, redact_headers
from sse_decoder import EventDecoder, SSEEvent
from sse_reconnect import ReconnectPolicy
from sse_transport import (
    EVENT_STREAM_MIME,
    EventSourceError,
    HttpxTransport,
    classify_response,
)

logger = logging.getLogger("eventsource.connection")

# close_reason values besides EventSourceError codes
CLOSED_BY_CLIENT = "closed_by_client"
MAX_RECONNECTS = "max_reconnects"
STREAM_ENDED = "stream_ended"


class ReadyState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


OpenCallback = Callable[[], Any]
MessageCallback = Callable[[SSEEvent], Any]
ErrorCallback = Callable[[Optional[EventSourceError]], Any]


class EventSource:
    """Auto-reconnecting SSE client.

    Callbacks run on the event loop, in event arrival order. An exception
    raised by a callback is logged and does not affect the connection.
    """

    def __init__(
        self,
        url: str,
        config: Optional[ConnectionConfig] = None,
        transport: Any = None,
        on_open: Optional[OpenCallback] = None,
        on_message: Optional[MessageCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        policy: Optional[ReconnectPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.config = config or ConnectionConfig()
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error

        self._transport = transport if transport is not None else HttpxTransport(self.config)
        self._owns_transport = transport is None
        self._policy = policy or ReconnectPolicy(self.config)
        self._sleep = sleep
        self._listeners: Dict[str, List[MessageCallback]] = {}

        self._state = ReadyState.IDLE
        self.close_reason: Optional[str] = None
        self._last_event_id = self.config.last_event_id
        self._retry_ms = self.config.retry_ms
        self.reconnect_count = 0

        self._closing = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

    # ── Public state ──────────────────────────────────────────────────

    @property
    def state(self) -> ReadyState:
        return self._state

    @property
    def last_event_id(self) -> Optional[str]:
        return self._last_event_id

    @property
    def retry_ms(self) -> int:
        return self._retry_ms

    # ── Listeners ─────────────────────────────────────────────────────

    def add_listener(self, event_type: str, callback: MessageCallback) -> None:
        """Register a callback for events whose type is event_type."""
        self._listeners.setdefault(event_type, []).append(callback)

    def remove_listener(self, event_type: str, callback: MessageCallback) -> None:
        callbacks = self._listeners.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def open(self) -> None:
        """Start the first connection attempt in a background task."""
        if self._task is not None or self._closing:
            raise RuntimeError("EventSource can only be opened once")
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._set_state(ReadyState.CONNECTING)
        self._task = self._loop.create_task(self._run())
        self._task.add_done_callback(self._on_task_done)

    async def aclose(self) -> None:
        """Cancel the connection and wait until the run task has finished."""
        self._request_close()
        task = self._task
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait({task})
        await self._finalize()

    def close(self) -> None:
        """Cancel the connection. Safe from any thread and from callbacks.

        No callback fires after this returns.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            self._request_close(cancel=False)
            self._state = ReadyState.CLOSED
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._request_close()
            return
        if not loop.is_running():
            # Nothing is driving the loop, so there is no one to hand off to
            if threading.get_ident() == self._loop_thread:
                self._request_close()
                loop.run_until_complete(self.aclose())
            else:
                self._request_close(cancel=False)
                loop.call_soon_threadsafe(self._cancel_task)
                self._state = ReadyState.CLOSED
            return
        asyncio.run_coroutine_threadsafe(self.aclose(), loop).result()

    async def wait_closed(self) -> None:
        """Wait until the manager reaches its terminal CLOSED state."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def __aenter__(self) -> "EventSource":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _request_close(self, cancel: bool = True) -> None:
        if self._closing:
            return
        self._closing = True
        if self._task is None or not self._task.done():
            self.close_reason = CLOSED_BY_CLIENT
        if self._state is not ReadyState.CLOSED:
            self._set_state(ReadyState.CLOSING)
        if cancel:
            self._cancel_task()

    def _cancel_task(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    # ── Run loop ──────────────────────────────────────────────────────

    async def _run(self) -> None:
        failures = 0
        try:
            while not self._closing:
                error, opened = await self._attempt()
                if self._closing:
                    return
                if opened:
                    failures = 0

                self._set_state(ReadyState.CLOSED)
                self.close_reason = error.code if error is not None else STREAM_ENDED
                self._emit_error(error)
                if self._closing:
                    return

                if not self._policy.should_reconnect(error, failures):
                    if error is None or error.retryable:
                        self.close_reason = MAX_RECONNECTS
                    logger.info("EventSource %s closed permanently (%s)", self.url, self.close_reason)
                    return

                failures += 1
                delay = self._policy.next_delay(self._retry_ms, failures)
                self._set_state(ReadyState.CONNECTING)
                logger.warning(
                    "EventSource %s: reconnecting in %.2fs (attempt %d, cause=%s)",
                    self.url,
                    delay,
                    failures,
                    error.code if error is not None else STREAM_ENDED,
                )
                await self._sleep(delay)
                self.reconnect_count += 1
        finally:
            await self._finalize()

    async def _attempt(self) -> Tuple[Optional[EventSourceError], bool]:
        """One connection attempt. Returns (error or None, whether it opened)."""
        decoder = EventDecoder(last_event_id=self._last_event_id, retry_ms=self._retry_ms)
        headers = self._request_headers()
        logger.debug("GET %s headers=%s", self.url, redact_headers(headers))

        opened = False
        try:
            async with self._transport.stream(self.url, headers) as response:
                error = classify_response(response, self._policy.non_retryable_status_codes)
                if error is not None:
                    return error, False

                opened = True
                self._set_state(ReadyState.OPEN)
                self._emit_open()
                if self._closing:
                    return None, True

                async for chunk in response.content:
                    decoder.feed(chunk)
                    self._sync_state(decoder)
                    self._dispatch(decoder.queue.drain())
                    if self._closing:
                        return None, True

            # A record missing its blank line is dropped
            decoder.close(dispatch_pending=False)
            return None, opened
        except EventSourceError as e:
            return e, opened
        except Exception as e:
            logger.exception("EventSource %s: unexpected stream failure", self.url)
            return EventSourceError(
                code="stream_error",
                message=f"Unexpected error: {e}",
                retryable=True,
            ), opened
        finally:
            self._sync_state(decoder)

    def _on_task_done(self, task: asyncio.Task) -> None:
        # Covers a task cancelled before it ever ran
        self._state = ReadyState.CLOSED

    async def _finalize(self) -> None:
        self._state = ReadyState.CLOSED
        if self._owns_transport:
            self._owns_transport = False
            await self._transport.aclose()

    # ── Helpers ───────────────────────────────────────────────────────

    def _request_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": EVENT_STREAM_MIME,
            "Cache-Control": "no-cache",
        }
        headers.update(self.config.headers)
        if self._last_event_id:
            headers["Last-Event-ID"] = self._last_event_id
        return headers

    def _sync_state(self, decoder: EventDecoder) -> None:
        if decoder.retry_ms != self._retry_ms:
            logger.debug("EventSource %s: retry interval now %dms", self.url, decoder.retry_ms)
        self._last_event_id = decoder.last_event_id
        self._retry_ms = decoder.retry_ms

    def _set_state(self, state: ReadyState) -> None:
        if state is self._state:
            return
        logger.info("EventSource %s: %s -> %s", self.url, self._state.value, state.value)
        self._state = state
        if state is not ReadyState.CLOSED and not self._closing:
            self.close_reason = None

    def _dispatch(self, events: List[SSEEvent]) -> None:
        for event in events:
            if self._closing:
                return
            if self.on_message is not None:
                self._invoke(self.on_message, event)
            for callback in list(self._listeners.get(event.event_type, [])):
                if self._closing:
                    return
                self._invoke(callback, event)

    def _emit_open(self) -> None:
        if self.on_open is not None and not self._closing:
            self._invoke(self.on_open)

    def _emit_error(self, error: Optional[EventSourceError]) -> None:
        if self.on_error is not None and not self._closing:
            self._invoke(self.on_error, error)

    def _invoke(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("EventSource %s: callback %r raised", self.url, callback)
