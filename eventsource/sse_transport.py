"""Transport boundary for EventSource: streaming GET over httpx.

A transport exposes `stream(url, headers)`, an async context manager that
yields a StreamResponse (status, headers, async byte iterator) or raises
EventSourceError for connectivity failures. HttpxTransport is the default;
tests and embedders may pass any object with the same shape.

Exit classification (classify_response):
  204                                   -> no_content   (terminal)
  2xx, text/event-stream or no type     -> valid stream
  2xx, other content type               -> content_type (terminal)
  anything else                         -> http_status  (retryable unless
                                           configured non-retryable)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Collection, Mapping, Optional

import httpx

from sse_config import ConnectionConfig

logger = logging.getLogger("eventsource.transport")

EVENT_STREAM_MIME = "text/event-stream"


# === Error Classes ===

class EventSourceError(Exception):
    """Structured error with code, status_code, retryable flag."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.retryable = retryable

    def to_dict(self) -> dict:
        return {
            "error": "EventSourceError",
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


# === Response ===

@dataclass
class StreamResponse:
    """What a transport hands back once response headers arrive."""
    status_code: int
    headers: Mapping[str, str]
    content: AsyncIterator[bytes]

    @property
    def content_type(self) -> Optional[str]:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return None


def classify_response(
    response: StreamResponse,
    non_retryable_status_codes: Collection[int] = (204,),
) -> Optional[EventSourceError]:
    """Return None for a usable event stream, else the error to surface."""
    status = response.status_code

    if status == 204:
        return EventSourceError(
            code="no_content",
            message="HTTP 204: server asked the client not to reconnect",
            status_code=status,
            retryable=False,
        )

    if 200 <= status < 300:
        content_type = response.content_type
        if content_type:
            mime = content_type.split(";", 1)[0].strip().lower()
            if mime != EVENT_STREAM_MIME:
                return EventSourceError(
                    code="content_type",
                    message=f"Unexpected content type: {content_type}",
                    status_code=status,
                    retryable=False,
                )
        return None

    return EventSourceError(
        code="http_status",
        message=f"HTTP {status}",
        status_code=status,
        retryable=status not in non_retryable_status_codes,
    )


# === httpx transport ===

def _seconds(ms: Optional[int]) -> Optional[float]:
    return None if ms is None else ms / 1000.0


class HttpxTransport:
    """Streaming GET via a lazily created httpx.AsyncClient."""

    def __init__(
        self,
        config: Optional[ConnectionConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config or ConnectionConfig()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = httpx.Timeout(
                connect=_seconds(self._config.connect_timeout_ms),
                read=_seconds(self._config.read_timeout_ms),
                write=_seconds(self._config.write_timeout_ms),
                pool=_seconds(self._config.pool_timeout_ms),
            )
            limits = httpx.Limits(
                max_connections=1,
                max_keepalive_connections=0,
            )
            self._client = httpx.AsyncClient(timeout=timeout, limits=limits)
        return self._client

    @asynccontextmanager
    async def stream(self, url: str, headers: Mapping[str, str]) -> AsyncIterator[StreamResponse]:
        client = self._get_client()
        try:
            async with client.stream("GET", url, headers=dict(headers)) as response:
                yield StreamResponse(
                    status_code=response.status_code,
                    headers=response.headers,
                    content=response.aiter_bytes(),
                )
        except httpx.TimeoutException as e:
            raise EventSourceError(
                code="network_error",
                message=f"Request timed out: {e}",
                retryable=True,
            ) from e
        except httpx.ConnectError as e:
            raise EventSourceError(
                code="network_error",
                message=f"Connection failed: {e}",
                retryable=True,
            ) from e
        except httpx.TransportError as e:
            raise EventSourceError(
                code="network_error",
                message=f"Stream interrupted: {e}",
                retryable=True,
            ) from e

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
