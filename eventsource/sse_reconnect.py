"""Reconnection policy for EventSource.

Delay before reconnect attempt N (N >= 1 consecutive failures):

    delay = retry_ms * backoff_multiplier ** (N - 1)   (capped at max_retry_ms
                                                        when backing off)
    delay += delay * jitter_percent * uniform(-1, 1)

With the default multiplier of 1.0 and no jitter the delay is exactly the
current retry interval, as most recently set by the server's retry field.
"""

from __future__ import annotations

import logging
import random
from typing import Callable, FrozenSet, Optional

from sse_config import ConnectionConfig
from sse_transport import EventSourceError

logger = logging.getLogger("eventsource.reconnect")


class ReconnectPolicy:
    """Decides whether and when to reconnect after a failed attempt."""

    def __init__(
        self,
        config: ConnectionConfig,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._config = config
        self._rand = rand

    @property
    def non_retryable_status_codes(self) -> FrozenSet[int]:
        return self._config.non_retryable_status_codes

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code not in self._config.non_retryable_status_codes

    def should_reconnect(self, error: Optional[EventSourceError], attempts: int) -> bool:
        """attempts: reconnects already made since the last successful open.

        error None means the server closed the stream cleanly.
        """
        if error is not None and not error.retryable:
            return False
        limit = self._config.max_reconnect_attempts
        if limit is not None and attempts >= limit:
            logger.warning("Giving up after %d reconnect attempts", attempts)
            return False
        return True

    def next_delay(self, retry_ms: int, failures: int) -> float:
        """Seconds to wait before the next attempt."""
        delay_ms = float(retry_ms)
        multiplier = self._config.backoff_multiplier
        if multiplier > 1 and failures > 1:
            delay_ms = min(
                delay_ms * multiplier ** (failures - 1),
                max(float(self._config.max_retry_ms), float(retry_ms)),
            )

        jitter_pct = self._config.jitter_percent / 100.0
        if jitter_pct:
            delay_ms += delay_ms * jitter_pct * (self._rand() * 2 - 1)

        return max(0.0, delay_ms) / 1000.0
