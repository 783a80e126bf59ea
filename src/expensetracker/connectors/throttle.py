"""
Per-endpoint client-side request throttling.

Each endpoint base path (query string stripped) gets its own ledger entry, so
one chatty screen cannot starve requests to other endpoints. Two limits apply
independently:
- a burst cap of max_requests per window_ms
- a minimum spacing of min_delay_ms between consecutive requests

A caller's send slot is reserved before it sleeps, so concurrent callers on the
same endpoint queue up behind each other instead of all passing the checks at once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class ThrottleConfig:
    """Default limits applied when acquire() is called without overrides."""

    max_requests: int = 10  # Max requests per window
    window_ms: int = 1000  # 1 second window
    min_delay_ms: int = 100  # Minimum spacing between requests

    def __post_init__(self) -> None:
        _validate_limits(self.max_requests, self.window_ms, self.min_delay_ms)


@dataclass
class ThrottleEntry:
    """Ledger state for one endpoint. Times are in ms."""

    last_request_time: int | None = None  # None until the first request
    request_count: int = 0
    window_reset_time: int = 0


@dataclass
class ThrottleMetrics:
    """Counters for throttling decisions."""

    acquired: int = 0
    delayed: int = 0
    total_wait_ms: int = 0


def _validate_limits(max_requests: int, window_ms: int, min_delay_ms: int) -> None:
    if max_requests < 1:
        raise ValueError(f"max_requests must be >= 1, got {max_requests}")
    if window_ms <= 0:
        raise ValueError(f"window_ms must be > 0, got {window_ms}")
    if min_delay_ms < 0:
        raise ValueError(f"min_delay_ms must be >= 0, got {min_delay_ms}")


def endpoint_key(endpoint: str) -> str:
    """Strip the query string so /tx?page=1 and /tx?page=2 share a ledger entry."""
    return endpoint.split("?", 1)[0]


@dataclass
class ThrottleLedger:
    """
    Per-endpoint rate limiter.

    Usage:
        ledger = ThrottleLedger()
        await ledger.acquire("/api/transactions")  # waits as needed
        # ... send request ...
    """

    config: ThrottleConfig = field(default_factory=ThrottleConfig)
    metrics: ThrottleMetrics = field(default_factory=ThrottleMetrics, init=False)

    _entries: dict[str, ThrottleEntry] = field(default_factory=dict, init=False)

    # Injectable clock (ms) and sleep for deterministic tests
    _time_fn: Callable[[], int] | None = field(default=None)
    _sleep_fn: Callable[[float], Awaitable[None]] | None = field(default=None)

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.monotonic() * 1000)

    async def _sleep_ms(self, delay_ms: int) -> None:
        if self._sleep_fn is not None:
            await self._sleep_fn(delay_ms / 1000)
        else:
            await asyncio.sleep(delay_ms / 1000)

    async def acquire(
        self,
        endpoint: str,
        max_requests: int | None = None,
        window_ms: int | None = None,
        min_delay_ms: int | None = None,
    ) -> None:
        """
        Wait until a request to ``endpoint`` is allowed, then record it.

        Args:
            endpoint: Endpoint path; any query string is ignored.
            max_requests: Burst cap per window (default from config).
            window_ms: Window length in ms (default from config).
            min_delay_ms: Minimum gap since the previous request (default from config).

        Raises:
            ValueError: If a limit is out of range.
        """
        max_requests = self.config.max_requests if max_requests is None else max_requests
        window_ms = self.config.window_ms if window_ms is None else window_ms
        min_delay_ms = self.config.min_delay_ms if min_delay_ms is None else min_delay_ms
        _validate_limits(max_requests, window_ms, min_delay_ms)

        key = endpoint_key(endpoint)
        now = self._now_ms()

        entry = self._entries.get(key)
        if entry is None:
            entry = ThrottleEntry(window_reset_time=now + window_ms)
            self._entries[key] = entry
        elif now > entry.window_reset_time:
            entry.request_count = 0
            entry.window_reset_time = now + window_ms

        send_at = now
        if entry.request_count >= max_requests:
            # Window full: wait for it to reset, then open the next one
            send_at = max(send_at, entry.window_reset_time)
            logger.debug(
                "Throttling request: window full",
                extra={
                    "endpoint": key,
                    "wait_ms": send_at - now,
                    "request_count": entry.request_count,
                    "max_requests": max_requests,
                },
            )
            entry.request_count = 0
            entry.window_reset_time = send_at + window_ms

        if entry.last_request_time is not None:
            earliest = entry.last_request_time + min_delay_ms
            if earliest > send_at:
                logger.debug(
                    "Throttling request: minimum spacing",
                    extra={"endpoint": key, "wait_ms": earliest - now},
                )
                send_at = earliest

        # Reserve the slot before suspending
        entry.last_request_time = send_at
        entry.request_count += 1
        self.metrics.acquired += 1

        wait_ms = send_at - now
        if wait_ms > 0:
            self.metrics.delayed += 1
            self.metrics.total_wait_ms += wait_ms
            await self._sleep_ms(wait_ms)

    def get_entry(self, endpoint: str) -> ThrottleEntry | None:
        """Get the ledger entry for an endpoint, if one exists."""
        return self._entries.get(endpoint_key(endpoint))

    def clear(self, endpoint: str) -> None:
        """Drop throttle state for one endpoint."""
        self._entries.pop(endpoint_key(endpoint), None)

    def clear_all(self) -> None:
        """Drop all throttle state."""
        self._entries.clear()

    def get_status(self) -> dict[str, int]:
        """Get current ledger status for observability."""
        return {
            "tracked_endpoints": len(self._entries),
            "acquired": self.metrics.acquired,
            "delayed": self.metrics.delayed,
            "total_wait_ms": self.metrics.total_wait_ms,
        }
