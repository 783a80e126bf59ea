"""
Backoff and error taxonomy for the expense API client.

Retry policy:
- On 429: wait Retry-After if the server sent one, otherwise exponential backoff
- On transport failure (DNS, refused, timeout): exponential backoff
- On 401: one refresh attempt, handled by the request executor
- Never retry client errors (400/403/404/422 ...)

Errors carry an ErrorKind tag assigned where they originate, so callers and
the connectivity monitor classify them by kind instead of message text.
"""

from __future__ import annotations

import contextlib
import random
from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Closed set of failure classes produced by the client layer."""

    NETWORK = "NETWORK"  # DNS, refused, reset, transport timeout
    RATE_LIMITED = "RATE_LIMITED"  # 429 after retries exhausted
    AUTH_EXPIRED = "AUTH_EXPIRED"  # 401 and refresh impossible
    CLIENT = "CLIENT"  # other 4xx, not retried
    SERVER = "SERVER"  # 5xx
    ABORTED = "ABORTED"  # caller cancelled / unmounted, harmless


TRANSIENT_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.NETWORK, ErrorKind.RATE_LIMITED, ErrorKind.SERVER}
)


class ApiError(Exception):
    """Base class for every error raised by the client layer."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status = status

    @property
    def is_transient(self) -> bool:
        """True if retrying later may succeed."""
        return self.kind in TRANSIENT_KINDS

    @property
    def is_harmless(self) -> bool:
        """True for local lifecycle artifacts that say nothing about the network."""
        return self.kind == ErrorKind.ABORTED

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, kind={self.kind.value}, status={self.status})"


class NetworkError(ApiError):
    """Raised when the transport fails (no HTTP response at all)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorKind.NETWORK)


class RateLimitError(ApiError):
    """Raised when 429 responses persist after all retries."""

    def __init__(self, message: str, retry_after_ms: int | None = None) -> None:
        super().__init__(message, ErrorKind.RATE_LIMITED, status=429)
        self.retry_after_ms = retry_after_ms


class AuthExpiredError(ApiError):
    """Raised when a 401 cannot be recovered by refreshing. Callers should log out."""

    def __init__(self, message: str = "Authentication expired. Please login again.") -> None:
        super().__init__(message, ErrorKind.AUTH_EXPIRED, status=401)


class RequestError(ApiError):
    """Raised for non-2xx responses other than 401/429, and for unreadable bodies."""

    def __init__(self, message: str, status: int, kind: ErrorKind | None = None) -> None:
        if kind is None:
            kind = ErrorKind.SERVER if status >= 500 else ErrorKind.CLIENT
        super().__init__(message, kind, status=status)


class RequestAbortedError(ApiError):
    """Raised when a request is abandoned by its caller."""

    def __init__(self, message: str = "Request aborted") -> None:
        super().__init__(message, ErrorKind.ABORTED)


def classify_status(status: int) -> ErrorKind | None:
    """
    Map an HTTP status to an error kind.

    Returns:
        None for 2xx/3xx, otherwise the matching ErrorKind.
    """
    if status < 400:
        return None
    if status == 401:
        return ErrorKind.AUTH_EXPIRED
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status >= 500:
        return ErrorKind.SERVER
    return ErrorKind.CLIENT


@dataclass
class BackoffConfig:
    """Configuration for exponential backoff between retries."""

    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    multiplier: float = 2.0
    max_retries: int = 3
    jitter_factor: float = 0.0  # 0.5 = ±50% jitter

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms must be >= base_delay_ms, got {self.max_delay_ms}"
            )
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if not 0.0 <= self.jitter_factor < 1.0:
            raise ValueError(f"jitter_factor must be in [0, 1), got {self.jitter_factor}")


def compute_backoff_delay(
    config: BackoffConfig,
    attempt: int,
    retry_after_ms: int | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """
    Compute the delay before retry number ``attempt + 1``.

    delay = min(base_delay_ms * multiplier ** attempt, max_delay_ms)

    Args:
        config: Backoff configuration.
        attempt: Zero-based index of the attempt that just failed.
        retry_after_ms: Server-provided delay (Retry-After). Replaces the
            computed delay when positive.
        rng: Optional seeded Random instance for deterministic jitter.

    Returns:
        Delay in milliseconds.
    """
    if retry_after_ms is not None and retry_after_ms > 0:
        return retry_after_ms

    delay = config.base_delay_ms * (config.multiplier ** max(attempt, 0))

    if config.jitter_factor > 0:
        jitter_min = 1.0 - config.jitter_factor
        jitter_max = 1.0 + config.jitter_factor
        if rng is not None:
            delay *= rng.uniform(jitter_min, jitter_max)
        else:
            delay *= random.uniform(jitter_min, jitter_max)

    return int(min(delay, config.max_delay_ms))


def parse_retry_after(value: str | None) -> int | None:
    """
    Parse a Retry-After header given in seconds.

    Returns:
        Milliseconds, or None if the header is absent or not a non-negative number.
    """
    if value is None:
        return None
    with contextlib.suppress(ValueError):
        seconds = float(value.strip())
        if seconds >= 0:
            return int(seconds * 1000)
    return None
