"""
Resilient request executor for the expense API.

Every call goes through the same pipeline:
- Duplicate idempotent requests in flight are collapsed into one network call
- Per-endpoint throttling
- Proactive token refresh when the access token is about to expire
- Retry with backoff on 429, 5xx and transport failures
- One refresh-and-retry on 401
- Failures and successes are reported to the connectivity monitor
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import aiohttp
import orjson
from pydantic import ValidationError

from expensetracker.connectors.api.refresh import TokenRefreshCoordinator
from expensetracker.connectors.api.token_store import (
    InMemoryKeyValueStore,
    TokenStore,
    seconds_until_expiry,
)
from expensetracker.connectors.api.types import (
    IDEMPOTENT_METHODS,
    ClientConfig,
    ClientMetrics,
    Envelope,
)
from expensetracker.connectors.backoff import (
    ApiError,
    AuthExpiredError,
    BackoffConfig,
    ErrorKind,
    NetworkError,
    RateLimitError,
    RequestAbortedError,
    RequestError,
    classify_status,
    compute_backoff_delay,
    parse_retry_after,
)
from expensetracker.connectors.throttle import ThrottleLedger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from expensetracker.connectors.connectivity import ConnectivityObserver

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."
INVALID_JSON_MESSAGE = "Invalid JSON response"


class _RawResponse:
    """Status, headers and body of one HTTP attempt, read before the connection is released."""

    __slots__ = ("status", "reason", "retry_after", "body")

    def __init__(self, status: int, reason: str | None, retry_after: str | None, body: bytes) -> None:
        self.status = status
        self.reason = reason
        self.retry_after = retry_after
        self.body = body

    def json(self) -> Any:
        """
        Decoded body, or None if the body is empty.

        Raises:
            orjson.JSONDecodeError: Body is present but not JSON.
        """
        if not self.body.strip():
            return None
        return orjson.loads(self.body)

    def error_message(self) -> str:
        try:
            payload = self.json()
        except orjson.JSONDecodeError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("message"), str):
            return payload["message"]
        return f"HTTP {self.status}: {self.reason or ''}".rstrip()


def _consume_outcome(task: asyncio.Task[Envelope]) -> None:
    # Retrieve the outcome so a task whose callers all gave up does not log a warning
    if not task.cancelled():
        task.exception()


def _refresh_allowed(url: str) -> bool:
    """401 on auth endpoints means bad credentials, except for the session check."""
    path = urlsplit(url).path
    return "/auth/" not in path or "/auth/me" in path


class ApiClient:
    """
    Async client for the expense API.

    Usage:
        async with ApiClient(ClientConfig(base_url="https://api.example.com/api")) as client:
            envelope = await client.get("/transactions?page=1")
            print(envelope.data)
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        token_store: TokenStore | None = None,
        refresher: TokenRefreshCoordinator | None = None,
        throttle: ThrottleLedger | None = None,
        observer: ConnectivityObserver | None = None,
        session: aiohttp.ClientSession | None = None,
        *,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            config: Client configuration.
            token_store: Token persistence. Defaults to an in-memory store.
            refresher: Shared refresh coordinator. Created if not given.
            throttle: Shared throttle ledger. Created if not given.
            observer: Connectivity monitor receiving request outcomes.
            session: Shared aiohttp session. If None, one is created lazily
                and closed by close().
            sleep_fn: Sleep used between retries (tests).
        """
        self._config = config or ClientConfig()
        self._tokens = token_store or TokenStore(InMemoryKeyValueStore())
        self._observer = observer
        self._session = session
        self._owns_session = session is None
        self._refresher = refresher or TokenRefreshCoordinator(
            self._tokens,
            self._config.refresh_url,
            session=session,
            observer=observer,
            request_timeout_s=self._config.request_timeout_s,
        )
        self._owns_refresher = refresher is None
        self._throttle = throttle or ThrottleLedger(self._config.throttle)
        self._sleep_fn = sleep_fn
        self._timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_s)

        self._inflight: dict[str, asyncio.Task[Envelope]] = {}
        # Mutating calls run to completion even if their caller goes away
        self._detached: set[asyncio.Task[Envelope]] = set()
        self._closing = False
        self.metrics = ClientMetrics()

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def token_store(self) -> TokenStore:
        return self._tokens

    @property
    def refresher(self) -> TokenRefreshCoordinator:
        return self._refresher

    @property
    def throttle(self) -> ThrottleLedger:
        return self._throttle

    @property
    def inflight_count(self) -> int:
        return len(self._inflight) + len(self._detached)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Abort calls still in flight and close owned HTTP sessions."""
        pending = [*self._inflight.values(), *self._detached]
        if pending:
            logger.info("Aborting in-flight requests", extra={"pending": len(pending)})
            self._closing = True
            try:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            finally:
                self._closing = False
        if self._owns_refresher:
            await self._refresher.close()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _sleep(self, seconds: float) -> None:
        if self._sleep_fn is not None:
            await self._sleep_fn(seconds)
        else:
            await asyncio.sleep(seconds)

    def _report_error(self, error: BaseException) -> None:
        if self._observer is not None:
            self._observer.report_error(error)

    def _report_success(self) -> None:
        if self._observer is not None:
            self._observer.report_success()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        retry_options: BackoffConfig | None = None,
    ) -> Envelope:
        """
        Execute a request through the full pipeline.

        Args:
            method: HTTP method.
            url: Absolute URL, or a path relative to the configured base URL.
            body: JSON-serializable request body.
            headers: Extra headers. Authorization is always set from the token store.
            retry_options: Overrides the configured backoff for this call.

        Returns:
            The response envelope.

        Raises:
            RateLimitError: 429 persisted after all retries.
            AuthExpiredError: 401 and the token could not be refreshed.
            RequestError: Non-retryable 4xx, 5xx after all retries, or a
                2xx body that is not JSON.
            NetworkError: Transport failures after all retries.
            RequestAbortedError: The client was closed while the call was in flight.

        Cancelling the caller does not cancel the HTTP call: it runs to
        completion in its own task and still updates metrics and ledgers.
        """
        method = method.upper()
        full_url = self._config.url_for(url)
        self.metrics.requests += 1

        if method not in IDEMPOTENT_METHODS:
            detached = asyncio.create_task(self._execute(method, full_url, body, headers, retry_options))
            self._detached.add(detached)
            detached.add_done_callback(self._forget)
            return await asyncio.shield(detached)

        key = f"{method}:{full_url}"
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._execute(method, full_url, body, headers, retry_options))
            self._inflight[key] = task
            task.add_done_callback(partial(self._release, key))
        else:
            self.metrics.deduplicated += 1
            logger.debug("Request already in progress, waiting", extra={"method": method})
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task[Envelope]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        _consume_outcome(task)

    def _forget(self, task: asyncio.Task[Envelope]) -> None:
        self._detached.discard(task)
        _consume_outcome(task)

    async def get(self, url: str, headers: Mapping[str, str] | None = None, **kwargs: Any) -> Envelope:
        return await self.execute("GET", url, headers=headers, **kwargs)

    async def post(
        self, url: str, body: Any = None, headers: Mapping[str, str] | None = None, **kwargs: Any
    ) -> Envelope:
        return await self.execute("POST", url, body=body, headers=headers, **kwargs)

    async def put(
        self, url: str, body: Any = None, headers: Mapping[str, str] | None = None, **kwargs: Any
    ) -> Envelope:
        return await self.execute("PUT", url, body=body, headers=headers, **kwargs)

    async def patch(
        self, url: str, body: Any = None, headers: Mapping[str, str] | None = None, **kwargs: Any
    ) -> Envelope:
        return await self.execute("PATCH", url, body=body, headers=headers, **kwargs)

    async def delete(self, url: str, headers: Mapping[str, str] | None = None, **kwargs: Any) -> Envelope:
        return await self.execute("DELETE", url, headers=headers, **kwargs)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _refresh_if_expiring(self) -> None:
        """Refresh before sending if the access token expires within the threshold."""
        token = await self._tokens.get_access_token()
        if not token:
            return
        remaining = seconds_until_expiry(token)
        if remaining is None:
            return
        if remaining < self._config.proactive_refresh_threshold_s:
            logger.info("Token expiring soon, refreshing proactively", extra={"remaining_s": int(remaining)})
            self.metrics.proactive_refreshes += 1
            await self._refresher.refresh()

    async def _execute(
        self,
        method: str,
        url: str,
        body: Any,
        headers: Mapping[str, str] | None,
        retry_options: BackoffConfig | None,
    ) -> Envelope:
        try:
            envelope = await self._execute_with_retry(method, url, body, headers, retry_options)
        except ApiError:
            self.metrics.failed += 1
            raise
        except asyncio.CancelledError:
            if not self._closing:
                raise
            self.metrics.aborted += 1
            error = RequestAbortedError("Client closed while request was in flight")
            self._report_error(error)
            raise error from None
        self.metrics.succeeded += 1
        return envelope

    async def _execute_with_retry(
        self,
        method: str,
        url: str,
        body: Any,
        headers: Mapping[str, str] | None,
        retry_options: BackoffConfig | None,
    ) -> Envelope:
        backoff = retry_options or self._config.backoff

        await self._throttle.acquire(urlsplit(url).path)
        await self._refresh_if_expiring()

        refresh_tried = False
        attempt = 0
        while True:
            token = await self._tokens.get_access_token()
            logger.debug(
                "Sending request",
                extra={"method": method, "attempt": attempt + 1, "max_attempts": backoff.max_retries + 1},
            )

            try:
                response = await self._send(method, url, body, headers, token)
            except (aiohttp.ClientError, TimeoutError) as e:
                self.metrics.network_errors += 1
                error = NetworkError(f"Network request failed: {type(e).__name__}")
                self._report_error(error)
                logger.warning(
                    "Request failed",
                    extra={"error_type": type(e).__name__, "attempt": attempt + 1},
                )
                if attempt >= backoff.max_retries:
                    raise error from e
                await self._backoff(backoff, attempt)
                attempt += 1
                continue

            self._report_success()
            status = response.status
            kind = classify_status(status)

            if kind is None:
                return self._parse_envelope(response)

            if kind == ErrorKind.RATE_LIMITED:
                self.metrics.rate_limited += 1
                retry_after_ms = parse_retry_after(response.retry_after)
                logger.warning(
                    "Rate limit hit",
                    extra={"status": status, "retry_after_ms": retry_after_ms, "attempt": attempt + 1},
                )
                if attempt >= backoff.max_retries:
                    raise RateLimitError(RATE_LIMIT_MESSAGE, retry_after_ms=retry_after_ms)
                await self._backoff(backoff, attempt, retry_after_ms)
                attempt += 1
                continue

            if kind == ErrorKind.AUTH_EXPIRED:
                if refresh_tried:
                    raise AuthExpiredError()
                if not token or not _refresh_allowed(url):
                    raise RequestError(response.error_message(), status)
                refresh_tried = True
                current = await self._tokens.get_access_token()
                if current and current != token:
                    # Another caller refreshed while this request was out
                    logger.debug("401 with a superseded token, retrying with the stored one")
                    continue
                self.metrics.auth_refreshes += 1
                logger.info("401 received, attempting token refresh")
                if not await self._refresher.refresh():
                    logger.warning("Token refresh failed, login required")
                    raise AuthExpiredError()
                # Same attempt, new token
                continue

            if kind == ErrorKind.SERVER:
                error = RequestError(response.error_message(), status)
                logger.error("Server error", extra={"status": status, "attempt": attempt + 1})
                if attempt >= backoff.max_retries:
                    raise error
                await self._backoff(backoff, attempt)
                attempt += 1
                continue

            logger.warning("Request rejected", extra={"status": status})
            raise RequestError(response.error_message(), status)

    async def _backoff(self, config: BackoffConfig, attempt: int, retry_after_ms: int | None = None) -> None:
        delay_ms = compute_backoff_delay(config, attempt, retry_after_ms)
        self.metrics.retries += 1
        logger.info("Backing off before retry", extra={"delay_ms": delay_ms, "attempt": attempt + 1})
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000)

    async def _send(
        self,
        method: str,
        url: str,
        body: Any,
        headers: Mapping[str, str] | None,
        token: str | None,
    ) -> _RawResponse:
        request_headers = {"Content-Type": "application/json"}
        if headers:
            request_headers.update(headers)
        if token:
            request_headers["Authorization"] = f"Bearer {token}"

        data = orjson.dumps(body) if body is not None else None

        self.metrics.dispatched += 1
        session = await self._get_session()
        async with session.request(
            method,
            url,
            data=data,
            headers=request_headers,
            timeout=self._timeout,
        ) as response:
            return _RawResponse(
                status=response.status,
                reason=response.reason,
                retry_after=response.headers.get("Retry-After"),
                body=await response.read(),
            )

    @staticmethod
    def _parse_envelope(response: _RawResponse) -> Envelope:
        try:
            payload = response.json()
        except orjson.JSONDecodeError:
            # Captive portals and proxies answer 200 with an HTML page
            logger.warning("Response body is not JSON", extra={"status": response.status})
            raise RequestError(INVALID_JSON_MESSAGE, response.status, kind=ErrorKind.SERVER) from None
        if payload is None:
            return Envelope(success=True, status=response.status)
        if isinstance(payload, dict) and "success" in payload:
            try:
                return Envelope.model_validate({**payload, "status": response.status})
            except ValidationError:
                logger.warning("Malformed response envelope", extra={"status": response.status})
        return Envelope(success=True, data=payload, status=response.status)
