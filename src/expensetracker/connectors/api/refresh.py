"""
Single-flight access token refresh.

However many requests hit 401 (or see a nearly expired token) at the same time,
exactly one POST /auth/refresh is issued and every caller gets its outcome.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import aiohttp
import orjson
from pydantic import ValidationError

from expensetracker.connectors.api.types import RefreshMetrics, TokenGrant
from expensetracker.connectors.backoff import NetworkError

if TYPE_CHECKING:
    from expensetracker.connectors.api.token_store import TokenStore
    from expensetracker.connectors.connectivity import ConnectivityObserver

logger = logging.getLogger(__name__)


class TokenRefreshCoordinator:
    """
    Serializes refresh-token exchanges.

    The in-progress refresh is held as a single task. Callers await it through
    asyncio.shield, so a caller that gives up (screen unmounted) does not cancel
    the refresh everyone else is waiting for. The slot is cleared as soon as the
    task settles, whatever the outcome.
    """

    def __init__(
        self,
        token_store: TokenStore,
        refresh_url: str,
        session: aiohttp.ClientSession | None = None,
        observer: ConnectivityObserver | None = None,
        request_timeout_s: float = 30.0,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            token_store: Where tokens are read from and persisted to.
            refresh_url: Absolute URL of the refresh endpoint.
            session: Shared aiohttp session. If None, one is created lazily.
            observer: Receives network failures as connectivity evidence.
            request_timeout_s: Transport timeout for the refresh call.
        """
        self._token_store = token_store
        self._refresh_url = refresh_url
        self._session = session
        self._owns_session = session is None
        self._observer = observer
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_s)
        self._inflight: asyncio.Task[bool] | None = None
        self.metrics = RefreshMetrics()

    @property
    def is_refreshing(self) -> bool:
        """True while a refresh call is in progress."""
        return self._inflight is not None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close an owned HTTP session."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    async def refresh(self) -> bool:
        """
        Obtain and persist a new access token.

        Returns:
            True if a new access token was stored, False if refresh is
            impossible (no refresh token, rejected, network failure).
        """
        task = self._inflight
        if task is None:
            task = asyncio.create_task(self._run())
            task.add_done_callback(self._clear_slot)
            self._inflight = task
        else:
            self.metrics.joined += 1
            logger.debug("Token refresh already in progress, waiting")
        return await asyncio.shield(task)

    def _clear_slot(self, task: asyncio.Task[bool]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _run(self) -> bool:
        try:
            return await self._perform_refresh()
        finally:
            self._inflight = None

    async def _perform_refresh(self) -> bool:
        stored_refresh_token = await self._token_store.get_refresh_token()
        if not stored_refresh_token:
            logger.warning("No refresh token available")
            return False

        self.metrics.attempts += 1
        logger.info("Refreshing access token")

        try:
            session = await self._get_session()
            async with session.post(
                self._refresh_url,
                data=orjson.dumps({"refreshToken": stored_refresh_token}),
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            ) as response:
                status = response.status
                body = await response.read()
        except (aiohttp.ClientError, TimeoutError) as e:
            self.metrics.failures += 1
            logger.error("Token refresh request failed", extra={"error_type": type(e).__name__})
            if self._observer is not None:
                self._observer.report_error(NetworkError(f"Token refresh failed: {e}"))
            return False

        if self._observer is not None:
            self._observer.report_success()

        if not 200 <= status < 300:
            self.metrics.failures += 1
            logger.warning("Refresh token request rejected", extra={"status": status})
            return False

        try:
            payload = orjson.loads(body) if body else {}
        except orjson.JSONDecodeError:
            self.metrics.failures += 1
            logger.warning("Refresh response is not JSON", extra={"status": status})
            return False

        if not isinstance(payload, dict) or not payload.get("success"):
            self.metrics.failures += 1
            logger.warning("Refresh response reported failure")
            return False

        try:
            grant = TokenGrant.model_validate(payload.get("data") or {})
        except ValidationError:
            self.metrics.failures += 1
            logger.warning("Refresh response missing tokens")
            return False

        await self._token_store.set_access_token(grant.access_token)
        if grant.refresh_token and grant.refresh_token != stored_refresh_token:
            logger.info("Refresh token was rotated")
            await self._token_store.set_refresh_token(grant.refresh_token)

        self.metrics.successes += 1
        logger.info("Access token refreshed")
        return True
