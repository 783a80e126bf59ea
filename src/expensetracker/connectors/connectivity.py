"""
Connectivity monitor with hysteresis.

Keeps the app usable on flaky cellular networks:
- Starts optimistic (ONLINE) instead of flashing an offline screen at startup
- A single failed request never flips the app offline; required_failures
  consecutive failures do
- Explicit probes are debounced so a dead network is not hammered
- Background polling runs only while SUSPECT/OFFLINE and stops on recovery
- Harmless lifecycle errors (aborted, cancelled, unmounted) are never counted

The monitor never raises from reports, probes or polling. UI code reads
``status`` or subscribes to changes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

import aiohttp

from expensetracker.connectors.backoff import ApiError, ErrorKind

logger = logging.getLogger(__name__)

StatusListener = Callable[["ConnectivityStatus"], None]
ReconnectHandler = Callable[[], Awaitable[None]]

NO_CACHE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class ConnectivityState(str, Enum):
    """User-facing connectivity state."""

    ONLINE = "ONLINE"
    SUSPECT = "SUSPECT"  # Some consecutive failures, below threshold
    OFFLINE = "OFFLINE"
    RECONNECTING = "RECONNECTING"  # Probe outstanding, UI shows "checking..."


@dataclass
class ConnectivityConfig:
    """Tunables for probing and hysteresis."""

    probe_url: str = "https://www.google.com"
    fallback_url: str | None = None  # Usually {api_base}/auth/me
    probe_timeout_ms: int = 1500
    required_failures: int = 3
    debounce_ms: int = 10000
    poll_interval_ms: int = 30000  # 0 disables background polling
    initial_probe_delay_ms: int = 1000

    def __post_init__(self) -> None:
        if not self.probe_url.startswith(("http://", "https://")):
            raise ValueError(f"probe_url must be an http(s) URL, got {self.probe_url!r}")
        if self.probe_timeout_ms <= 0:
            raise ValueError(f"probe_timeout_ms must be > 0, got {self.probe_timeout_ms}")
        if self.required_failures < 1:
            raise ValueError(f"required_failures must be >= 1, got {self.required_failures}")
        if self.debounce_ms < 0:
            raise ValueError(f"debounce_ms must be >= 0, got {self.debounce_ms}")
        if self.poll_interval_ms < 0:
            raise ValueError(f"poll_interval_ms must be >= 0, got {self.poll_interval_ms}")


@dataclass(frozen=True)
class ConnectivityStatus:
    """Immutable snapshot of connectivity for UI consumers."""

    is_connected: bool
    is_reconnecting: bool
    consecutive_failures: int
    last_check_time: int | None  # ms, None until the first probe

    @property
    def state(self) -> ConnectivityState:
        if self.is_reconnecting:
            return ConnectivityState.RECONNECTING
        if not self.is_connected:
            return ConnectivityState.OFFLINE
        if self.consecutive_failures > 0:
            return ConnectivityState.SUSPECT
        return ConnectivityState.ONLINE

    @property
    def is_offline_mode(self) -> bool:
        """Show the offline screen only when offline and not mid-probe."""
        return not self.is_connected and not self.is_reconnecting


@dataclass
class MonitorMetrics:
    """Counters for connectivity decisions."""

    probes: int = 0
    probe_failures: int = 0
    debounced: int = 0
    reported_failures: int = 0
    ignored_reports: int = 0
    transitions_offline: int = 0
    transitions_online: int = 0


class ConnectivityObserver(Protocol):
    """What the request layer needs from a connectivity monitor."""

    def report_error(self, error: BaseException) -> None: ...

    def report_success(self) -> None: ...


def is_harmless_error(error: BaseException) -> bool:
    """Local lifecycle artifacts that must not count as network evidence."""
    if isinstance(error, asyncio.CancelledError):
        return True
    return isinstance(error, ApiError) and error.kind == ErrorKind.ABORTED


def is_network_evidence(error: BaseException) -> bool:
    """True if the error says something about reachability."""
    if isinstance(error, ApiError):
        return error.kind == ErrorKind.NETWORK
    return isinstance(error, (aiohttp.ClientConnectionError, TimeoutError))


class ConnectivityMonitor:
    """
    Hysteresis state machine over probe results and passive error reports.

    Usage:
        monitor = ConnectivityMonitor(ConnectivityConfig(fallback_url=f"{base}/auth/me"))
        unsubscribe = monitor.subscribe(lambda status: render(status.is_offline_mode))
        await monitor.start()
        ...
        await monitor.force_offline_check()  # user tapped "retry"
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        config: ConnectivityConfig | None = None,
        session: aiohttp.ClientSession | None = None,
        *,
        time_fn: Callable[[], int] | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """
        Initialize the monitor.

        Args:
            config: Probe and hysteresis settings.
            session: Shared aiohttp session. If None, one is created lazily and
                closed by stop().
            time_fn: Clock in milliseconds (tests).
            sleep_fn: Sleep used by the polling loop (tests).
        """
        self._config = config or ConnectivityConfig()
        self._session = session
        self._owns_session = session is None
        self._time_fn = time_fn
        self._sleep_fn = sleep_fn

        self._connected = True  # Optimistic start
        self._reconnecting = False
        self._failures = 0
        self._last_check_time: int | None = None
        self._last_probe_started: int | None = None

        self._listeners: list[StatusListener] = []
        self._reconnect_handlers: list[ReconnectHandler] = []
        self._poll_task: asyncio.Task[None] | None = None
        self._initial_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._stopped = False

        self.metrics = MonitorMetrics()

    @property
    def config(self) -> ConnectivityConfig:
        return self._config

    @property
    def status(self) -> ConnectivityStatus:
        """Current connectivity snapshot."""
        return ConnectivityStatus(
            is_connected=self._connected,
            is_reconnecting=self._reconnecting,
            consecutive_failures=self._failures,
            last_check_time=self._last_check_time,
        )

    @property
    def state(self) -> ConnectivityState:
        return self.status.state

    @property
    def is_offline_mode(self) -> bool:
        return self.status.is_offline_mode

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    async def _sleep(self, seconds: float) -> None:
        if self._sleep_fn is not None:
            await self._sleep_fn(seconds)
        else:
            await asyncio.sleep(seconds)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """
        Register a listener called with a snapshot on every change.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def add_reconnect_handler(self, handler: ReconnectHandler) -> None:
        """Register an async callback run on every OFFLINE -> ONLINE transition."""
        self._reconnect_handlers.append(handler)

    def _notify(self) -> None:
        status = self.status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Connectivity listener failed")

    async def _run_reconnect_handlers(self) -> None:
        for handler in list(self._reconnect_handlers):
            try:
                await handler()
            except Exception:
                logger.exception("Reconnect handler failed")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task: asyncio.Task[None] = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # ------------------------------------------------------------------
    # Passive evidence (ConnectivityObserver)
    # ------------------------------------------------------------------

    def report_error(self, error: BaseException) -> None:
        """
        Count a request failure as connectivity evidence.

        Harmless lifecycle errors and non-network errors are ignored, and so
        is everything while already offline, which prevents offline loops.
        """
        if is_harmless_error(error):
            self.metrics.ignored_reports += 1
            return
        if not is_network_evidence(error):
            self.metrics.ignored_reports += 1
            logger.debug("Not a network error, ignoring", extra={"error_type": type(error).__name__})
            return
        if not self._connected:
            self.metrics.ignored_reports += 1
            logger.debug("Already offline, ignoring network error")
            return

        self.metrics.reported_failures += 1
        logger.warning(
            "Network error reported",
            extra={"error_type": type(error).__name__, "failures": self._failures + 1},
        )
        self._record_failure()

    def report_success(self) -> None:
        """A request got an HTTP response, so the network is reachable."""
        if self._connected and self._failures == 0:
            return
        if self._record_success():
            self._spawn(self._run_reconnect_handlers())

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _record_failure(self) -> None:
        self._failures += 1
        if self._connected and self._failures >= self._config.required_failures:
            self._connected = False
            self.metrics.transitions_offline += 1
            logger.warning(
                "Multiple failures detected - going offline",
                extra={"failures": self._failures, "required": self._config.required_failures},
            )
        self._ensure_polling()
        self._notify()

    def _record_success(self) -> bool:
        """Reset to ONLINE. Returns True if this was an OFFLINE -> ONLINE transition."""
        came_back = not self._connected
        self._failures = 0
        self._connected = True
        self._reconnecting = False
        self._stop_polling()
        if came_back:
            self.metrics.transitions_online += 1
            logger.info("Network restored")
        self._notify()
        return came_back

    # ------------------------------------------------------------------
    # Active probing
    # ------------------------------------------------------------------

    async def check_connection(self) -> bool:
        """
        Probe reachability without touching monitor state.

        Primary: cache-busted HEAD to probe_url, any non-error status is online.
        Fallback: HEAD to fallback_url, any HTTP response at all is online,
        since reachability rather than correctness is being tested.

        Returns:
            True if either probe got a response in time. Never raises.
        """
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self._config.probe_timeout_ms / 1000)

        try:
            async with session.head(
                self._config.probe_url,
                params={"t": str(self._now_ms())},
                headers=NO_CACHE_HEADERS,
                timeout=timeout,
                allow_redirects=True,
            ) as response:
                if response.status < 400:
                    logger.debug("Connectivity confirmed via probe", extra={"status": response.status})
                    return True
                logger.debug("Probe returned error status", extra={"status": response.status})
        except (aiohttp.ClientError, TimeoutError, OSError) as e:
            logger.debug("Primary connectivity probe failed", extra={"error_type": type(e).__name__})

        if not self._config.fallback_url:
            return False

        try:
            async with session.head(
                self._config.fallback_url,
                params={"t": str(self._now_ms())},
                headers=NO_CACHE_HEADERS,
                timeout=timeout,
            ) as response:
                logger.debug("API reachable via fallback probe", extra={"status": response.status})
                return True
        except (aiohttp.ClientError, TimeoutError, OSError) as e:
            logger.debug("All connectivity probes failed", extra={"error_type": type(e).__name__})
            return False

    async def probe(self) -> bool:
        """
        Run one probe and apply its result to the state machine.

        RECONNECTING is shown while the probe is outstanding.

        Returns:
            The probe result.
        """
        self._reconnecting = True
        self._notify()
        try:
            online = await self.check_connection()
        except asyncio.CancelledError:
            self._reconnecting = False
            self._notify()
            raise

        self._reconnecting = False
        self._last_check_time = self._now_ms()
        self.metrics.probes += 1

        if online:
            if self._record_success():
                await self._run_reconnect_handlers()
        else:
            self.metrics.probe_failures += 1
            logger.info(
                "Connectivity probe failed",
                extra={"failures": self._failures + 1, "required": self._config.required_failures},
            )
            self._record_failure()
        return online

    def _debounced(self, now_ms: int) -> bool:
        return (
            self._last_probe_started is not None
            and now_ms - self._last_probe_started < self._config.debounce_ms
        )

    async def force_offline_check(self) -> None:
        """
        Probe now unless a probe started within the debounce window.

        Concurrent callers inside the window are no-ops.
        """
        now_ms = self._now_ms()
        if self._debounced(now_ms):
            self.metrics.debounced += 1
            logger.debug("Network check debounced - too soon since last check")
            return
        self._last_probe_started = now_ms
        await self.probe()

    # ------------------------------------------------------------------
    # Background polling (only while unhealthy)
    # ------------------------------------------------------------------

    def _is_healthy(self) -> bool:
        return self._connected and self._failures == 0

    def _ensure_polling(self) -> None:
        if self._stopped or self._config.poll_interval_ms <= 0 or self.is_polling:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())

    def _stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        # The loop may be the caller (probe succeeded from inside it); it exits on its own
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _poll_loop(self) -> None:
        logger.debug("Starting connectivity polling", extra={"interval_ms": self._config.poll_interval_ms})
        while not self._is_healthy() and not self._stopped:
            await self._sleep(self._config.poll_interval_ms / 1000)
            if self._is_healthy() or self._stopped:
                break
            now_ms = self._now_ms()
            if self._debounced(now_ms):
                self.metrics.debounced += 1
                continue
            self._last_probe_started = now_ms
            await self.probe()
        logger.debug("Connectivity polling stopped")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, initial_probe: bool = True) -> None:
        """Start monitoring. The initial probe runs in the background after a short delay."""
        self._stopped = False
        if initial_probe and self._initial_task is None:
            self._initial_task = asyncio.create_task(self._initial_check())

    async def _initial_check(self) -> None:
        await self._sleep(self._config.initial_probe_delay_ms / 1000)
        self._last_probe_started = self._now_ms()
        online = await self.probe()
        logger.info("Initial network check completed", extra={"online": online})

    async def stop(self) -> None:
        """Cancel background work and close an owned session."""
        self._stopped = True
        tasks = [t for t in (self._poll_task, self._initial_task) if t is not None]
        tasks.extend(self._background_tasks)
        self._poll_task = None
        self._initial_task = None
        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    def get_status(self) -> dict[str, str | int | bool | None]:
        """Get current monitor status for observability."""
        status = self.status
        return {
            "state": status.state.value,
            "is_connected": status.is_connected,
            "is_reconnecting": status.is_reconnecting,
            "is_offline_mode": status.is_offline_mode,
            "consecutive_failures": status.consecutive_failures,
            "last_check_time": status.last_check_time,
            "polling": self.is_polling,
        }
