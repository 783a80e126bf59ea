"""
Prometheus metrics exporter for the expense API client.

Exports low-cardinality metrics only. No endpoint, URL, user or token labels.

Metric families:
- expensetracker_client_*   : request executor
- expensetracker_refresh_*  : token refresh coordinator
- expensetracker_throttle_* : per-endpoint throttle ledger (aggregated)
- expensetracker_conn_*     : connectivity monitor
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

if TYPE_CHECKING:
    from expensetracker.connectors.api.types import ClientMetrics, RefreshMetrics
    from expensetracker.connectors.connectivity import ConnectivityMonitor
    from expensetracker.connectors.throttle import ThrottleMetrics


# Forbidden labels that would cause cardinality explosion or leak user data
FORBIDDEN_LABELS = frozenset(
    {
        "endpoint",
        "path",
        "url",
        "query",
        "ip",
        "request_id",
        "user_id",
        "email",
        "token",
    }
)

# (family, field on the metrics dataclass, help text)
_COUNTERS: tuple[tuple[str, str, str], ...] = (
    ("client", "requests", "Logical requests submitted to the executor"),
    ("client", "dispatched", "HTTP attempts sent, including retries"),
    ("client", "succeeded", "Requests that returned an envelope"),
    ("client", "failed", "Requests that raised an API error"),
    ("client", "deduplicated", "Callers that joined an identical in-flight request"),
    ("client", "retries", "Backoff waits before a retry"),
    ("client", "rate_limited", "429 responses received"),
    ("client", "auth_refreshes", "Refreshes triggered by a 401"),
    ("client", "proactive_refreshes", "Refreshes triggered by a nearly expired token"),
    ("client", "network_errors", "Attempts that failed without an HTTP response"),
    ("client", "aborted", "Requests aborted because the client was closed"),
    ("refresh", "attempts", "Refresh calls sent"),
    ("refresh", "successes", "Refresh calls that stored a new access token"),
    ("refresh", "failures", "Refresh calls that were rejected or failed"),
    ("refresh", "joined", "Callers that awaited an in-progress refresh"),
    ("throttle", "acquired", "Throttle slots granted"),
    ("throttle", "delayed", "Requests that had to wait for a throttle slot"),
    ("throttle", "total_wait_ms", "Total time spent waiting for throttle slots in milliseconds"),
    ("conn", "probes", "Connectivity probes run"),
    ("conn", "probe_failures", "Connectivity probes that found no network"),
    ("conn", "debounced", "Probe requests skipped by the debounce window"),
    ("conn", "reported_failures", "Network failures reported by the request layer"),
    ("conn", "transitions_offline", "Transitions to OFFLINE"),
    ("conn", "transitions_online", "Transitions from OFFLINE back to ONLINE"),
)


class MetricsExporter:
    """
    Prometheus metrics exporter for the client components.

    Component metrics are plain monotonic counters; update() increments the
    Prometheus counters by the delta since the previous update.

    Usage:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(
            client_metrics=api.client.metrics,
            refresh_metrics=api.refresher.metrics,
            throttle_metrics=api.throttle.metrics,
            monitor=api.monitor,
        )
        # generate_latest(registry) -> bytes for /metrics endpoint
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """
        Initialize metrics exporter.

        Args:
            registry: Prometheus CollectorRegistry. If None, a private one is created.
        """
        self._registry = registry or CollectorRegistry()

        self._counters: dict[tuple[str, str], Counter] = {
            (family, field): Counter(
                f"expensetracker_{family}_{field}",
                help_text,
                registry=self._registry,
            )
            for family, field, help_text in _COUNTERS
        }
        # Last seen values (counters are monotonic)
        self._last: dict[tuple[str, str], int] = dict.fromkeys(self._counters, 0)

        self._client_inflight = Gauge(
            "expensetracker_client_inflight",
            "Deduplicated requests currently in flight",
            registry=self._registry,
        )
        self._conn_connected = Gauge(
            "expensetracker_conn_connected",
            "1 if the monitor considers the network reachable",
            registry=self._registry,
        )
        self._conn_offline_mode = Gauge(
            "expensetracker_conn_offline_mode",
            "1 if the offline screen should be shown",
            registry=self._registry,
        )
        self._conn_consecutive_failures = Gauge(
            "expensetracker_conn_consecutive_failures",
            "Consecutive connectivity failures since the last success",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        """Get the Prometheus CollectorRegistry."""
        return self._registry

    def update(
        self,
        client_metrics: ClientMetrics | None = None,
        refresh_metrics: RefreshMetrics | None = None,
        throttle_metrics: ThrottleMetrics | None = None,
        monitor: ConnectivityMonitor | None = None,
        *,
        inflight_requests: int | None = None,
    ) -> None:
        """
        Sync component metrics to Prometheus.

        Call this periodically (e.g., every scrape or on a timer).
        """
        if client_metrics is not None:
            self._update_family("client", client_metrics)
        if refresh_metrics is not None:
            self._update_family("refresh", refresh_metrics)
        if throttle_metrics is not None:
            self._update_family("throttle", throttle_metrics)
        if monitor is not None:
            self._update_family("conn", monitor.metrics)
            status = monitor.status
            self._conn_connected.set(1 if status.is_connected else 0)
            self._conn_offline_mode.set(1 if status.is_offline_mode else 0)
            self._conn_consecutive_failures.set(status.consecutive_failures)
        if inflight_requests is not None:
            self._client_inflight.set(inflight_requests)

    def _update_family(self, family: str, metrics: Any) -> None:
        for (counter_family, field), counter in self._counters.items():
            if counter_family != family:
                continue
            current = getattr(metrics, field)
            delta = current - self._last[(family, field)]
            if delta > 0:
                counter.inc(delta)
            self._last[(family, field)] = current

    def reset_counter_tracking(self) -> None:
        """
        Reset internal counter tracking.

        Use when components are recreated. Does NOT reset the Prometheus
        counters themselves.
        """
        self._last = dict.fromkeys(self._counters, 0)


# Counters are exported with _total suffix by prometheus_client
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {f"expensetracker_{family}_{field}_total" for family, field, _ in _COUNTERS}
    | {
        "expensetracker_client_inflight",
        "expensetracker_conn_connected",
        "expensetracker_conn_offline_mode",
        "expensetracker_conn_consecutive_failures",
    }
)
