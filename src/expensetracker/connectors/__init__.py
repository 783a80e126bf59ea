"""Connectors for the expense backend: resilience primitives shared by the API layer."""

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
from expensetracker.connectors.connectivity import (
    ConnectivityConfig,
    ConnectivityMonitor,
    ConnectivityObserver,
    ConnectivityState,
    ConnectivityStatus,
    MonitorMetrics,
)
from expensetracker.connectors.exporter import MetricsExporter
from expensetracker.connectors.throttle import (
    ThrottleConfig,
    ThrottleLedger,
    ThrottleMetrics,
)

__all__ = [
    "ApiError",
    "AuthExpiredError",
    "BackoffConfig",
    "ConnectivityConfig",
    "ConnectivityMonitor",
    "ConnectivityObserver",
    "ConnectivityState",
    "ConnectivityStatus",
    "ErrorKind",
    "MetricsExporter",
    "MonitorMetrics",
    "NetworkError",
    "RateLimitError",
    "RequestAbortedError",
    "RequestError",
    "ThrottleConfig",
    "ThrottleLedger",
    "ThrottleMetrics",
    "classify_status",
    "compute_backoff_delay",
    "parse_retry_after",
]
