#!/usr/bin/env python3
"""
Connectivity and API health check.

Runs one connectivity probe through the same monitor the app uses and,
optionally, one GET through the full request pipeline.

Usage:
    python -m scripts.check_api --base-url https://api.example.com/api
    python -m scripts.check_api --base-url http://localhost:5000/api --get /health
    python -m scripts.check_api --watch-s 300 --metrics-port 9090  # keep probing, serve /metrics

Exit code 0 if the network is reachable (and the GET succeeded), 1 otherwise.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass
from typing import TextIO

import orjson
from prometheus_client.registry import CollectorRegistry

from expensetracker.connectors.api import ApiSession, ClientConfig
from expensetracker.connectors.backoff import ApiError
from expensetracker.connectors.connectivity import ConnectivityConfig, ConnectivityStatus
from expensetracker.connectors.exporter import MetricsExporter
from expensetracker.connectors.metrics_server import start_metrics_server, stop_metrics_server
from expensetracker.logging_config import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class CheckOptions:
    """Options for one check run."""

    config: ClientConfig
    get_path: str | None = None
    watch_s: float = 0.0
    metrics_port: int = 0
    output: TextIO | None = None


def build_config(base_url: str | None, probe_url: str | None) -> ClientConfig:
    """Environment config with command-line overrides applied."""
    overrides: dict[str, object] = {}
    if base_url:
        overrides["base_url"] = base_url
    if probe_url:
        overrides["connectivity"] = ConnectivityConfig(probe_url=probe_url)
    return ClientConfig.from_env(**overrides)


def _emit(output: TextIO, payload: dict[str, object]) -> None:
    output.write(orjson.dumps(payload, default=str).decode() + "\n")
    output.flush()


async def _watch(api: ApiSession, options: CheckOptions, output: TextIO) -> None:
    registry = CollectorRegistry()
    exporter = MetricsExporter(registry=registry)
    runner = None
    if options.metrics_port:
        runner = await start_metrics_server(registry, port=options.metrics_port, health_fn=api.get_status)

    def on_change(status: ConnectivityStatus) -> None:
        _emit(output, {"event": "connectivity", "state": status.state.value})

    unsubscribe = api.monitor.subscribe(on_change)
    deadline = time.monotonic() + options.watch_s
    try:
        while time.monotonic() < deadline:
            await api.monitor.force_offline_check()
            exporter.update(
                client_metrics=api.client.metrics,
                refresh_metrics=api.refresher.metrics,
                throttle_metrics=api.throttle.metrics,
                monitor=api.monitor,
                inflight_requests=api.client.inflight_count,
            )
            await asyncio.sleep(min(1.0, max(deadline - time.monotonic(), 0.0)))
    finally:
        unsubscribe()
        if runner is not None:
            await stop_metrics_server(runner)


async def run_check(options: CheckOptions) -> int:
    """
    Probe connectivity, optionally GET a path, and report as JSON lines.

    Returns:
        Process exit code.
    """
    output = options.output or sys.stdout
    ok = True

    api = ApiSession(options.config)
    # The explicit probe below is the initial check
    await api.start(initial_probe=False)
    try:
        online = await api.monitor.probe()
        _emit(output, {"event": "probe", "online": online, **api.monitor.get_status()})
        ok = online

        if options.get_path:
            try:
                envelope = await api.client.get(options.get_path)
            except ApiError as e:
                logger.error("Request failed", extra={"error_kind": e.kind.value, "status": e.status})
                _emit(output, {"event": "get", "ok": False, "kind": e.kind.value, "message": e.message})
                ok = False
            else:
                _emit(output, {"event": "get", "ok": envelope.success, "status": envelope.status})
                ok = ok and envelope.success

        if options.watch_s > 0:
            await _watch(api, options, output)
    finally:
        await api.close()

    return 0 if ok else 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Check connectivity and API reachability.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--base-url",
        type=str,
        default=None,
        help="API base URL (default: EXPENSE_API_BASE_URL or http://localhost:5000/api)",
    )
    parser.add_argument(
        "--probe-url",
        type=str,
        default=None,
        help="Primary connectivity probe URL (default: EXPENSE_PROBE_URL or https://www.google.com)",
    )
    parser.add_argument(
        "--get",
        dest="get_path",
        type=str,
        default=None,
        help="Also GET this path through the full client (e.g. /auth/me)",
    )
    parser.add_argument(
        "--watch-s",
        type=float,
        default=0.0,
        help="Keep probing for N seconds and print state changes (default: 0, off)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=0,
        help="Serve /metrics and /healthz on this port while watching (0 to disable)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines instead of human-readable ones",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.json_logs,
    )

    try:
        config = build_config(args.base_url, args.probe_url)
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    options = CheckOptions(
        config=config,
        get_path=args.get_path,
        watch_s=args.watch_s,
        metrics_port=args.metrics_port,
    )
    return asyncio.run(run_check(options))


if __name__ == "__main__":
    sys.exit(main())
