"""
Tests for scripts/check_api.py: probe, optional GET and exit codes.
"""

from __future__ import annotations

import asyncio
import io
from typing import Any

import orjson
import pytest

from expensetracker.connectors.api.types import ClientConfig
from expensetracker.connectors.connectivity import ConnectivityConfig
from scripts.check_api import CheckOptions, build_config, main, run_check
from tests.fixtures.fake_api import FakeApiServer, Reply, closed_port_url, ok


def _config(base_url: str, probe_url: str, initial_probe_delay_ms: int = 60_000) -> ClientConfig:
    return ClientConfig(
        base_url=base_url,
        connectivity=ConnectivityConfig(
            probe_url=probe_url,
            probe_timeout_ms=200,
            poll_interval_ms=0,
            initial_probe_delay_ms=initial_probe_delay_ms,
        ),
    )


def _events(output: io.StringIO) -> list[dict[str, Any]]:
    return [orjson.loads(line) for line in output.getvalue().splitlines()]


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "EXPENSE_API_BASE_URL",
        "EXPENSE_PROBE_URL",
        "EXPENSE_REQUEST_TIMEOUT_S",
        "EXPENSE_REFRESH_THRESHOLD_S",
    ):
        monkeypatch.delenv(name, raising=False)


class TestBuildConfig:
    def test_overrides(self, clean_env: None) -> None:
        config = build_config("https://api.example.com/api", "https://probe.example.com/ping")
        assert config.base_url == "https://api.example.com/api"
        assert config.connectivity.probe_url == "https://probe.example.com/ping"
        assert config.connectivity.fallback_url == "https://api.example.com/api/auth/me"

    def test_defaults(self, clean_env: None) -> None:
        config = build_config(None, None)
        assert config.base_url == "http://localhost:5000/api"
        assert config.connectivity.probe_url == "https://www.google.com"

    def test_invalid_base_url_exits_1(self, clean_env: None) -> None:
        assert main(["--base-url", "api.example.com"]) == 1


class TestRunCheck:
    @pytest.mark.asyncio
    async def test_online_with_successful_get(self) -> None:
        server = FakeApiServer()
        await server.start()
        try:
            server.script("HEAD", "/probe", Reply(204))
            server.script("GET", "/api/health", ok({"db": "up"}))
            output = io.StringIO()

            code = await run_check(
                CheckOptions(
                    config=_config(server.base_url, f"{server.origin}/probe"),
                    get_path="/health",
                    output=output,
                )
            )

            assert code == 0
            probe, get = _events(output)
            assert probe["event"] == "probe"
            assert probe["online"] is True
            assert probe["state"] == "ONLINE"
            assert get == {"event": "get", "ok": True, "status": 200}
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_single_connectivity_check_per_run(self) -> None:
        server = FakeApiServer()
        await server.start()
        try:
            server.script("HEAD", "/probe", Reply(204, delay_s=0.05))
            output = io.StringIO()

            code = await run_check(
                CheckOptions(
                    config=_config(server.base_url, f"{server.origin}/probe", initial_probe_delay_ms=0),
                    output=output,
                )
            )
            await asyncio.sleep(0.1)

            assert code == 0
            assert len(server.calls("HEAD", "/probe")) == 1
            assert len(_events(output)) == 1
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_failed_get_exits_1(self) -> None:
        server = FakeApiServer()
        await server.start()
        try:
            server.script("HEAD", "/probe", Reply(200))
            server.script("GET", "/api/auth/me", Reply(401, {"success": False, "message": "Not logged in"}))
            output = io.StringIO()

            code = await run_check(
                CheckOptions(
                    config=_config(server.base_url, f"{server.origin}/probe"),
                    get_path="/auth/me",
                    output=output,
                )
            )

            assert code == 1
            get = _events(output)[1]
            assert get == {"event": "get", "ok": False, "kind": "CLIENT", "message": "Not logged in"}
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_unreachable_network_exits_1(self) -> None:
        dead = await closed_port_url()
        output = io.StringIO()

        code = await run_check(CheckOptions(config=_config(f"{dead}/api", f"{dead}/probe"), output=output))

        assert code == 1
        (probe,) = _events(output)
        assert probe["online"] is False
        assert probe["consecutive_failures"] == 1

    @pytest.mark.asyncio
    async def test_fallback_probe_counts_as_online(self) -> None:
        server = FakeApiServer()
        await server.start()
        try:
            server.script("HEAD", "/probe", Reply(503))
            server.script("HEAD", "/api/auth/me", Reply(401))
            output = io.StringIO()

            code = await run_check(
                CheckOptions(config=_config(server.base_url, f"{server.origin}/probe"), output=output)
            )

            assert code == 0
            assert len(server.calls("HEAD", "/api/auth/me")) == 1
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_watch_reports_connectivity_events(self) -> None:
        server = FakeApiServer()
        await server.start()
        try:
            server.script("HEAD", "/probe", Reply(200))
            output = io.StringIO()

            code = await run_check(
                CheckOptions(
                    config=_config(server.base_url, f"{server.origin}/probe"),
                    watch_s=0.2,
                    output=output,
                )
            )

            assert code == 0
            events = [e["event"] for e in _events(output)]
            assert events[0] == "probe"
            assert "connectivity" in events[1:]
        finally:
            await server.stop()
