"""
Scriptable fake expense backend for integration tests.

Replies are queued per (method, path); the last reply repeats once the queue
is down to one. A reply may be a callable that inspects the recorded request.
"""

from __future__ import annotations

import asyncio
import base64
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import aiohttp.web
import orjson


@dataclass
class Reply:
    """One scripted response."""

    status: int = 200
    body: Any = None  # JSON-serialized unless bytes
    headers: dict[str, str] = field(default_factory=dict)
    delay_s: float = 0.0


@dataclass
class RecordedRequest:
    method: str
    path: str
    query: dict[str, str]
    headers: dict[str, str]
    body: Any

    @property
    def bearer(self) -> str | None:
        auth = self.headers.get("Authorization", "")
        return auth[len("Bearer ") :] if auth.startswith("Bearer ") else None


ReplyFn = Callable[[RecordedRequest], Reply]


def make_token(exp_offset_s: float, *, now: float | None = None, sub: str = "user-1") -> str:
    """Unsigned three-part token whose exp is now + exp_offset_s."""

    def segment(payload: dict[str, Any]) -> str:
        return base64.urlsafe_b64encode(orjson.dumps(payload)).rstrip(b"=").decode()

    issued = time.time() if now is None else now
    header = segment({"alg": "HS256", "typ": "JWT"})
    claims = segment({"sub": sub, "exp": int(issued + exp_offset_s)})
    return f"{header}.{claims}.signature"


def ok(data: Any = None, **extra: Any) -> Reply:
    """Success envelope reply."""
    return Reply(200, {"success": True, "data": data, **extra})


class FakeApiServer:
    """aiohttp.web server bound to an ephemeral port on 127.0.0.1."""

    def __init__(self) -> None:
        self._routes: dict[tuple[str, str], list[Reply | ReplyFn]] = {}
        self.requests: list[RecordedRequest] = []
        self._runner: aiohttp.web.AppRunner | None = None
        self.port: int = 0

    def script(self, method: str, path: str, *replies: Reply | ReplyFn) -> None:
        """Queue replies for a route, replacing any previous script."""
        self._routes[(method.upper(), path)] = list(replies)

    def calls(self, method: str, path: str) -> list[RecordedRequest]:
        return [r for r in self.requests if r.method == method.upper() and r.path == path]

    async def _handler(self, request: aiohttp.web.Request) -> aiohttp.web.StreamResponse:
        raw = await request.read()
        try:
            body = orjson.loads(raw) if raw else None
        except orjson.JSONDecodeError:
            body = raw.decode(errors="replace")
        recorded = RecordedRequest(
            method=request.method,
            path=request.path,
            query=dict(request.query),
            headers=dict(request.headers),
            body=body,
        )
        self.requests.append(recorded)

        queue = self._routes.get((request.method, request.path))
        if not queue:
            reply = Reply(404, {"success": False, "message": "Not found"})
        else:
            scripted = queue.pop(0) if len(queue) > 1 else queue[0]
            reply = scripted(recorded) if callable(scripted) else scripted

        if reply.delay_s:
            await asyncio.sleep(reply.delay_s)

        if isinstance(reply.body, bytes):
            payload = reply.body
        elif reply.body is None:
            payload = b""
        else:
            payload = orjson.dumps(reply.body)
        return aiohttp.web.Response(
            status=reply.status,
            body=payload,
            headers=reply.headers,
            content_type="application/json" if payload else None,
        )

    async def start(self) -> None:
        app = aiohttp.web.Application()
        app.router.add_route("*", "/{tail:.*}", self._handler)
        self._runner = aiohttp.web.AppRunner(app)
        await self._runner.setup()
        site = aiohttp.web.TCPSite(self._runner, "127.0.0.1", 0)
        await site.start()
        assert self._runner.addresses
        self.port = self._runner.addresses[0][1]

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    @property
    def origin(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    @property
    def base_url(self) -> str:
        return f"{self.origin}/api"


async def closed_port_url() -> str:
    """Origin of a port that was just released, so connections are refused."""
    server = FakeApiServer()
    await server.start()
    origin = server.origin
    await server.stop()
    return origin
