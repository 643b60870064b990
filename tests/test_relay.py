import asyncio
from typing import Any, Dict, List

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from scale_bridge.config import RelayConfig
from scale_bridge.relay import RelayClient

PAYLOAD = {
    "weight": 18460.0,
    "unit": "kg",
    "action": "brutto",
    "orderId": "42",
    "photoUrl": None,
    "timestamp": "2024-05-20T10:15:00.000Z",
}


class Collector:
    def __init__(self, status: int = 201, delay: float = 0.0) -> None:
        self.status = status
        self.delay = delay
        self.requests: List[Dict[str, Any]] = []

    async def capture(self, request: web.Request) -> web.Response:
        self.requests.append(
            {"headers": dict(request.headers), "body": await request.json()}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        return web.json_response({"ok": self.status < 300}, status=self.status)

    async def health(self, request: web.Request) -> web.Response:
        if request.headers.get("X-API-Key") != "secret":
            return web.json_response({"error": "unauthorized"}, status=401)
        return web.json_response({"status": "ok"})

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/weights/capture", self.capture)
        app.router.add_get("/api/health", self.health)
        return app


def relay_config(server: TestServer, **overrides) -> RelayConfig:
    values = {
        "enabled": True,
        "backend_url": str(server.make_url("/api")),
        "api_key": "secret",
        "timeout_seconds": 2.0,
    }
    values.update(overrides)
    return RelayConfig(**values)


@pytest.mark.asyncio
async def test_push_posts_payload_with_api_key():
    collector = Collector()
    async with TestServer(collector.app()) as server:
        client = RelayClient(relay_config(server))
        try:
            assert await client.push(PAYLOAD) is True
        finally:
            await client.close()

    (request,) = collector.requests
    assert request["headers"]["X-API-Key"] == "secret"
    assert request["body"]["apiKey"] == "secret"
    assert request["body"]["weight"] == 18460.0
    assert request["body"]["orderId"] == "42"
    assert client.last_success is True
    assert client.last_error is None


@pytest.mark.asyncio
async def test_push_skipped_when_not_configured():
    collector = Collector()
    async with TestServer(collector.app()) as server:
        for config in (
            relay_config(server, enabled=False),
            relay_config(server, api_key=None),
        ):
            client = RelayClient(config)
            assert client.enabled is False
            assert await client.push(PAYLOAD) is False
            await client.close()

    assert collector.requests == []


@pytest.mark.asyncio
async def test_push_reports_server_error():
    collector = Collector(status=500)
    async with TestServer(collector.app()) as server:
        client = RelayClient(relay_config(server))
        try:
            assert await client.push(PAYLOAD) is False
        finally:
            await client.close()

    assert client.last_success is False
    assert client.last_error.startswith("HTTP 500")


@pytest.mark.asyncio
async def test_push_to_unreachable_collector(unused_tcp_port):
    client = RelayClient(
        RelayConfig(
            enabled=True,
            backend_url=f"http://127.0.0.1:{unused_tcp_port}/api",
            api_key="secret",
            timeout_seconds=2.0,
        )
    )
    try:
        assert await client.push(PAYLOAD) is False
    finally:
        await client.close()

    assert client.last_error


@pytest.mark.asyncio
async def test_push_times_out():
    collector = Collector(delay=1.0)
    async with TestServer(collector.app()) as server:
        client = RelayClient(relay_config(server, timeout_seconds=0.1))
        try:
            assert await client.push(PAYLOAD) is False
        finally:
            await client.close()

    assert "timed out" in client.last_error


@pytest.mark.asyncio
async def test_connection_check():
    collector = Collector()
    async with TestServer(collector.app()) as server:
        client = RelayClient(RelayConfig(enabled=False))
        base = str(server.make_url("/api"))
        try:
            ok = await client.test_connection(base, "secret")
            denied = await client.test_connection(base, "wrong")
        finally:
            await client.close()

    assert ok == {"success": True, "data": {"status": "ok"}}
    assert denied == {"success": False, "error": "HTTP 401"}


@pytest.mark.asyncio
async def test_connection_check_requires_url():
    client = RelayClient(RelayConfig())

    assert (await client.test_connection("", None))["success"] is False
    await client.close()


@pytest.mark.asyncio
async def test_undecodable_bodies_do_not_raise():
    garbled = b"\xff\xfe\xfa gateway"

    async def capture(request: web.Request) -> web.Response:
        return web.Response(status=502, body=garbled, content_type="text/plain", charset="utf-8")

    async def health(request: web.Request) -> web.Response:
        return web.Response(body=garbled, content_type="text/plain", charset="utf-8")

    app = web.Application()
    app.router.add_post("/api/weights/capture", capture)
    app.router.add_get("/api/health", health)

    async with TestServer(app) as server:
        client = RelayClient(relay_config(server))
        try:
            pushed = await client.push(PAYLOAD)
            checked = await client.test_connection(str(server.make_url("/api")), "secret")
        finally:
            await client.close()

    assert pushed is False
    assert client.last_error.startswith("HTTP 502")
    assert checked["success"] is True
    assert checked["data"].endswith("gateway")
