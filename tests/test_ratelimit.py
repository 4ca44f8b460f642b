"""
Tests for per-client rate limiting (tool_gateway/ratelimit.py).

Each test builds its own app so the in-memory counters start empty.
"""

import httpx
import pytest

from tests.conftest import GATEWAY_URL
from tool_gateway.config import ConfigurationError
from tool_gateway.server import create_app


def client_for(app, ip: str = "203.0.113.10") -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app, client=(ip, 51000))
    return httpx.AsyncClient(transport=transport, base_url=GATEWAY_URL)


class TestRateLimit:
    async def test_default_policy_headers(self, jwks_fetches):
        async with client_for(create_app()) as client:
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.headers["ratelimit-policy"] == "100;w=60"
        assert response.headers["ratelimit"].startswith("limit=100, remaining=99, reset=")

    async def test_requests_over_the_limit_get_429(self, jwks_fetches):
        """The default window allows 100 requests per client per minute."""
        async with client_for(create_app()) as client:
            statuses = [(await client.get("/health")).status_code for _ in range(101)]
            rejected = await client.get("/health")

        assert statuses[:100] == [200] * 100
        assert statuses[100] == 429
        assert rejected.status_code == 429
        assert rejected.json()["error"]["code"] == "rate_limited"
        assert rejected.headers["ratelimit"].startswith("limit=100, remaining=0, reset=")
        assert int(rejected.headers["retry-after"]) <= 60

    async def test_limit_applies_to_every_surface(self, jwks_fetches, monkeypatch):
        monkeypatch.setenv("MCP_RATE_LIMIT", "3/minute")

        async with client_for(create_app()) as client:
            await client.get("/.well-known/oauth-protected-resource")
            await client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "initialize"})
            await client.get("/demo/health")
            response = await client.post("/echo", json={})

        assert response.status_code == 429

    async def test_clients_are_counted_separately(self, jwks_fetches, monkeypatch):
        monkeypatch.setenv("MCP_RATE_LIMIT", "2/minute")
        app = create_app()

        async with client_for(app, "203.0.113.10") as first, client_for(app, "203.0.113.11") as second:
            for _ in range(3):
                await first.get("/health")
            limited = await first.get("/health")
            fresh = await second.get("/health")

        assert limited.status_code == 429
        assert fresh.status_code == 200
        assert fresh.headers["ratelimit"].startswith("limit=2, remaining=1, ")

    async def test_limiter_can_be_disabled(self, jwks_fetches, monkeypatch):
        monkeypatch.setenv("MCP_RATE_LIMIT", "1/minute")
        monkeypatch.setenv("MCP_RATE_LIMIT_ENABLED", "false")

        async with client_for(create_app()) as client:
            statuses = {(await client.get("/health")).status_code for _ in range(5)}
            response = await client.get("/health")

        assert statuses == {200}
        assert "ratelimit" not in response.headers

    def test_unparseable_limit_is_a_configuration_error(self, monkeypatch):
        monkeypatch.setenv("MCP_RATE_LIMIT", "lots")

        with pytest.raises(ConfigurationError, match="rate_limit"):
            create_app()
