"""
Shared test fixtures for the gateway test suite.

Key fixtures:
- signing_key / jwks: An RSA key pair standing in for the identity provider
- jwks_fetches: Patches PyJWKClient so it serves `jwks` instead of fetching
  over the network; the fixture value lists every URI that was "fetched"
- make_token / make_auth_header: Factories for signed RS256 tokens
- backend: A recording stub of the tool backend (httpx.MockTransport handler)
- app / client: The gateway ASGI app and an in-memory httpx client for it

Testing approach:
- test_auth.py, test_scopes.py, test_jwks.py, test_tools.py, test_invoker.py,
  test_config.py: unit tests for each layer in isolation.
- test_server.py, test_demo_api.py: full HTTP round-trips through the
  Starlette app with httpx.ASGITransport (no real server, no network).
- test_ratelimit.py: builds a fresh app per test so rate limit counters
  start empty.
"""

import httpx
import jwt
import pytest

from scripts.generate_token import DEFAULT_KID, build_jwks, generate_key, generate_token, public_jwk
from tool_gateway.server import create_app

TEST_ISSUER = "https://tenant.example.com/"
TEST_AUDIENCE = "https://api.example.com"
TEST_JWKS_URI = "https://tenant.example.com/.well-known/jwks.json"
GATEWAY_URL = "https://gateway.test"

_GATEWAY_ENV = (
    "MCP_OAUTH_ISSUER",
    "MCP_OAUTH_AUDIENCE",
    "MCP_JWKS_URI",
    "MCP_OAUTH_SCOPES",
    "MCP_OIDC_DISCOVERY",
    "MCP_UPSTREAM_BASE_URL",
    "MCP_UPSTREAM_TOOLS_PATH",
    "MCP_ENVIRONMENT",
    "MCP_CORS_ORIGIN",
    "MCP_DEMO_API_ENABLED",
    "MCP_RATE_LIMIT",
    "MCP_RATE_LIMIT_ENABLED",
)


@pytest.fixture(autouse=True)
def gateway_env(monkeypatch):
    """Known configuration for every test; individual tests override with monkeypatch.setenv."""
    for name in _GATEWAY_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MCP_OAUTH_ISSUER", TEST_ISSUER)
    monkeypatch.setenv("MCP_OAUTH_AUDIENCE", TEST_AUDIENCE)


@pytest.fixture(scope="session")
def signing_key():
    return generate_key()


@pytest.fixture(scope="session")
def jwks(signing_key):
    return build_jwks(public_jwk(signing_key))


@pytest.fixture
def jwks_fetches(monkeypatch, jwks):
    """Serve the test key set to every PyJWKClient and record the URIs requested."""
    fetched: list[str] = []

    def fake_fetch_data(self):
        fetched.append(self.uri)
        return jwks

    monkeypatch.setattr(jwt.PyJWKClient, "fetch_data", fake_fetch_data)
    return fetched


@pytest.fixture
def make_token(signing_key):
    """
    Factory fixture to generate RS256 tokens for testing.

    Usage in tests:
        def test_something(make_token):
            token = make_token(sub="alice", scopes=["starter.echo"])
    """

    def _make_token(
        sub: str | None = "auth0|test-user",
        scopes: list[str] | None = None,
        permissions: list[str] | None = None,
        issuer: str = TEST_ISSUER,
        audience: str | list[str] | None = TEST_AUDIENCE,
        key=None,
        kid: str = DEFAULT_KID,
        exp_hours: float = 1.0,
        extra_claims: dict | None = None,
    ) -> str:
        return generate_token(
            key or signing_key,
            subject=sub,
            issuer=issuer,
            audience=audience,
            scopes=scopes,
            permissions=permissions,
            kid=kid,
            exp_hours=exp_hours,
            extra_claims=extra_claims,
        )

    return _make_token


@pytest.fixture
def make_auth_header(make_token):
    def _make_auth_header(**kwargs) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(**kwargs)}"}

    return _make_auth_header


class StubBackend:
    """Records forwarded requests and answers with `responder(request)`."""

    def __init__(self):
        self.calls: list[httpx.Request] = []
        self.responder = lambda request: httpx.Response(200, json={"ok": True, "message": "hello"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        return self.responder(request)


@pytest.fixture
def backend():
    return StubBackend()


@pytest.fixture
def app(jwks_fetches, backend):
    return create_app(transport=httpx.MockTransport(backend.handler))


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=GATEWAY_URL) as client:
        yield client
