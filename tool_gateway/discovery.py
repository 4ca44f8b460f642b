"""
OAuth discovery metadata for MCP clients.

An MCP client that gets a 401 reads the WWW-Authenticate challenge, follows
resource_metadata to /.well-known/oauth-protected-resource, and from there
finds the authorization server and the scopes to request. None of these
documents are hardcoded to a hostname: the gateway's public base URL is
derived from the forwarded-host headers of the request being answered.
"""

import asyncio
import logging
from typing import Any, Iterable, Mapping

import httpx

from tool_gateway.config import ConfigurationError, Settings
from tool_gateway.tools import REQUIRED_SCOPES

logger = logging.getLogger(__name__)

PROTECTED_RESOURCE_PATHS = (
    "/.well-known/oauth-protected-resource",
    "/.well-known/oauth-protected-resource-v2",
)
AUTHORIZATION_SERVER_PATH = "/.well-known/oauth-authorization-server"
OPENID_CONFIGURATION_PATH = "/.well-known/openid-configuration"

WELL_KNOWN_PATHS = (*PROTECTED_RESOURCE_PATHS, AUTHORIZATION_SERVER_PATH, OPENID_CONFIGURATION_PATH)


def _first(value: str | None) -> str:
    # Proxies may append: "https, http" -> "https"
    return (value or "").split(",")[0].strip()


def public_base_url(headers: Mapping[str, str], default_scheme: str = "https") -> str:
    """
    Externally reachable base URL of this service, e.g. https://gw-abc123.a.run.app

    Raises:
        ConfigurationError: If neither X-Forwarded-Host nor Host is present
    """
    proto = _first(headers.get("x-forwarded-proto")) or default_scheme or "https"
    host = _first(headers.get("x-forwarded-host")) or _first(headers.get("host"))
    if not host:
        raise ConfigurationError("Missing Host header; cannot derive public base URL")
    return f"{proto}://{host}"


def challenge_scopes(settings: Settings) -> list[str]:
    return REQUIRED_SCOPES or settings.default_scopes


def build_www_authenticate(
    base_url: str,
    settings: Settings,
    *,
    scopes: Iterable[str] | None = None,
    error: str | None = None,
) -> str:
    """
    The RFC 6750 / RFC 9728 challenge returned with every 401 (and 403).

        Bearer resource_metadata="https://gw/.well-known/oauth-protected-resource",
               scope="starter.echo starter.notes", resource="https://api", error="invalid_token"
    """
    scope_param = " ".join(scopes if scopes is not None else challenge_scopes(settings))
    header = (
        f'Bearer resource_metadata="{base_url}{PROTECTED_RESOURCE_PATHS[0]}", '
        f'scope="{scope_param}"'
    )
    if settings.oauth_audience:
        header += f', resource="{settings.oauth_audience}"'
    if error:
        header += f', error="{error}"'
    return header


def scopes_supported(settings: Settings) -> list[str]:
    # Default scopes first, then tool scopes, without duplicates.
    return list(dict.fromkeys([*settings.default_scopes, *REQUIRED_SCOPES]))


def protected_resource_document(base_url: str, settings: Settings) -> dict[str, Any]:
    document: dict[str, Any] = {
        "authorization_servers": [base_url],
        "scopes_supported": scopes_supported(settings),
        "bearer_methods_supported": ["header"],
    }
    if settings.oauth_audience:
        document["resource"] = settings.oauth_audience
    return document


def authorization_server_document(settings: Settings) -> dict[str, Any]:
    issuer = settings.oauth_issuer.strip().rstrip("/")
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/authorize",
        "token_endpoint": f"{issuer}/oauth/token",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code"],
    }


async def fetch_json_with_retry(
    url: str,
    *,
    attempts: int = 3,
    timeout: float = 4.0,
    backoff: float = 0.15,
    max_backoff: float = 1.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Any:
    """
    GET a JSON document, retrying with linear backoff (backoff * attempt, capped).

    Raises:
        httpx.HTTPError: The last failure, once all attempts are used up
        ValueError: If the last response is not JSON, or `attempts` is below 1
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")

    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        attempt = 1
        while True:
            try:
                response = await client.get(url, headers={"Accept": "application/json"})
                response.raise_for_status()
                return response.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "Metadata fetch failed",
                    extra={"log_data": {"url": url, "attempt": attempt, "error": str(exc)}},
                )
                if attempt >= attempts:
                    raise
            await asyncio.sleep(min(backoff * attempt, max_backoff))
            attempt += 1


async def openid_configuration(settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> Any:
    """The identity provider's OIDC discovery document, passed through verbatim."""
    return await fetch_json_with_retry(
        settings.oidc_discovery_url,
        timeout=settings.discovery_timeout,
        transport=transport,
    )
