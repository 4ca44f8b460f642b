"""
Gateway configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables prefixed with MCP_ (or a local .env file).

Unlike a module-level singleton, the gateway builds a fresh Settings object
per request through get_settings(). The OAuth issuer and audience are
security-relevant values: if an operator fixes a misconfigured issuer in the
deployment environment, the next request must see the new value.
"""

from urllib.parse import urlparse

from limits import parse
from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings


class ConfigurationError(Exception):
    """
    Raised when a required setting is missing or a derived value is unusable.

    At startup this is fatal. At request time (e.g. an upstream URL derived
    from request headers) it is translated into an error response instead.
    """


class Settings(BaseSettings):
    """
    Gateway configuration with environment variable bindings.

    Each field maps to an environment variable with the MCP_ prefix, e.g.
    `oauth_issuer` reads MCP_OAUTH_ISSUER.
    """

    # --- Server settings ---
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # Anything other than "development" turns localhost upstream URLs into hard errors.
    environment: str = "development"

    server_name: str = "mcp-tool-gateway"
    server_version: str = "1.0.0"
    protocol_version: str = "2024-11-05"

    cors_origin: str = "*"

    # --- OAuth / identity provider ---

    # Compared byte-for-byte with the token's "iss" claim. Auth0 issuers end
    # with a trailing slash; do not strip it here.
    oauth_issuer: str

    # API identifier expected in the "aud" claim. Unset disables the check.
    oauth_audience: str | None = None

    jwks_uri: str | None = None
    oauth_scopes: str = "openid email profile"
    oidc_discovery: str | None = None
    jwt_algorithms: list[str] = ["RS256"]

    # --- Upstream tool backend ---
    upstream_base_url: str | None = None
    upstream_tools_path: str = "/demo/tools"
    upstream_timeout: float = 10.0

    jwks_timeout: float = 5.0
    discovery_timeout: float = 4.0

    demo_api_enabled: bool = True

    # Per client IP, in `limits` notation ("100/minute", "10 per second").
    rate_limit: str = "100/minute"
    rate_limit_enabled: bool = True

    model_config = {
        "env_prefix": "MCP_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @field_validator("oauth_audience", "jwks_uri", "oidc_discovery", "upstream_base_url", mode="before")
    @classmethod
    def _blank_as_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("oauth_issuer")
    @classmethod
    def _issuer_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("MCP_OAUTH_ISSUER must not be empty (e.g. https://your-tenant.us.auth0.com/)")
        return value

    @field_validator("rate_limit")
    @classmethod
    def _rate_limit_parses(cls, value: str) -> str:
        # limits.parse raises ValueError, which pydantic reports as a validation error.
        parse(value)
        return value

    @property
    def key_set_uri(self) -> str:
        """Explicit JWKS URI, or the conventional location under the issuer."""
        if self.jwks_uri:
            return self.jwks_uri.strip()
        return f"{self.oauth_issuer.strip().rstrip('/')}/.well-known/jwks.json"

    @property
    def oidc_discovery_url(self) -> str:
        issuer = self.oauth_issuer.strip().rstrip("/")
        raw = self.oidc_discovery or f"{issuer}/.well-known/openid-configuration"
        if raw.startswith("http"):
            return raw
        return f"{issuer}/{raw.lstrip('/')}"

    @property
    def default_scopes(self) -> list[str]:
        return self.oauth_scopes.split()

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() == "development"


def get_settings() -> Settings:
    """
    Read the configuration from the environment.

    Raises:
        ConfigurationError: If a required value is missing or invalid
    """
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid gateway configuration: {exc}") from exc


def is_absolute_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)
