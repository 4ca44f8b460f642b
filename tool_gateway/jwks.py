"""
Identity provider key set resolution.

The gateway never holds signing keys of its own: it only consumes the public
JSON Web Key Set (JWKS) that the identity provider publishes. PyJWT's
PyJWKClient does the fetching and per-client caching; this module owns the
single piece of shared state in the gateway, the (uri, client) pair, and
swaps it out when the configured URI changes.
"""

import logging
import threading

import jwt
from jwt import PyJWKClient
from jwt.exceptions import PyJWKClientConnectionError, PyJWKClientError, PyJWKSetError

from tool_gateway.config import ConfigurationError, is_absolute_url

logger = logging.getLogger(__name__)


class KeySetUnavailable(Exception):
    """The key set could not be fetched or parsed. Not retried at this layer."""


class KeySet:
    """A remote JWKS bound to one URI, looked up by key id."""

    def __init__(self, uri: str, client: PyJWKClient):
        self.uri = uri
        self._client = client

    def signing_key(self, kid: str | None) -> jwt.PyJWK | None:
        """
        Return the key matching `kid`, or None if the set has no such key.

        PyJWKClient refetches the set once on a kid miss, which covers key
        rotation at the identity provider.

        Raises:
            KeySetUnavailable: If the JWKS endpoint cannot be reached, returns
                something that is not a key set, or publishes no signing keys
        """
        if not kid:
            return None

        # Load the set on its own first: after this, a PyJWKClientError from
        # get_signing_key() can only mean the kid is not in the set.
        try:
            self._client.get_signing_keys()
        except (PyJWKClientError, PyJWKSetError) as exc:
            raise self._unavailable(exc) from exc

        try:
            return self._client.get_signing_key(kid)
        except (PyJWKClientConnectionError, PyJWKSetError) as exc:
            raise self._unavailable(exc) from exc
        except PyJWKClientError as exc:
            logger.info(
                "Signing key not found in key set",
                extra={"log_data": {"kid": kid, "jwks_uri": self.uri, "error": str(exc)}},
            )
            return None

    def _unavailable(self, exc: Exception) -> KeySetUnavailable:
        if isinstance(exc, PyJWKClientConnectionError):
            return KeySetUnavailable(f"Failed to fetch JWKS from {self.uri}: {exc}")
        return KeySetUnavailable(f"Invalid JWKS at {self.uri}: {exc}")


class KeySetResolver:
    """
    Read-through cache of the identity provider's key set, keyed by URI.

    Constructed once per application. resolve() is safe to call from the
    worker threads that run token verification.
    """

    def __init__(self, timeout: float = 5.0, lifespan: int = 300):
        self.timeout = timeout
        self.lifespan = lifespan
        self._lock = threading.Lock()
        self._cached: KeySet | None = None

    def resolve(self, uri: str) -> KeySet:
        """
        Return the key set for `uri`, replacing the cached one if the URI changed.

        Raises:
            ConfigurationError: If `uri` is empty or not an absolute http(s) URL
        """
        uri = (uri or "").strip()
        if not uri:
            raise ConfigurationError("JWKS URI is not configured")
        if not is_absolute_url(uri):
            raise ConfigurationError(f"JWKS URI is not an absolute URL: {uri}")

        with self._lock:
            if self._cached is None or self._cached.uri != uri:
                if self._cached is not None:
                    logger.info(
                        "JWKS URI changed, dropping cached key set",
                        extra={"log_data": {"old_uri": self._cached.uri, "new_uri": uri}},
                    )
                client = PyJWKClient(
                    uri,
                    cache_jwk_set=True,
                    lifespan=self.lifespan,
                    timeout=self.timeout,
                )
                self._cached = KeySet(uri, client)
            return self._cached
