"""
Bearer token extraction and verification against the identity provider.

This module handles the Authentication (AuthN) layer:
- Extracts Bearer tokens from the HTTP Authorization header
- Classifies their shape (JWS, opaque, absent) before any crypto work
- Verifies the signature against the provider's published key set
- Checks issuer, audience and expiry
- Produces an immutable VerifiedIdentity, or a typed VerificationFailure

Verification never raises for a bad token. Every PyJWT error is mapped to a
FailureKind so the dispatcher can log the precise reason server-side while
telling the caller nothing more than "invalid_token".

Token structure (JWT payload as issued by Auth0-style providers):
    {
        "iss": "https://tenant.us.auth0.com/",
        "sub": "auth0|65f0c...",
        "aud": ["https://api.example.com", "https://tenant.us.auth0.com/userinfo"],
        "scope": "openid starter.echo",
        "permissions": ["starter.notes"],
        "iat": 1738796400,
        "exp": 1738800000
    }
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Sequence

import jwt

from tool_gateway.jwks import KeySetResolver, KeySetUnavailable
from tool_gateway.scopes import granted_scopes

logger = logging.getLogger(__name__)


class TokenShape(str, Enum):
    JWT = "jwt"
    OPAQUE = "opaque"
    NONE = "none"


@dataclass(frozen=True)
class BearerToken:
    """
    The credential presented in an `Authorization: Bearer <token>` header.

    Attributes:
        raw: The token string ("" when no bearer credential was sent)
        present: Whether the header used the Bearer scheme at all
    """

    raw: str
    present: bool

    @classmethod
    def from_header(cls, authorization: str | None) -> "BearerToken":
        # RFC 6750 schemes are case-insensitive.
        parts = (authorization or "").split(" ", 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return cls(raw="", present=False)
        return cls(raw=parts[1].strip(), present=True)

    @property
    def shape(self) -> TokenShape:
        if not self.raw:
            return TokenShape.NONE
        if len(self.raw.split(".")) == 3:
            return TokenShape.JWT
        return TokenShape.OPAQUE

    def __repr__(self) -> str:
        return f"BearerToken(shape={self.shape.value}, len={len(self.raw)})"


def log_bearer_shape(prefix: str, token: BearerToken, path: str, method: str) -> None:
    """Log whether a bearer token was sent and what it looks like, never its value."""
    logger.info(
        "Bearer token shape",
        extra={
            "log_data": {
                "stage": prefix,
                "has_auth": token.present,
                "token_shape": token.shape.value,
                "token_len": len(token.raw),
                "path": path,
                "method": method,
            }
        },
    )


class FailureKind(str, Enum):
    MISSING_BEARER = "missing_bearer"
    NOT_A_JWS = "not_a_jws"
    ENCRYPTED_UNSUPPORTED = "encrypted_unsupported"
    SIGNATURE_INVALID = "signature_invalid"
    ISSUER_MISMATCH = "issuer_mismatch"
    AUDIENCE_MISMATCH = "audience_mismatch"
    EXPIRED = "expired"
    NO_SUBJECT = "no_subject"
    KEY_SET_UNAVAILABLE = "key_set_unavailable"


@dataclass(frozen=True)
class VerificationFailure:
    """
    Why a token was rejected.

    `detail` is for server-side logs only; responses carry "invalid_token".
    """

    kind: FailureKind
    detail: str = ""


@dataclass(frozen=True)
class VerifiedIdentity:
    """
    Claims of a token whose signature, issuer and audience all checked out.

    Only verify_token() constructs these. It is request-scoped: the gateway
    re-verifies the bearer token on every call instead of caching identities.

    Attributes:
        subject: The "sub" claim, unique per identity provider
        issuer: The "iss" claim (equal to the configured issuer)
        audience: The "aud" claim, a string or a tuple of strings
        scope: The raw space-separated "scope" claim ("" when absent)
        permissions: The "permissions" claim (empty when absent)
        granted_scopes: Union of scope tokens and permissions
        issued_at / expires_at: "iat" / "exp" as seconds since the epoch
        claims: Every claim in the token, read-only
    """

    subject: str
    issuer: str
    audience: str | tuple[str, ...] | None
    scope: str
    permissions: tuple[str, ...]
    granted_scopes: frozenset[str]
    issued_at: float | None
    expires_at: float | None
    claims: Mapping[str, Any] = field(repr=False)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "VerifiedIdentity":
        scope = claims.get("scope")
        permissions = claims.get("permissions")
        audience = claims.get("aud")
        if isinstance(audience, list):
            audience = tuple(audience)
        return cls(
            subject=claims["sub"],
            issuer=claims.get("iss", ""),
            audience=audience,
            scope=scope if isinstance(scope, str) else "",
            permissions=tuple(p for p in permissions if isinstance(p, str))
            if isinstance(permissions, list)
            else (),
            granted_scopes=granted_scopes(claims),
            issued_at=claims.get("iat"),
            expires_at=claims.get("exp"),
            claims=MappingProxyType(dict(claims)),
        )


def _failure_kind(exc: jwt.PyJWTError) -> FailureKind:
    if isinstance(exc, (jwt.ExpiredSignatureError, jwt.ImmatureSignatureError)):
        return FailureKind.EXPIRED
    if isinstance(exc, jwt.InvalidIssuerError):
        return FailureKind.ISSUER_MISMATCH
    if isinstance(exc, jwt.InvalidAudienceError):
        return FailureKind.AUDIENCE_MISMATCH
    if isinstance(exc, jwt.MissingRequiredClaimError):
        return {
            "iss": FailureKind.ISSUER_MISMATCH,
            "aud": FailureKind.AUDIENCE_MISMATCH,
            "exp": FailureKind.EXPIRED,
        }.get(exc.claim, FailureKind.SIGNATURE_INVALID)
    return FailureKind.SIGNATURE_INVALID


def _reject(kind: FailureKind, detail: str) -> VerificationFailure:
    logger.warning(
        "Token verification failed",
        extra={"log_data": {"kind": kind.value, "detail": detail, "decision": "rejected"}},
    )
    return VerificationFailure(kind=kind, detail=detail)


def verify_token(
    token: str,
    issuer: str,
    audience: str | None,
    *,
    key_set_uri: str,
    key_sets: KeySetResolver,
    algorithms: Sequence[str] = ("RS256",),
) -> VerifiedIdentity | VerificationFailure:
    """
    Verify a bearer token and return the identity it proves.

    The pipeline:
    1. Structural check: a JWS has exactly three segments. Two-segment and
       other values are opaque tokens; five segments are an encrypted JWE
       that the gateway has no key to decrypt. No crypto work is done for these.
    2. Read the header's alg/kid for diagnostics.
    3. Look up the signing key by kid in the provider's key set.
    4. Verify signature, then exact issuer match, audience (skipped when none
       is configured), and exp/iat with PyJWT's default leeway.
    5. Require a non-empty subject.

    Args:
        token: The raw bearer token, without the "Bearer " prefix
        issuer: Configured issuer, compared exactly (no slash normalization)
        audience: Configured audience, or None to skip the audience check
        key_set_uri: JWKS URL of the identity provider
        key_sets: Shared key set cache
        algorithms: Accepted signing algorithms

    Returns:
        VerifiedIdentity on success, VerificationFailure otherwise

    Raises:
        ConfigurationError: If `key_set_uri` is empty or not a URL
    """
    logger.info(
        "Verifying bearer token",
        extra={
            "log_data": {
                "expected_issuer": issuer,
                "expected_audience": audience,
                "jwks_uri": key_set_uri,
            }
        },
    )

    if not token:
        return _reject(FailureKind.MISSING_BEARER, "No bearer token presented")

    segments = token.split(".")
    if len(segments) == 5:
        return _reject(FailureKind.ENCRYPTED_UNSUPPORTED, "Access token is an encrypted JWE")
    if len(segments) != 3:
        return _reject(FailureKind.NOT_A_JWS, f"Access token has {len(segments)} segments, expected 3")

    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        return _reject(FailureKind.SIGNATURE_INVALID, f"Malformed token header: {exc}")

    logger.debug(
        "Token header",
        extra={"log_data": {"alg": header.get("alg"), "kid": header.get("kid"), "typ": header.get("typ")}},
    )

    try:
        signing_key = key_sets.resolve(key_set_uri).signing_key(header.get("kid"))
    except KeySetUnavailable as exc:
        return _reject(FailureKind.KEY_SET_UNAVAILABLE, str(exc))

    if signing_key is None:
        return _reject(FailureKind.SIGNATURE_INVALID, f"No signing key for kid {header.get('kid')!r}")

    try:
        claims = jwt.decode(
            token,
            signing_key.key,
            algorithms=list(algorithms),
            issuer=issuer,
            audience=audience or None,
            options={"require": ["exp"], "verify_aud": bool(audience)},
        )
    except jwt.PyJWTError as exc:
        return _reject(_failure_kind(exc), str(exc))

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        return _reject(FailureKind.NO_SUBJECT, "Token has no subject claim")

    identity = VerifiedIdentity.from_claims(claims)
    logger.info(
        "Authentication successful",
        extra={
            "log_data": {
                "subject": identity.subject,
                "issuer": identity.issuer,
                "scopes": sorted(identity.granted_scopes),
                "decision": "authenticated",
            }
        },
    )
    return identity
