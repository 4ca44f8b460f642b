"""
Unit tests for bearer token extraction and verification (tool_gateway/auth.py).

These tests exercise verify_token() directly, one failure mode per test:

1. Structural checks (empty, opaque, encrypted JWE) before any key lookup
2. Signature verification against the identity provider's key set
3. Issuer, audience and expiry checks
4. Subject presence

The key set is served by the `jwks_fetches` fixture, so no network is used.
"""

import dataclasses

import pytest
from jwt.exceptions import PyJWKClientConnectionError

from scripts.generate_token import generate_key
from tests.conftest import TEST_AUDIENCE, TEST_ISSUER, TEST_JWKS_URI
from tool_gateway.auth import (
    BearerToken,
    FailureKind,
    TokenShape,
    VerificationFailure,
    VerifiedIdentity,
    verify_token,
)
from tool_gateway.jwks import KeySetResolver


@pytest.fixture
def verify(jwks_fetches):
    """verify_token() bound to the test issuer, audience and key set."""
    key_sets = KeySetResolver()

    def _verify(token: str, issuer: str = TEST_ISSUER, audience: str | None = TEST_AUDIENCE):
        return verify_token(token, issuer, audience, key_set_uri=TEST_JWKS_URI, key_sets=key_sets)

    return _verify


class TestBearerToken:
    """Tests for Authorization header parsing and token shape classification."""

    def test_bearer_header_is_extracted(self):
        token = BearerToken.from_header("Bearer aaa.bbb.ccc")

        assert token.present
        assert token.raw == "aaa.bbb.ccc"
        assert token.shape is TokenShape.JWT

    def test_scheme_is_case_insensitive(self):
        assert BearerToken.from_header("bearer aaa.bbb.ccc").raw == "aaa.bbb.ccc"

    def test_missing_header_has_no_token(self):
        token = BearerToken.from_header(None)

        assert not token.present
        assert token.shape is TokenShape.NONE

    def test_other_schemes_are_ignored(self):
        """Basic credentials are not bearer tokens."""
        assert BearerToken.from_header("Basic dXNlcjpwYXNz").shape is TokenShape.NONE

    def test_two_segment_token_is_opaque(self):
        assert BearerToken.from_header("Bearer abc.def").shape is TokenShape.OPAQUE

    def test_encrypted_token_is_opaque(self):
        assert BearerToken.from_header("Bearer a.b.c.d.e").shape is TokenShape.OPAQUE

    def test_repr_never_contains_the_token(self):
        token = BearerToken.from_header("Bearer secret.token.value")

        assert "secret" not in repr(token)


class TestVerifyToken:
    """Tests for the verify_token() pipeline."""

    # ----- Happy path -----

    def test_valid_token_verifies(self, verify, make_token):
        """A properly signed token with matching issuer and audience is accepted."""
        identity = verify(make_token(sub="auth0|alice", scopes=["openid", "starter.echo"]))

        assert isinstance(identity, VerifiedIdentity)
        assert identity.subject == "auth0|alice"
        assert identity.issuer == TEST_ISSUER
        assert identity.audience == TEST_AUDIENCE
        assert identity.scope == "openid starter.echo"
        assert identity.granted_scopes == {"openid", "starter.echo"}

    def test_granted_scopes_union_scope_and_permissions(self, verify, make_token):
        """Auth0 RBAC permissions count as scopes alongside the scope claim."""
        identity = verify(make_token(scopes=["openid"], permissions=["starter.notes"]))

        assert identity.permissions == ("starter.notes",)
        assert identity.granted_scopes == {"openid", "starter.notes"}

    def test_audience_list_containing_configured_audience(self, verify, make_token):
        identity = verify(make_token(audience=[TEST_AUDIENCE, "https://tenant.example.com/userinfo"]))

        assert isinstance(identity, VerifiedIdentity)
        assert identity.audience == (TEST_AUDIENCE, "https://tenant.example.com/userinfo")

    def test_audience_check_skipped_when_not_configured(self, verify, make_token):
        """With no configured audience, any (or no) aud claim is accepted."""
        assert isinstance(verify(make_token(audience="https://other.example.com"), audience=None), VerifiedIdentity)
        assert isinstance(verify(make_token(audience=None), audience=None), VerifiedIdentity)

    def test_identity_is_immutable(self, verify, make_token):
        identity = verify(make_token())

        with pytest.raises(dataclasses.FrozenInstanceError):
            identity.subject = "mallory"  # type: ignore[misc]
        with pytest.raises(TypeError):
            identity.claims["sub"] = "mallory"  # type: ignore[index]

    # ----- Structural rejections -----

    def test_empty_token_is_missing_bearer(self, verify, jwks_fetches):
        result = verify("")

        assert isinstance(result, VerificationFailure)
        assert result.kind is FailureKind.MISSING_BEARER
        assert jwks_fetches == []

    def test_opaque_token_is_not_a_jws(self, verify, jwks_fetches):
        """Opaque tokens are rejected before any key set fetch."""
        result = verify("abc.def")

        assert isinstance(result, VerificationFailure)
        assert result.kind is FailureKind.NOT_A_JWS
        assert jwks_fetches == []

    def test_five_segment_token_is_encrypted_unsupported(self, verify, jwks_fetches):
        result = verify("a.b.c.d.e")

        assert result.kind is FailureKind.ENCRYPTED_UNSUPPORTED
        assert jwks_fetches == []

    def test_garbage_three_segment_token_is_signature_invalid(self, verify):
        """Three segments that do not decode as a JWS header."""
        assert verify("abc.def.ghi").kind is FailureKind.SIGNATURE_INVALID

    # ----- Signature -----

    def test_wrong_signing_key_is_signature_invalid(self, verify, make_token):
        """Same kid, different private key: the signature does not verify."""
        forged = make_token(key=generate_key())

        assert verify(forged).kind is FailureKind.SIGNATURE_INVALID

    def test_unknown_kid_is_signature_invalid(self, verify, make_token):
        assert verify(make_token(kid="rotated-away")).kind is FailureKind.SIGNATURE_INVALID

    def test_key_set_outage_is_key_set_unavailable(self, verify, make_token, monkeypatch):
        """An unreachable JWKS endpoint is an outage, not a bad token."""

        def unreachable(self):
            raise PyJWKClientConnectionError("connection refused")

        monkeypatch.setattr("jwt.PyJWKClient.fetch_data", unreachable)

        assert verify(make_token()).kind is FailureKind.KEY_SET_UNAVAILABLE

    # ----- Claims -----

    def test_issuer_compared_exactly(self, verify, make_token):
        """A missing trailing slash is a different issuer."""
        token = make_token(issuer=TEST_ISSUER.rstrip("/"))

        assert verify(token).kind is FailureKind.ISSUER_MISMATCH

    def test_audience_mismatch(self, verify, make_token):
        assert verify(make_token(audience="https://other.example.com")).kind is FailureKind.AUDIENCE_MISMATCH

    def test_missing_audience_when_configured(self, verify, make_token):
        assert verify(make_token(audience=None)).kind is FailureKind.AUDIENCE_MISMATCH

    def test_expired_token(self, verify, make_token):
        assert verify(make_token(exp_hours=-1)).kind is FailureKind.EXPIRED

    def test_token_without_subject(self, verify, make_token):
        assert verify(make_token(sub=None)).kind is FailureKind.NO_SUBJECT

    def test_empty_subject(self, verify, make_token):
        assert verify(make_token(sub="")).kind is FailureKind.NO_SUBJECT
