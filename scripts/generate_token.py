"""
CLI utility to mint RS256 tokens and a matching JWKS for local development.

In production, tokens come from the identity provider (Auth0, Okta, Keycloak)
and the gateway fetches the provider's public keys from its JWKS endpoint.
Locally, this script plays the provider: it creates an RSA key pair, writes
the public half as a JWKS document you can serve with any static file server,
and signs tokens with the private half.

Usage examples:

    # Create .keys/private.pem and .keys/jwks.json
    python -m scripts.generate_token keygen --out-dir .keys

    # Serve the key set (then set MCP_JWKS_URI=http://localhost:9000/jwks.json)
    python -m http.server 9000 --directory .keys

    # Token that can call echo and the notes tools
    python -m scripts.generate_token token --key .keys/private.pem \\
        --issuer https://dev.example.com/ --audience https://api.example.com \\
        --sub alice --scope starter.echo starter.notes

    # Same scopes, Auth0 RBAC style ("permissions" claim instead of "scope")
    python -m scripts.generate_token token --key .keys/private.pem \\
        --issuer https://dev.example.com/ --sub alice --permissions starter.notes

    # Expired token (for testing rejection)
    python -m scripts.generate_token token --key .keys/private.pem \\
        --issuer https://dev.example.com/ --sub alice --exp-hours -1
"""

import argparse
import datetime
import json
from pathlib import Path
from typing import Any

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

DEFAULT_KID = "dev-key-1"


def generate_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def public_jwk(private_key: rsa.RSAPrivateKey, kid: str = DEFAULT_KID) -> dict[str, Any]:
    """The public half of `private_key` as a JWK with `kid`, `use` and `alg` set."""
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return jwk


def build_jwks(*keys: dict[str, Any]) -> dict[str, Any]:
    return {"keys": list(keys)}


def generate_token(
    private_key: rsa.RSAPrivateKey,
    *,
    subject: str | None,
    issuer: str,
    audience: str | list[str] | None = None,
    scopes: list[str] | None = None,
    permissions: list[str] | None = None,
    kid: str = DEFAULT_KID,
    exp_hours: float = 8.0,
    extra_claims: dict[str, Any] | None = None,
) -> str:
    """
    Sign a token the way an OAuth provider would.

    Args:
        private_key: RSA signing key
        subject: The "sub" claim (None omits it)
        issuer: The "iss" claim, must match the gateway's MCP_OAUTH_ISSUER exactly
        audience: The "aud" claim (None omits it)
        scopes: Joined into the space-separated "scope" claim (None omits it)
        permissions: The "permissions" array claim (None omits it)
        kid: Key id written into the header
        exp_hours: Hours until expiration (negative = already expired)
        extra_claims: Additional claims to merge into the payload
    """
    now = datetime.datetime.now(datetime.timezone.utc)
    payload: dict[str, Any] = {
        "iss": issuer,
        "iat": now,
        "exp": now + datetime.timedelta(hours=exp_hours),
    }
    if exp_hours < 0:
        # iat must not be after exp, or PyJWT reports an immature token instead of an expired one.
        payload["iat"] = payload["exp"] - datetime.timedelta(hours=1)
    if subject is not None:
        payload["sub"] = subject
    if audience is not None:
        payload["aud"] = audience
    if scopes is not None:
        payload["scope"] = " ".join(scopes)
    if permissions is not None:
        payload["permissions"] = permissions
    if extra_claims:
        payload.update(extra_claims)

    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def _keygen(args: argparse.Namespace) -> None:
    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    key = generate_key()
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    (out_dir / "private.pem").write_bytes(pem)
    (out_dir / "jwks.json").write_text(json.dumps(build_jwks(public_jwk(key, args.kid)), indent=2))

    print(f"Private key: {out_dir / 'private.pem'}")
    print(f"JWKS:        {out_dir / 'jwks.json'}")


def _token(args: argparse.Namespace) -> None:
    key = serialization.load_pem_private_key(Path(args.key).read_bytes(), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SystemExit(f"{args.key} is not an RSA private key")

    token = generate_token(
        key,
        subject=args.sub,
        issuer=args.issuer,
        audience=args.audience,
        scopes=args.scope,
        permissions=args.permissions,
        kid=args.kid,
        exp_hours=args.exp_hours,
    )

    print(f"Subject:     {args.sub}")
    print(f"Issuer:      {args.issuer}")
    print(f"Audience:    {args.audience}")
    print(f"Scopes:      {args.scope}")
    print(f"Permissions: {args.permissions}")
    print()
    print(f"Token: {token}")
    print()
    print("Usage with curl (list tools):")
    print("  curl -X POST http://localhost:8080/mcp \\")
    print('    -H "Content-Type: application/json" \\')
    print(f'    -H "Authorization: Bearer {token}" \\')
    print('    -d \'{"jsonrpc":"2.0","id":1,"method":"tools/list"}\'')


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Mint RS256 tokens and a JWKS for the tool gateway.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    keygen = sub.add_parser("keygen", help="Create an RSA key pair and a JWKS document")
    keygen.add_argument("--out-dir", default=".keys")
    keygen.add_argument("--kid", default=DEFAULT_KID)
    keygen.set_defaults(func=_keygen)

    token = sub.add_parser("token", help="Sign a token with an existing private key")
    token.add_argument("--key", required=True, help="PEM private key from 'keygen'")
    token.add_argument("--issuer", required=True, help="Must match MCP_OAUTH_ISSUER exactly")
    token.add_argument("--audience", default=None, help="Must match MCP_OAUTH_AUDIENCE when set")
    token.add_argument("--sub", required=True, help="Subject claim (e.g. 'auth0|alice')")
    token.add_argument("--scope", nargs="*", default=None, help="Scopes for the 'scope' claim")
    token.add_argument("--permissions", nargs="*", default=None, help="Scopes for the 'permissions' claim")
    token.add_argument("--kid", default=DEFAULT_KID)
    token.add_argument("--exp-hours", type=float, default=8.0, help="Negative = already expired")
    token.set_defaults(func=_token)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
