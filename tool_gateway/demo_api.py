"""
Demo tool backend, mounted at /demo on the same service as the gateway.

This stands in for a real backend API. It is deliberately independent of
the gateway's request context: the gateway reaches it over HTTP, so nothing
the gateway verified carries across. Every call re-verifies the forwarded
bearer token and scopes all data by that token's subject.

    POST /demo/tools/<toolName>   Authorization: Bearer <same token>
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from tool_gateway.auth import BearerToken, VerificationFailure, VerifiedIdentity, verify_token
from tool_gateway.config import ConfigurationError, get_settings
from tool_gateway.jwks import KeySetResolver

logger = logging.getLogger(__name__)

MAX_SEED = 50


@dataclass(frozen=True)
class Note:
    id: str
    text: str
    createdAt: int


class NoteStore:
    """In-memory notes keyed by OAuth subject. Newest first."""

    def __init__(self) -> None:
        self._notes: dict[str, list[Note]] = {}

    def seed(self, subject: str, count: int = 3) -> list[Note]:
        now = int(time.time() * 1000)
        seeded = [
            Note(id=f"note_{now}_{i}", text=f"Hello {subject[:10]}... (#{i + 1})", createdAt=now + i)
            for i in range(count)
        ]
        self._notes[subject] = seeded + self._notes.get(subject, [])
        return seeded

    def list(self, subject: str) -> list[Note]:
        return list(self._notes.get(subject, []))

    def add(self, subject: str, text: str) -> Note:
        now = int(time.time() * 1000)
        note = Note(id=f"note_{now}", text=text, createdAt=now)
        self._notes[subject] = [note] + self._notes.get(subject, [])
        return note


def _whoami(identity: VerifiedIdentity, args: dict[str, Any], store: NoteStore) -> dict[str, Any]:
    exp_in = None
    if isinstance(identity.expires_at, (int, float)):
        exp_in = max(0, int(identity.expires_at - time.time()))
    email = identity.claims.get("email")
    return {
        "ok": True,
        "user": {"sub": identity.subject, "email": email if isinstance(email, str) else None},
        "authorization": {
            "issuer": identity.issuer,
            "audience": list(identity.audience) if isinstance(identity.audience, tuple) else identity.audience,
            "scope": identity.scope,
            "scope_list": identity.scope.split(),
            "permissions": list(identity.permissions),
            "exp_in_seconds": exp_in,
        },
    }


def _echo(identity: VerifiedIdentity, args: dict[str, Any], store: NoteStore) -> dict[str, Any]:
    return {"ok": True, "message": str(args.get("message", ""))}


def _seed_notes(identity: VerifiedIdentity, args: dict[str, Any], store: NoteStore) -> dict[str, Any]:
    try:
        count = int(args.get("count", 3))
    except (TypeError, ValueError):
        count = 3
    count = min(max(count, 0), MAX_SEED)
    return {"ok": True, "seeded": [asdict(n) for n in store.seed(identity.subject, count)]}


def _list_notes(identity: VerifiedIdentity, args: dict[str, Any], store: NoteStore) -> dict[str, Any]:
    return {"ok": True, "notes": [asdict(n) for n in store.list(identity.subject)]}


def _add_note(identity: VerifiedIdentity, args: dict[str, Any], store: NoteStore) -> dict[str, Any]:
    text = str(args.get("text", "")).strip()
    if not text:
        return {"ok": False, "error": "missing_text"}
    return {"ok": True, "note": asdict(store.add(identity.subject, text))}


HANDLERS = {
    "whoami": _whoami,
    "echo": _echo,
    "seedMyNotes": _seed_notes,
    "listMyNotes": _list_notes,
    "addNote": _add_note,
}


def create_demo_app(key_sets: KeySetResolver, store: NoteStore | None = None) -> Starlette:
    """Build the demo backend. Shares the gateway's key set cache."""
    store = store or NoteStore()

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"ok": True, "service": "demo-api"})

    async def call_tool(request: Request) -> JSONResponse:
        tool_name = request.path_params["tool_name"]
        token = BearerToken.from_header(request.headers.get("authorization"))
        logger.info(
            "Demo API request",
            extra={"log_data": {"tool": tool_name, "has_auth": token.present}},
        )
        if not token.raw:
            return JSONResponse({"ok": False, "error": "missing_bearer"}, status_code=401)

        try:
            settings = get_settings()
            result = await run_in_threadpool(
                verify_token,
                token.raw,
                settings.oauth_issuer,
                settings.oauth_audience,
                key_set_uri=settings.key_set_uri,
                key_sets=key_sets,
                algorithms=settings.jwt_algorithms,
            )
        except ConfigurationError as exc:
            logger.error("Demo API misconfigured", extra={"log_data": {"error": str(exc)}})
            return JSONResponse({"ok": False, "error": "jwks_not_configured"}, status_code=500)

        if isinstance(result, VerificationFailure):
            return JSONResponse({"ok": False, "error": "invalid_token"}, status_code=401)

        handler = HANDLERS.get(tool_name)
        if handler is None:
            return JSONResponse({"ok": False, "error": "unknown_tool", "toolName": tool_name}, status_code=404)

        try:
            args = await request.json()
        except ValueError:
            args = {}
        if not isinstance(args, dict):
            args = {}

        return JSONResponse(handler(result, args, store))

    return Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/tools/{tool_name}", call_tool, methods=["POST"]),
        ]
    )
