"""
Tool catalog, scope requirements and result formatting.

This is the central registry of what the gateway exposes:

    TOOL_CATALOG   -> descriptors clients see in tools/list
    TOOL_SCOPES    -> {"tool_name": ["required", "scopes"]}
    REQUIRED_SCOPES -> sorted union of every tool's scopes (used for OAuth prompting)

The scopes must match what the identity provider actually issues, or every
call will be rejected with insufficient_scope.

Result formatting is a lookup table keyed by tool name. Each entry turns the
backend's raw JSON into a short human-readable summary for the chat surface
and, optionally, a structured payload. Tools without an entry get a generic
summary and their raw payload as structured content.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, NamedTuple

from mcp.types import Tool


@dataclass(frozen=True)
class ToolDescriptor:
    """
    A tool exposed by the gateway.

    Attributes:
        name: Unique tool name, also the REST path segment and backend path
        description: Shown to the model when it decides which tool to call
        required_scopes: Scopes a caller needs; empty means any verified caller
        input_schema: JSON Schema of the arguments object
    """

    name: str
    description: str
    required_scopes: tuple[str, ...] = ()
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "additionalProperties": False}
    )

    def to_mcp(self) -> Tool:
        return Tool(name=self.name, description=self.description, inputSchema=self.input_schema)


TOOL_CATALOG: tuple[ToolDescriptor, ...] = (
    ToolDescriptor(
        name="whoami",
        description=(
            "Return an OAuth-verified identity proof panel (user + issuer/audience/scopes/expiry). "
            "Use to validate user-scoped auth end-to-end."
        ),
        required_scopes=("starter.whoami",),
    ),
    ToolDescriptor(
        name="echo",
        description="Echo back the input (starter demo tool).",
        required_scopes=("starter.echo",),
        input_schema={
            "type": "object",
            "properties": {"message": {"type": "string", "description": "Message to echo."}},
            "required": ["message"],
            "additionalProperties": False,
        },
    ),
    ToolDescriptor(
        name="seedMyNotes",
        description="Create a few demo notes for the current user (stored by OAuth sub).",
        required_scopes=("starter.notes",),
        input_schema={
            "type": "object",
            "properties": {
                "count": {"type": "number", "description": "How many notes to create (default 3)."}
            },
            "additionalProperties": False,
        },
    ),
    ToolDescriptor(
        name="listMyNotes",
        description="List the current user's notes (scoped by OAuth sub).",
        required_scopes=("starter.notes",),
    ),
    ToolDescriptor(
        name="addNote",
        description="Add a note for the current user (scoped by OAuth sub).",
        required_scopes=("starter.notes",),
        input_schema={
            "type": "object",
            "properties": {"text": {"type": "string", "description": "Note text."}},
            "required": ["text"],
            "additionalProperties": False,
        },
    ),
)

TOOLS_BY_NAME: dict[str, ToolDescriptor] = {tool.name: tool for tool in TOOL_CATALOG}

TOOL_SCOPES: dict[str, list[str]] = {tool.name: list(tool.required_scopes) for tool in TOOL_CATALOG}

REQUIRED_SCOPES: list[str] = sorted({scope for scopes in TOOL_SCOPES.values() for scope in scopes})


def is_known_tool(name: Any) -> bool:
    return isinstance(name, str) and name in TOOLS_BY_NAME


def mcp_tool_descriptors() -> list[dict[str, Any]]:
    """What an MCP client sees in the tools/list result."""
    return [tool.to_mcp().model_dump(mode="json", by_alias=True, exclude_none=True) for tool in TOOL_CATALOG]


# ---------------------------------------------------------------------------
# Result formatting
# ---------------------------------------------------------------------------


class ToolOutput(NamedTuple):
    summary: str
    structured: dict[str, Any] | None = None


ResultFormatter = Callable[[Any], ToolOutput]

RESULT_FORMATTERS: dict[str, ResultFormatter] = {}


def result_formatter(tool_name: str) -> Callable[[ResultFormatter], ResultFormatter]:
    """Register a formatter for a tool's backend results."""

    def register(func: ResultFormatter) -> ResultFormatter:
        RESULT_FORMATTERS[tool_name] = func
        return func

    return register


def _unwrap(payload: Any) -> Any:
    # Some backends nest the useful part under "data".
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        return payload["data"]
    return payload


def _get(payload: Any, key: str, default: Any = None) -> Any:
    return payload.get(key, default) if isinstance(payload, dict) else default


@result_formatter("echo")
def _format_echo(payload: Any) -> ToolOutput:
    p = _unwrap(payload)
    message = _get(p, "message", _get(p, "echo", ""))
    return ToolOutput(f"Echo: {message}")


@result_formatter("whoami")
def _format_whoami(payload: Any) -> ToolOutput:
    p = _unwrap(payload)

    proof = _get(p, "proof")
    if isinstance(proof, str):
        return ToolOutput(proof)

    user = _get(p, "user", {}) or {}
    auth = _get(p, "authorization", {}) or {}

    sub = _get(user, "sub") or _get(p, "sub", "")
    email = _get(user, "email")
    issuer = _get(auth, "issuer")
    exp_in = _get(auth, "exp_in_seconds")

    scope_list = _get(auth, "scope_list")
    permissions = _get(auth, "permissions", _get(p, "permissions"))
    pretty = " ".join(
        s
        for s in [*(scope_list if isinstance(scope_list, list) else []),
                  *(permissions if isinstance(permissions, list) else [])]
        if s
    ).strip()
    scope = _get(auth, "scope") or _get(p, "scope", "")

    who = email or (f"sub={sub}" if sub else "(unknown)")
    parts = [f"Verified OAuth user: {who}"]
    if issuer:
        parts.append(f"issuer={issuer}")
    if isinstance(exp_in, (int, float)):
        parts.append(f"exp_in={int(exp_in // 60)}m")
    parts.append(f"scopes={pretty or scope or '(none)'}")
    return ToolOutput(" ".join(parts))


@result_formatter("seedMyNotes")
def _format_seed(payload: Any) -> ToolOutput:
    seeded = _get(_unwrap(payload), "seeded")
    return ToolOutput(f"Seeded {len(seeded) if isinstance(seeded, list) else 0} notes.")


@result_formatter("listMyNotes")
def _format_list(payload: Any) -> ToolOutput:
    notes = _get(_unwrap(payload), "notes")
    return ToolOutput(f"You have {len(notes) if isinstance(notes, list) else 0} notes.")


@result_formatter("addNote")
def _format_add(payload: Any) -> ToolOutput:
    note = _get(_unwrap(payload), "note", {}) or {}
    text = str(_get(note, "text", ""))
    return ToolOutput(f"Added note: {text[:120]}")


def format_result(tool_name: str, payload: Any) -> ToolOutput:
    """
    Turn a backend result into (summary, structured) for the MCP envelope.

    Non-object payloads are stringified and carry no structured content.
    An empty summary falls back to the first 800 characters of the JSON.
    """
    if not isinstance(payload, dict):
        return ToolOutput("" if payload is None else str(payload))

    formatter = RESULT_FORMATTERS.get(tool_name)
    output = formatter(payload) if formatter else ToolOutput(f"Tool '{tool_name}' completed.")

    summary = output.summary or json.dumps(payload, default=str)[:800]
    structured = output.structured if output.structured is not None else json.loads(json.dumps(payload, default=str))
    return ToolOutput(summary, structured)
