"""
JSON-RPC 2.0 envelopes for the MCP surface.

A request's "id" may be a string, a number or null, and a present null is not
the same as an absent id: a message with no "id" member is a notification and
gets no JSON-RPC response body at all.
"""

import json
from dataclasses import dataclass
from typing import Any

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, PARSE_ERROR

# Not part of JSON-RPC itself; MCP clients treat it as "authenticate and retry".
UNAUTHORIZED = -32001

__all__ = [
    "INTERNAL_ERROR",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "PARSE_ERROR",
    "UNAUTHORIZED",
    "JsonRpcError",
    "JsonRpcRequest",
    "decode_body",
    "error_envelope",
    "looks_like_jsonrpc",
    "parse_request",
    "result_envelope",
]


class JsonRpcError(Exception):
    """A message that cannot be dispatched, answered with a JSON-RPC error."""

    def __init__(self, code: int, message: str, request_id: Any = None):
        self.code = code
        self.message = message
        self.request_id = request_id
        super().__init__(message)


@dataclass(frozen=True)
class JsonRpcRequest:
    method: str
    params: Any = None
    id: Any = None
    has_id: bool = False

    @property
    def is_notification(self) -> bool:
        return not self.has_id


def looks_like_jsonrpc(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get("jsonrpc") == "2.0" and isinstance(payload.get("method"), str)


def decode_body(body: bytes) -> Any:
    """Parse a request body, raising JsonRpcError(PARSE_ERROR) on bad JSON."""
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise JsonRpcError(PARSE_ERROR, "Parse error") from exc


def parse_request(payload: Any) -> JsonRpcRequest:
    """Validate a decoded JSON value as a single JSON-RPC 2.0 request."""
    if not looks_like_jsonrpc(payload):
        request_id = payload.get("id") if isinstance(payload, dict) else None
        raise JsonRpcError(INVALID_REQUEST, "Invalid Request", request_id)
    return JsonRpcRequest(
        method=payload["method"],
        params=payload.get("params"),
        id=payload.get("id"),
        has_id="id" in payload,
    )


def result_envelope(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def error_envelope(request_id: Any, code: int, message: str, data: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}
