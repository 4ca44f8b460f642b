"""
The gateway's HTTP front door: MCP JSON-RPC, REST tool calls and discovery.

Every request lands on one catch-all route and is classified in this order:

    1. OPTIONS                         -> 204, CORS preflight, no auth
    2. POST with a JSON-RPC 2.0 body   -> MCP dispatch (on any path)
       POST /mcp                       -> MCP dispatch, even if the body is not JSON-RPC
    3. GET/HEAD on a known path        -> discovery documents, health, root info
    4. POST /{toolName}                -> REST tool call
    5. anything else                   -> 405

Before any of this, RateLimitMiddleware counts the request against the
client IP and answers 429 once the MCP_RATE_LIMIT window is exhausted.

The auth flow for every tool-invoking request:

    1. Extract the bearer token; a token that is not JWS-shaped is rejected
       before any crypto work so the client is prompted to re-authenticate
    2. auth.verify_token() checks signature, issuer, audience and expiry
    3. scopes.authorize() checks the tool's required scopes
    4. ToolInvoker forwards the call with the caller's own token
    5. The backend result is shaped into a JSON-RPC result or a REST envelope

Each request is verified independently. Nothing about a caller is remembered
between requests.

Running the server:
    python -m tool_gateway.server
"""

import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable

import httpx
import uvicorn
from mcp.types import (
    CallToolResult,
    Implementation,
    InitializeResult,
    ServerCapabilities,
    TextContent,
    ToolsCapability,
)
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Mount, Route

from tool_gateway import discovery
from tool_gateway.auth import (
    BearerToken,
    FailureKind,
    TokenShape,
    VerificationFailure,
    VerifiedIdentity,
    log_bearer_shape,
    verify_token,
)
from tool_gateway.config import ConfigurationError, Settings, get_settings
from tool_gateway.demo_api import create_demo_app
from tool_gateway.invoker import (
    ToolInvoker,
    UpstreamError,
    resolve_base_url,
    result_ok,
    warn_if_suspicious_upstream,
)
from tool_gateway.jsonrpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    UNAUTHORIZED,
    JsonRpcError,
    JsonRpcRequest,
    decode_body,
    error_envelope,
    looks_like_jsonrpc,
    parse_request,
    result_envelope,
)
from tool_gateway.jwks import KeySetResolver
from tool_gateway.log import configure_logging
from tool_gateway.ratelimit import RateLimitMiddleware
from tool_gateway.scopes import InsufficientScope, authorize
from tool_gateway.tools import format_result, is_known_tool, mcp_tool_descriptors

logger = logging.getLogger(__name__)

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

MCP_PATH = "/mcp"

_NOT_JSON = object()


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _apply_cors(response: Response, origin: str) -> Response:
    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Vary"] = "Origin"
    response.headers["Access-Control-Allow-Headers"] = "authorization,content-type,x-request-id"
    response.headers["Access-Control-Allow-Methods"] = "GET,HEAD,POST,OPTIONS"
    response.headers["Access-Control-Expose-Headers"] = "WWW-Authenticate, Location"
    return response


def _cors_origin() -> str:
    try:
        return get_settings().cors_origin
    except ConfigurationError:
        return "*"


def _try_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return _NOT_JSON


def tool_name_from_path(path: str) -> str | None:
    parts = [part for part in path.split("/") if part]
    return parts[-1] if parts else None


def _base_url(request: Request) -> str:
    return discovery.public_base_url(request.headers, request.url.scheme)


def _challenge(
    request: Request,
    settings: Settings,
    *,
    scopes: list[str] | None = None,
    error: str | None = "invalid_token",
) -> dict[str, str]:
    return {
        "WWW-Authenticate": discovery.build_www_authenticate(
            _base_url(request), settings, scopes=scopes, error=error
        )
    }


async def _verify(request: Request, settings: Settings, token: BearerToken) -> VerifiedIdentity | VerificationFailure:
    # PyJWKClient fetches keys with blocking I/O; keep it off the event loop.
    return await run_in_threadpool(
        verify_token,
        token.raw,
        settings.oauth_issuer,
        settings.oauth_audience,
        key_set_uri=settings.key_set_uri,
        key_sets=request.app.state.key_sets,
        algorithms=settings.jwt_algorithms,
    )


def _invoker(request: Request, settings: Settings) -> ToolInvoker:
    return ToolInvoker(
        resolve_base_url(settings, request.headers, request.url.scheme),
        timeout=settings.upstream_timeout,
        transport=request.app.state.http_transport,
    )


# ---------------------------------------------------------------------------
# MCP JSON-RPC
# ---------------------------------------------------------------------------

McpHandler = Callable[[Request, Settings, JsonRpcRequest], Awaitable[Response]]


def _rpc_error(rpc: JsonRpcRequest, code: int, message: str, status_code: int, **kwargs: Any) -> JSONResponse:
    data = kwargs.pop("data", None)
    return JSONResponse(error_envelope(rpc.id, code, message, data), status_code=status_code, **kwargs)


def _rpc_auth_failure(request: Request, settings: Settings, rpc: JsonRpcRequest, failure: VerificationFailure) -> JSONResponse:
    if failure.kind is FailureKind.KEY_SET_UNAVAILABLE:
        return _rpc_error(rpc, INTERNAL_ERROR, "Identity provider key set unavailable", 503)
    return _rpc_error(rpc, UNAUTHORIZED, "Unauthorized", 401, headers=_challenge(request, settings))


def _rpc_missing_jwt(request: Request, settings: Settings, rpc: JsonRpcRequest) -> JSONResponse:
    return _rpc_error(rpc, UNAUTHORIZED, "Unauthorized", 401, headers=_challenge(request, settings))


async def mcp_initialize(request: Request, settings: Settings, rpc: JsonRpcRequest) -> Response:
    result = InitializeResult(
        protocolVersion=settings.protocol_version,
        capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
        serverInfo=Implementation(name=settings.server_name, version=settings.server_version),
    )
    return JSONResponse(result_envelope(rpc.id, result.model_dump(mode="json", by_alias=True, exclude_none=True)))


async def mcp_initialized(request: Request, settings: Settings, rpc: JsonRpcRequest) -> Response:
    return Response(status_code=202)


async def mcp_tools_list(request: Request, settings: Settings, rpc: JsonRpcRequest) -> Response:
    token = BearerToken.from_header(request.headers.get("authorization"))
    log_bearer_shape("mcp.tools/list", token, request.url.path, request.method)

    if token.shape is not TokenShape.JWT:
        return _rpc_missing_jwt(request, settings, rpc)

    identity = await _verify(request, settings, token)
    if isinstance(identity, VerificationFailure):
        return _rpc_auth_failure(request, settings, rpc, identity)

    return JSONResponse(result_envelope(rpc.id, {"tools": mcp_tool_descriptors()}))


async def mcp_tools_call(request: Request, settings: Settings, rpc: JsonRpcRequest) -> Response:
    params = rpc.params if isinstance(rpc.params, dict) else {}
    name = params.get("name")
    args = params.get("arguments")
    if args is None:
        args = {}

    token = BearerToken.from_header(request.headers.get("authorization"))
    log_bearer_shape("mcp.tools/call", token, request.url.path, request.method)

    if not is_known_tool(name):
        return _rpc_error(rpc, METHOD_NOT_FOUND, f"Unknown tool: {name}", 404)

    if not isinstance(args, dict):
        return _rpc_error(rpc, INVALID_PARAMS, "Tool arguments must be a JSON object", 400)

    if token.shape is not TokenShape.JWT:
        return _rpc_missing_jwt(request, settings, rpc)

    identity = await _verify(request, settings, token)
    if isinstance(identity, VerificationFailure):
        return _rpc_auth_failure(request, settings, rpc, identity)

    denied = authorize(identity, name)
    if denied is not None:
        return _rpc_error(
            rpc,
            UNAUTHORIZED,
            "Insufficient scope",
            403,
            data={"required": sorted(denied.required)},
            headers=_challenge(request, settings, scopes=sorted(denied.required), error="insufficient_scope"),
        )

    invoker = _invoker(request, settings)
    try:
        raw = await invoker.invoke(name, args, token.raw)
    except UpstreamError as exc:
        result = CallToolResult(content=[TextContent(type="text", text=exc.message)], isError=True)
    else:
        output = format_result(name, raw)
        result = CallToolResult(
            content=[TextContent(type="text", text=output.summary)],
            structuredContent=output.structured,
            isError=not result_ok(raw),
        )

    return JSONResponse(result_envelope(rpc.id, result.model_dump(mode="json", by_alias=True, exclude_none=True)))


MCP_METHODS: dict[str, McpHandler] = {
    "initialize": mcp_initialize,
    "notifications/initialized": mcp_initialized,
    "tools/list": mcp_tools_list,
    "tools/call": mcp_tools_call,
}


async def handle_mcp(request: Request, body: bytes) -> Response:
    try:
        rpc = parse_request(decode_body(body))
    except JsonRpcError as exc:
        return JSONResponse(error_envelope(exc.request_id, exc.code, exc.message), status_code=400)

    logger.info("MCP request", extra={"log_data": {"method": rpc.method, "notification": rpc.is_notification}})

    if rpc.is_notification:
        return Response(status_code=202)

    handler = MCP_METHODS.get(rpc.method)
    if handler is None:
        return _rpc_error(rpc, METHOD_NOT_FOUND, f"Method not found: {rpc.method}", 400)

    try:
        settings = get_settings()
        return await handler(request, settings, rpc)
    except ConfigurationError as exc:
        logger.error("Gateway misconfigured", extra={"log_data": {"method": rpc.method, "error": str(exc)}})
        return _rpc_error(rpc, INTERNAL_ERROR, f"Configuration error: {exc}", 500)


# ---------------------------------------------------------------------------
# REST tool calls
# ---------------------------------------------------------------------------


def _rest_error(
    code: str,
    message: str,
    status_code: int,
    request_id: str,
    *,
    details: Any = None,
    elapsed_ms: int | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    content: dict[str, Any] = {"ok": False, "error": error, "requestId": request_id}
    if elapsed_ms is not None:
        content["elapsedMs"] = elapsed_ms
    return JSONResponse(content, status_code=status_code, headers=headers)


async def handle_rest(request: Request, body: bytes) -> Response:
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    started = time.monotonic()

    name = tool_name_from_path(request.url.path)
    if not name:
        return _rest_error("no_tool", "Missing tool name", 400, request_id)

    settings = get_settings()
    token = BearerToken.from_header(request.headers.get("authorization"))
    log_bearer_shape("rest", token, request.url.path, request.method)

    identity = await _verify(request, settings, token)
    if isinstance(identity, VerificationFailure):
        if identity.kind is FailureKind.KEY_SET_UNAVAILABLE:
            return _rest_error("key_set_unavailable", "Identity provider key set unavailable", 503, request_id)
        return _rest_error("invalid_token", "Unauthorized", 401, request_id, headers=_challenge(request, settings))

    if not is_known_tool(name):
        return _rest_error("unknown_tool", f"Unknown tool: {name}", 404, request_id)

    denied: InsufficientScope | None = authorize(identity, name)
    if denied is not None:
        required = sorted(denied.required)
        return _rest_error(
            "insufficient_scope",
            f"Tool '{name}' requires scopes: {' '.join(required)}",
            403,
            request_id,
            details={"required": required},
            headers=_challenge(request, settings, scopes=required, error="insufficient_scope"),
        )

    args = _try_json(body) if body else {}
    if args is _NOT_JSON:
        return _rest_error("invalid_json", "Request body is not valid JSON", 400, request_id)
    if not isinstance(args, dict):
        return _rest_error("invalid_json", "Request body must be a JSON object", 400, request_id)

    try:
        invoker = _invoker(request, settings)
    except ConfigurationError as exc:
        logger.error("Upstream misconfigured", extra={"log_data": {"request_id": request_id, "error": str(exc)}})
        return _rest_error("configuration_error", str(exc), 500, request_id)

    try:
        raw = await invoker.invoke(name, args, token.raw, request_id=request_id)
    except UpstreamError as exc:
        return _rest_error(
            "upstream_error",
            exc.message,
            exc.status_code,
            request_id,
            details=exc.details,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    elapsed_ms = int((time.monotonic() - started) * 1000)
    if not result_ok(raw):
        return _rest_error(
            "backend_error",
            "Backend returned ok:false",
            500,
            request_id,
            details=raw,
            elapsed_ms=elapsed_ms,
        )

    return JSONResponse({"ok": True, "data": raw, "requestId": request_id, "elapsedMs": elapsed_ms})


# ---------------------------------------------------------------------------
# GET endpoints: discovery, health, diagnostics
# ---------------------------------------------------------------------------


async def root_info(request: Request) -> Response:
    return JSONResponse(
        {
            "ok": True,
            "service": "tool-gateway",
            "well_known": [discovery.PROTECTED_RESOURCE_PATHS[0], discovery.OPENID_CONFIGURATION_PATH],
            "message": "Send POST /mcp (MCP JSON-RPC), or POST /{toolName} with Bearer token to invoke a tool.",
        }
    )


async def health_check(request: Request) -> Response:
    """Liveness probe: is the server process alive and responsive?"""
    return JSONResponse({"status": "healthy"})


async def readiness_check(request: Request) -> Response:
    """Readiness probe: does the configuration load?"""
    try:
        get_settings()
    except ConfigurationError as exc:
        return JSONResponse({"status": "not_ready", "reason": str(exc)}, status_code=503)
    return JSONResponse({"status": "ready"})


async def protected_resource(request: Request) -> Response:
    settings = get_settings()
    base_url = _base_url(request)
    logger.info(
        "Protected resource metadata served",
        extra={
            "log_data": {
                "base_url": base_url,
                "user_agent": request.headers.get("user-agent", ""),
                "issuer": settings.oauth_issuer,
                "audience": settings.oauth_audience,
                "jwks_uri": settings.key_set_uri,
            }
        },
    )
    return JSONResponse(discovery.protected_resource_document(base_url, settings))


async def authorization_server(request: Request) -> Response:
    return JSONResponse(discovery.authorization_server_document(get_settings()))


async def openid_configuration(request: Request) -> Response:
    try:
        document = await discovery.openid_configuration(get_settings(), request.app.state.http_transport)
    except (httpx.HTTPError, ValueError) as exc:
        return JSONResponse({"error": "discovery_fetch_failed", "detail": str(exc)}, status_code=502)
    return JSONResponse(document)


async def debug_token(request: Request) -> Response:
    settings = get_settings()
    token = BearerToken.from_header(request.headers.get("authorization"))
    identity = await _verify(request, settings, token)
    if isinstance(identity, VerificationFailure):
        if identity.kind is FailureKind.KEY_SET_UNAVAILABLE:
            return JSONResponse({"ok": False, "error": "key_set_unavailable"}, status_code=503)
        return JSONResponse({"ok": False, "error": "invalid_token"}, status_code=401, headers=_challenge(request, settings))
    audience = identity.audience
    return JSONResponse(
        {
            "ok": True,
            "sub": identity.subject,
            "aud": list(audience) if isinstance(audience, tuple) else audience,
            "scope": identity.scope,
            "permissions": list(identity.permissions),
        }
    )


GET_ROUTES: dict[str, Callable[[Request], Awaitable[Response]]] = {
    "/": root_info,
    "/health": health_check,
    "/ready": readiness_check,
    "/debug-token": debug_token,
    **{path: protected_resource for path in discovery.PROTECTED_RESOURCE_PATHS},
    discovery.AUTHORIZATION_SERVER_PATH: authorization_server,
    discovery.OPENID_CONFIGURATION_PATH: openid_configuration,
}


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


async def dispatch(request: Request) -> Response:
    path = request.url.path
    method = request.method
    logger.info("Gateway request", extra={"log_data": {"path": path, "method": method}})

    if method == "OPTIONS":
        return Response(status_code=204)

    if method == "POST":
        body = await request.body()
        if path == MCP_PATH or looks_like_jsonrpc(_try_json(body)):
            return await handle_mcp(request, body)
        return await handle_rest(request, body)

    if method in ("GET", "HEAD"):
        endpoint = GET_ROUTES.get(path)
        if endpoint is not None:
            if method == "HEAD":
                return Response(status_code=200)
            return await endpoint(request)

    return JSONResponse(
        {"ok": False, "error": {"code": "method_not_allowed", "message": f"{method} {path} is not supported"}},
        status_code=405,
    )


async def gateway(request: Request) -> Response:
    try:
        response = await dispatch(request)
    except ConfigurationError as exc:
        logger.error("Gateway misconfigured", extra={"log_data": {"path": request.url.path, "error": str(exc)}})
        response = JSONResponse(
            {"ok": False, "error": {"code": "configuration_error", "message": str(exc)}},
            status_code=500,
        )
    except Exception:
        logger.exception("Unhandled gateway error", extra={"log_data": {"path": request.url.path}})
        response = JSONResponse(
            {"ok": False, "error": {"code": "gateway_error", "message": "Internal server error"}},
            status_code=500,
        )
    return _apply_cors(response, _cors_origin())


def create_app(transport: httpx.AsyncBaseTransport | None = None) -> Starlette:
    """
    Build the gateway ASGI app.

    Args:
        transport: httpx transport for outbound calls (backend, OIDC
            metadata). None uses the network; tests pass a MockTransport.

    Raises:
        ConfigurationError: If required settings (e.g. MCP_OAUTH_ISSUER) are missing
    """
    settings = get_settings()
    warn_if_suspicious_upstream(settings)

    key_sets = KeySetResolver(timeout=settings.jwks_timeout)

    routes: list[Route | Mount] = []
    if settings.demo_api_enabled:
        routes.append(Mount("/demo", app=create_demo_app(key_sets)))
    routes.append(Route("/{path:path}", gateway, methods=ALL_METHODS))

    middleware: list[Middleware] = []
    if settings.rate_limit_enabled:
        middleware.append(Middleware(RateLimitMiddleware, limit=settings.rate_limit))

    app = Starlette(routes=routes, middleware=middleware)
    app.state.key_sets = key_sets
    app.state.http_transport = transport
    return app


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "Starting tool gateway on %s:%d (issuer=%s, audience=%s)",
        settings.host,
        settings.port,
        settings.oauth_issuer,
        settings.oauth_audience,
    )
    uvicorn.run(
        "tool_gateway.server:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
