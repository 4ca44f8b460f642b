"""
Forwarding tool calls to the backend.

The gateway never mints credentials of its own: it forwards the caller's
own bearer token, so the backend can verify the very same token and
scope its data by the token's subject.

Backend responses are interpreted by one narrow rule: an object whose "ok"
member is exactly false is a logical failure. Anything else (including no
"ok" member at all, or a non-object payload) is an opaque success.
"""

import logging
import re
from typing import Any, Mapping
from urllib.parse import quote

import httpx

from tool_gateway.config import ConfigurationError, Settings, is_absolute_url
from tool_gateway.discovery import public_base_url

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$\{[^}]+\}")


class UpstreamError(Exception):
    """
    The backend could not be reached or answered with a non-2xx status.

    Attributes:
        message: What went wrong (safe to return to the caller)
        status_code: HTTP status for the gateway's own response
        details: Extra diagnostics (URL, backend status, truncated body)
    """

    def __init__(self, message: str, *, status_code: int = 502, details: dict[str, Any] | None = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


def result_ok(payload: Any) -> bool:
    return not (isinstance(payload, dict) and payload.get("ok") is False)


def misconfiguration(base_url: str, *, allow_localhost: bool) -> str | None:
    """Describe what is wrong with an upstream URL, or None if it looks usable."""
    if not base_url:
        return "upstream base URL is empty"
    if _PLACEHOLDER.search(base_url):
        return f"upstream base URL contains an unexpanded ${{...}} placeholder: {base_url}"
    if not allow_localhost and "localhost" in base_url.lower():
        return f"upstream base URL must not be localhost outside development: {base_url}"
    if not is_absolute_url(base_url):
        return f"upstream base URL is not a valid absolute URL: {base_url}"
    return None


def warn_if_suspicious_upstream(settings: Settings) -> None:
    """Startup check: flag upstream URLs that will break once deployed."""
    value = settings.upstream_base_url
    if not value:
        return
    problem = misconfiguration(value, allow_localhost=False)
    if problem:
        logger.warning("Suspicious upstream configuration", extra={"log_data": {"problem": problem}})


def resolve_base_url(settings: Settings, headers: Mapping[str, str], default_scheme: str = "https") -> str:
    """
    Pick the backend base URL for this request.

    1. MCP_UPSTREAM_BASE_URL, when set (backend runs as a separate service)
    2. Otherwise this gateway's own public URL + MCP_UPSTREAM_TOOLS_PATH
       (backend co-located on the same service, e.g. /demo/tools)

    Raises:
        ConfigurationError: If the result is empty, has a ${...} placeholder,
            points at localhost outside development, or is not a URL
    """
    if settings.upstream_base_url:
        base_url = settings.upstream_base_url.strip()
    else:
        base_url = public_base_url(headers, default_scheme) + settings.upstream_tools_path
    base_url = base_url.rstrip("/")

    problem = misconfiguration(base_url, allow_localhost=settings.is_development)
    if problem:
        raise ConfigurationError(problem)
    return base_url


class ToolInvoker:
    """Calls `POST <base_url>/<toolName>` on the backend with the caller's token."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def invoke(
        self,
        tool_name: str,
        args: Any,
        credential: str,
        *,
        request_id: str | None = None,
    ) -> Any:
        """
        Forward one tool call and return the backend's decoded JSON.

        Raises:
            UpstreamError: On timeout, connection failure or a non-2xx answer
        """
        url = f"{self.base_url}/{quote(tool_name, safe='')}"
        headers = {"Authorization": f"Bearer {credential}", "Accept": "application/json"}
        if request_id:
            headers["X-Request-Id"] = request_id

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=args if args is not None else {}, headers=headers)
        except httpx.TimeoutException as exc:
            logger.error("Backend timed out", extra={"log_data": {"tool": tool_name, "url": url}})
            raise UpstreamError(
                f"Backend timed out calling tool '{tool_name}'",
                details={"url": url, "timeout": self.timeout},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "Backend unreachable",
                extra={"log_data": {"tool": tool_name, "url": url, "error": str(exc)}},
            )
            raise UpstreamError(
                f"Backend unreachable calling tool '{tool_name}': {exc}",
                details={"url": url},
            ) from exc

        if not response.is_success:
            logger.error(
                "Backend returned an error status",
                extra={"log_data": {"tool": tool_name, "url": url, "status": response.status_code}},
            )
            raise UpstreamError(
                f"Backend returned HTTP {response.status_code} for tool '{tool_name}'",
                details={"url": url, "status": response.status_code, "body": response.text[:500]},
            )

        try:
            return response.json()
        except ValueError:
            return response.text
