"""
Scope-based authorization of tool calls.

Identity providers encode granted access in one of two claims:
- "scope": a space-separated string (OAuth 2.0 / RFC 8693 style)
- "permissions": a list of strings (Auth0 RBAC)

granted_scopes() folds both into one set right after verification, so the
rest of the gateway never has to care which encoding a provider uses.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping

from tool_gateway.tools import TOOL_SCOPES

if TYPE_CHECKING:
    from tool_gateway.auth import VerifiedIdentity

logger = logging.getLogger(__name__)


def granted_scopes(claims: Mapping[str, Any]) -> frozenset[str]:
    """Union of the "scope" string tokens and the "permissions" array."""
    scopes: set[str] = set()

    scope = claims.get("scope")
    if isinstance(scope, str):
        scopes.update(scope.split())

    permissions = claims.get("permissions")
    if isinstance(permissions, list):
        scopes.update(p for p in permissions if isinstance(p, str) and p)

    return frozenset(scopes)


@dataclass(frozen=True)
class InsufficientScope:
    """
    A verified caller lacks scopes a tool requires (HTTP 403, not 401).

    Attributes:
        tool: The tool that was requested
        required: Scopes the tool requires
        granted: Scopes this caller holds
    """

    tool: str
    required: frozenset[str]
    granted: frozenset[str]

    @property
    def missing(self) -> frozenset[str]:
        return self.required - self.granted


def authorize(identity: "VerifiedIdentity", tool_name: str) -> InsufficientScope | None:
    """
    Check the caller's scopes against the tool's requirements.

    A tool with an empty requirement list is open to any verified caller.
    A tool with no entry in TOOL_SCOPES at all is denied: if we don't know
    what a tool needs, we don't let it run.

    Returns:
        None when authorized, InsufficientScope otherwise
    """
    required = TOOL_SCOPES.get(tool_name)

    if required is None:
        logger.warning(
            "Tool call denied: no scope mapping found",
            extra={
                "log_data": {
                    "subject": identity.subject,
                    "tool": tool_name,
                    "decision": "denied",
                    "reason": "no_scope_mapping",
                }
            },
        )
        return InsufficientScope(tool=tool_name, required=frozenset(), granted=identity.granted_scopes)

    needed = frozenset(required)
    if needed <= identity.granted_scopes:
        logger.info(
            "Tool call authorized",
            extra={
                "log_data": {
                    "subject": identity.subject,
                    "tool": tool_name,
                    "required_scopes": sorted(needed),
                    "decision": "allowed",
                }
            },
        )
        return None

    logger.warning(
        "Tool call denied: insufficient scope",
        extra={
            "log_data": {
                "subject": identity.subject,
                "tool": tool_name,
                "required_scopes": sorted(needed),
                "token_scopes": sorted(identity.granted_scopes),
                "decision": "denied",
                "reason": "insufficient_scope",
            }
        },
    )
    return InsufficientScope(tool=tool_name, required=needed, granted=identity.granted_scopes)
