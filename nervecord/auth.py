"""
Authorization gate.

A request's `Authorization: Bearer <token>` header is classified into a tier,
and every gated route declares the capability it needs in ROUTE_CAPABILITIES,
keyed by (method, path template). The table is checked against the mounted
routes once at startup, so a new route cannot silently ship ungated.
"""
import logging
import secrets
from enum import Enum
from typing import Iterable

from fastapi import Request
from fastapi.routing import APIRoute

from nervecord.config import Settings
from nervecord.errors import AuthError, ForbiddenError

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    FULL = "full"
    LARVA = "larva"
    READONLY = "readonly"
    NONE = "none"


class Capability(str, Enum):
    READ = "read"
    MARK_SEEN = "mark_seen"
    SUGGESTIONS = "suggestions"
    LOG_APPEND = "log_append"
    HEARTBEAT = "heartbeat"
    LARVA = "larva"
    WRITE = "write"


TIER_CAPABILITIES: dict[Tier, frozenset[Capability]] = {
    Tier.FULL: frozenset(Capability),
    Tier.LARVA: frozenset({
        Capability.READ, Capability.MARK_SEEN, Capability.SUGGESTIONS,
        Capability.LOG_APPEND, Capability.HEARTBEAT, Capability.LARVA,
    }),
    Tier.READONLY: frozenset({Capability.READ, Capability.MARK_SEEN, Capability.SUGGESTIONS}),
    Tier.NONE: frozenset(),
}

_DENIED = {
    Tier.LARVA: "larva token — limited write access",
    Tier.READONLY: "readonly token — write access denied",
}

C = Capability
ROUTE_CAPABILITIES: dict[tuple[str, str], Capability] = {
    ("GET", "/health"): C.READ,
    # Bot registry
    ("GET", "/bots"): C.READ,
    ("POST", "/bots"): C.WRITE,
    ("GET", "/bots/{name}"): C.READ,
    ("DELETE", "/bots/{name}"): C.WRITE,
    # Messages
    ("GET", "/messages"): C.READ,
    ("POST", "/messages"): C.WRITE,
    ("GET", "/messages/{msg_id}"): C.READ,
    ("DELETE", "/messages/{msg_id}"): C.WRITE,
    ("POST", "/messages/{msg_id}/reply"): C.WRITE,
    ("POST", "/messages/{msg_id}/seen"): C.MARK_SEEN,
    ("POST", "/messages/{msg_id}/burn"): C.WRITE,
    # Liveness
    ("POST", "/heartbeat"): C.HEARTBEAT,
    ("GET", "/larvae"): C.READ,
    ("POST", "/larvae"): C.LARVA,
    ("GET", "/larvae/{name}"): C.READ,
    ("PATCH", "/larvae/{name}"): C.LARVA,
    ("DELETE", "/larvae/{name}"): C.WRITE,
    # Priorities
    ("GET", "/priorities"): C.READ,
    ("POST", "/priorities"): C.WRITE,
    ("POST", "/priorities/top"): C.WRITE,
    ("POST", "/priorities/{prio_id}/done"): C.WRITE,
    ("PATCH", "/priorities/{prio_id}"): C.WRITE,
    ("DELETE", "/priorities/{ref}"): C.WRITE,
    # Projects
    ("GET", "/projects"): C.READ,
    ("POST", "/projects"): C.WRITE,
    ("GET", "/projects/{project_id}"): C.READ,
    ("PATCH", "/projects/{project_id}"): C.WRITE,
    ("DELETE", "/projects/{project_id}"): C.WRITE,
    # Suggestions
    ("GET", "/suggestions"): C.READ,
    ("POST", "/suggestions"): C.SUGGESTIONS,
    ("GET", "/suggestions/{suggestion_id}"): C.READ,
    ("PATCH", "/suggestions/{suggestion_id}"): C.SUGGESTIONS,
    ("DELETE", "/suggestions/{suggestion_id}"): C.SUGGESTIONS,
    # Activity log
    ("GET", "/log"): C.READ,
    ("POST", "/log"): C.LOG_APPEND,
    ("DELETE", "/log/{entry_id}"): C.WRITE,
}
del C


def _same(a: str, b: str) -> bool:
    return secrets.compare_digest(a.encode(), b.encode())


def resolve_tier(authorization: str, settings: Settings) -> Tier:
    """Match the raw header against full, then larva, then readonly. Empty tokens never match."""
    for token, tier in (
        (settings.token, Tier.FULL),
        (settings.larva_token, Tier.LARVA),
        (settings.readonly_token, Tier.READONLY),
    ):
        if token and _same(authorization, f"Bearer {token}"):
            return tier
    return Tier.NONE


def required_capability(method: str, path: str) -> Capability:
    # Anything missing from the table is treated as a full write
    return ROUTE_CAPABILITIES.get((method, path), Capability.WRITE)


async def authorize(request: Request) -> Tier:
    """FastAPI dependency run before every gated handler."""
    settings: Settings = request.app.state.settings
    tier = resolve_tier(request.headers.get("authorization", ""), settings)
    if tier is Tier.NONE:
        raise AuthError("unauthorized")
    route = request.scope.get("route")
    needed = required_capability(request.method, getattr(route, "path", request.url.path))
    if needed not in TIER_CAPABILITIES[tier]:
        logger.debug(f"Denied {request.method} {request.url.path} for tier {tier.value}")
        raise ForbiddenError(_DENIED.get(tier, "forbidden"))
    return tier


def require_admin(request: Request) -> None:
    """Admin check for bot deletion; fails closed when no admin token is configured."""
    admin_token = request.app.state.settings.admin_token
    if not admin_token:
        raise ForbiddenError("admin token not configured")
    supplied = request.headers.get("x-admin-token", "").strip()
    if not _same(supplied, admin_token):
        raise ForbiddenError("admin access required")


def check_route_table(routes: Iterable) -> None:
    """Fail app creation if a gated route has no capability entry."""
    missing = [
        f"{method} {route.path}"
        for route in routes
        if isinstance(route, APIRoute)
        for method in route.methods
        if (method, route.path) not in ROUTE_CAPABILITIES
    ]
    if missing:
        raise RuntimeError(f"Routes without a capability entry: {', '.join(sorted(missing))}")
