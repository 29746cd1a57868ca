from dataclasses import dataclass, field
from typing import Mapping, Optional

from starlette.requests import Request

from reqguard.rate_limiting.constants import SESSION_COOKIE, UNKNOWN_IDENTIFIER
from reqguard.rate_limiting.models import IdentifierStrategy, RateLimitProfile


@dataclass(frozen=True)
class ClientContext:
    """What the limiter needs to know about the caller, detached from any web framework."""
    headers: Mapping[str, str] = field(default_factory=dict)
    peer_address: Optional[str] = None
    user_id: Optional[str] = None

    def __post_init__(self):
        # header lookups are case-insensitive
        object.__setattr__(self, "headers", {k.lower(): v for k, v in self.headers.items()})

    @classmethod
    def from_request(cls, request: Request) -> "ClientContext":
        user_id = getattr(request.state, "user_identifier", None)
        if not user_id:
            user_id = request.cookies.get(SESSION_COOKIE)
        return cls(
            headers=dict(request.headers.items()),
            peer_address=request.client.host if request.client else None,
            user_id=str(user_id) if user_id else None,
        )


def client_ip(ctx: ClientContext) -> str:
    # X-Forwarded-For: trust only when running behind a proxy that sets it
    xff = ctx.headers.get("x-forwarded-for")
    if xff:
        first_hop = xff.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = (ctx.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return ctx.peer_address or UNKNOWN_IDENTIFIER


def resolve_identifier(ctx: ClientContext, profile: RateLimitProfile) -> str:
    """
    authenticated user id for user profiles, falling back to ip
    """
    if profile.identifier_strategy == IdentifierStrategy.USER_ID and ctx.user_id:
        return f"{IdentifierStrategy.USER_ID.value}:{ctx.user_id}"
    return f"{IdentifierStrategy.IP.value}:{client_ip(ctx)}"
