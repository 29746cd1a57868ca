from typing import Optional, Sequence

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from reqguard.common.custom_exceptions import rate_limited_response
from reqguard.middlewares.constants import logger
from reqguard.rate_limiting.models import RateLimitProfile
from reqguard.rate_limiting.utils import ClientContext

DEFAULT_EXCLUDE_PATHS = ("/api/v1/health", "/docs", "/redoc", "/openapi.json")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Applies `profile` to every request outside `exclude_paths` (when given) and
    decorates responses with X-RateLimit-* headers from request.state.rate_limit,
    which per-route dependencies also populate.
    """

    def __init__(self, app, profile: Optional[RateLimitProfile] = None,
                 exclude_paths: Sequence[str] = DEFAULT_EXCLUDE_PATHS):
        super().__init__(app)
        self.profile = profile
        self.exclude_paths = tuple(exclude_paths)

    async def dispatch(self, request: Request, call_next):

        if self.profile is not None and not request.url.path.startswith(self.exclude_paths):
            limiter = request.app.state.rate_limiter
            result = await limiter.check(ClientContext.from_request(request), self.profile)
            request.state.rate_limit = result
            if not result.allowed:
                logger.info("rate_limit.middleware.rejected", extra={
                    "path": request.url.path, "profile": self.profile.name,
                })
                return rate_limited_response(result)

        response = await call_next(request)

        rl = getattr(request.state, "rate_limit", None)
        if rl is not None:
            response.headers.update(rl.to_headers())
        return response
