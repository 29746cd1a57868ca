from fastapi import Request

from reqguard.api.dependencies import get_rate_limiter
from reqguard.common.errors import RateLimitExceeded
from reqguard.rate_limiting.models import RateLimitProfile
from reqguard.rate_limiting.utils import ClientContext


def rate_limit_dependency(profile: RateLimitProfile):
    """Per-route guard: `dependencies=[Depends(rate_limit_dependency(AUTH))]`."""
    async def _dep(request: Request):
        limiter = get_rate_limiter(request)
        result = await limiter.check(ClientContext.from_request(request), profile)
        # RateLimitMiddleware copies this onto the response headers
        request.state.rate_limit = result
        if not result.allowed:
            raise RateLimitExceeded(result, profile.name)
        return result
    return _dep
