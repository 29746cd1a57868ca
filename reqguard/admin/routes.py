from fastapi import APIRouter, Depends, HTTPException, Request, status

from reqguard.admin.constants import logger
from reqguard.admin.dependencies import admin_identity, require_admin
from reqguard.admin.models import CacheActionIn
from reqguard.api.dependencies import get_rate_limiter, get_response_cache
from reqguard.cache.response_cache import ResponseCache
from reqguard.common.errors import InvalidConfiguration
from reqguard.common.utils import success_response
from reqguard.rate_limiting.dependencies import rate_limit_dependency
from reqguard.rate_limiting.limiter import RateLimiter
from reqguard.rate_limiting.profiles import ADMIN, get_profile
from reqguard.rate_limiting.models import RateLimitProfile

admin_router = APIRouter(dependencies=[Depends(require_admin), Depends(rate_limit_dependency(ADMIN))])


def _profile_or_404(profile_name: str) -> RateLimitProfile:
    try:
        return get_profile(profile_name)
    except InvalidConfiguration:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown profile {profile_name}")


@admin_router.get("/cache")
async def cache_stats(request: Request, cache: ResponseCache = Depends(get_response_cache)):
    stats = await cache.stats()
    logger.info("admin.cache.stats", extra={"admin": admin_identity(request)})
    return success_response({"stats": stats.to_dict()})


@admin_router.post("/cache")
async def cache_action(request: Request, payload: CacheActionIn,
                       cache: ResponseCache = Depends(get_response_cache)):
    admin = admin_identity(request)

    if payload.action == "flush":
        ok = await cache.flush_all(triggered_by=admin)
        message = "All caches flushed successfully" if ok else "Failed to flush caches"
        return success_response({"success": ok, "message": message},
                                status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE)

    if payload.action == "invalidate_all":
        logger.info("admin.cache.invalidate_all", extra={"admin": admin})
        deleted = await cache.invalidate_namespaces()
        return success_response({
            "success": True,
            "keysDeleted": sum(deleted.values()),
            "keysDeletedByNamespace": deleted,
            "message": "Invalidated all app cache namespaces",
        })

    if payload.namespace is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="namespace is required for invalidate")

    ns = payload.namespace.value
    logger.info("admin.cache.invalidate", extra={"admin": admin, "namespace": ns})
    deleted = await cache.invalidate_namespace(ns)
    return success_response({
        "success": True,
        "keysDeleted": deleted,
        "message": f"Invalidated {deleted} keys in {ns} namespace",
    })


@admin_router.get("/rate-limits/{profile_name}/{identifier}")
async def rate_limit_status(profile_name: str, identifier: str,
                            limiter: RateLimiter = Depends(get_rate_limiter)):
    profile = _profile_or_404(profile_name)
    result = await limiter.status(identifier, profile)
    if result is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="rate limit store unavailable")
    return success_response({
        "profile": profile.name,
        "identifier": identifier,
        "allowed": result.allowed,
        **result.to_dict(),
    })


@admin_router.delete("/rate-limits/{profile_name}/{identifier}")
async def rate_limit_reset(request: Request, profile_name: str, identifier: str,
                           limiter: RateLimiter = Depends(get_rate_limiter)):
    profile = _profile_or_404(profile_name)
    logger.info("admin.rate_limit.reset", extra={
        "admin": admin_identity(request), "profile": profile.name, "identifier": identifier,
    })
    if not await limiter.reset(identifier, profile):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="rate limit store unavailable")
    return success_response({"profile": profile.name, "identifier": identifier, "reset": True})
