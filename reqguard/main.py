from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from reqguard.api.constants import cur_version, logger
from reqguard.api.routers import admin_routers, public_routers
from reqguard.cache.constants import CacheNamespace
from reqguard.cache.response_cache import ResponseCache
from reqguard.common.custom_exceptions import register_all_exceptions
from reqguard.common.errors import InvalidConfiguration
from reqguard.common.logging_setup import setup_logging, stop_logging
from reqguard.config.admin_config import admin_config
from reqguard.config.settings import config_settings
from reqguard.idempotency.tracker import IdempotencyTracker
from reqguard.middlewares.rate_limit_middleware import RateLimitMiddleware
from reqguard.middlewares.request_id_middleware import RequestIdMiddleware
from reqguard.rate_limiting.limiter import RateLimiter
from reqguard.rate_limiting.profiles import get_profile
from reqguard.store.base import SharedStateStore
from reqguard.store.redis_store import create_redis_store


def _build_lifespan(store: Optional[SharedStateStore]):

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        setup_logging()
        shared = store if store is not None else create_redis_store()

        app.state.store = shared
        app.state.rate_limiter = RateLimiter(
            shared, fail_closed_profiles=config_settings.RATE_LIMIT_FAIL_CLOSED_PROFILES)
        app.state.response_cache = ResponseCache(
            shared, namespaces=[ns.value for ns in CacheNamespace])
        app.state.idempotency_tracker = IdempotencyTracker(shared)
        logger.info("app.started", extra={"atomic_store": shared.supports_atomic})

        try:
            yield
        finally:
            # injected stores belong to the caller
            if store is None:
                await shared.close()
            stop_logging()

    return app_lifespan


def create_app(store: Optional[SharedStateStore] = None) -> FastAPI:
    app = FastAPI(
        title="reqguard",
        version=cur_version,
        lifespan=_build_lifespan(store))

    app.include_router(public_routers)

    if admin_config.ENABLE_ADMIN:
        if admin_config.ENV != "dev" and not admin_config.ADMIN_SECRET:
            raise InvalidConfiguration("ENABLE_ADMIN outside dev requires ADMIN_SECRET")
        app.include_router(admin_routers)      # mounts /api/v1/admin

    default_profile = None
    if config_settings.DEFAULT_RATE_LIMIT_PROFILE:
        # unknown names fail at startup, not per request
        default_profile = get_profile(config_settings.DEFAULT_RATE_LIMIT_PROFILE)

    app.add_middleware(RateLimitMiddleware, profile=default_profile)
    app.add_middleware(RequestIdMiddleware)
    register_all_exceptions(app)

    return app
