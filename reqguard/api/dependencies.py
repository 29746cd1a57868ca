from fastapi import Request

from reqguard.cache.response_cache import ResponseCache
from reqguard.idempotency.tracker import IdempotencyTracker
from reqguard.rate_limiting.limiter import RateLimiter
from reqguard.store.base import SharedStateStore


def get_store(request: Request) -> SharedStateStore:
    return request.app.state.store

def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter

def get_response_cache(request: Request) -> ResponseCache:
    return request.app.state.response_cache

def get_idempotency_tracker(request: Request) -> IdempotencyTracker:
    return request.app.state.idempotency_tracker
