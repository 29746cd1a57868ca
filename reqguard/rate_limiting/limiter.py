import math
import time
import uuid
from typing import Callable, Iterable, Optional

from reqguard.common.errors import StoreError
from reqguard.rate_limiting.constants import EXPIRY_BUFFER_SECONDS, logger
from reqguard.rate_limiting.models import RateLimitProfile, RateLimitResult
from reqguard.rate_limiting.utils import ClientContext, resolve_identifier
from reqguard.store.base import POS_INF, SharedStateStore


class RateLimiter:
    """
    Sliding window admission control, one scored set per (profile, identifier).

    Markers are scored by their millisecond timestamp. A rejected request's
    reset time comes from the oldest marker still inside the window, not from
    a clock-aligned boundary, so a burst straddling a minute boundary is still
    counted as one window.

    When the store cannot run the prune-count-insert pass atomically
    (store.supports_atomic is False), concurrent checks for the same identifier
    may overshoot max_requests by at most the number of racing requests.

    Store failures never reach the caller: the request is admitted (fail-open)
    unless the profile is listed in fail_closed_profiles.
    A consumed slot is not refunded if the caller is cancelled afterwards.
    """

    def __init__(self, store: SharedStateStore, *, fail_closed_profiles: Iterable[str] = (),
                 clock: Callable[[], float] = time.time):
        self._store = store
        self._fail_closed = frozenset(fail_closed_profiles)
        self._clock = clock

    async def check(self, ctx: ClientContext, profile: RateLimitProfile) -> RateLimitResult:
        identifier = resolve_identifier(ctx, profile)
        return await self.check_identifier(identifier, profile)

    async def check_identifier(self, identifier: str, profile: RateLimitProfile) -> RateLimitResult:
        now = self._clock()
        now_ms = int(now * 1000)
        window_ms = profile.window_seconds * 1000
        key = profile.record_key(identifier)
        # random suffix keeps same-millisecond markers distinct
        member = f"{now_ms}-{uuid.uuid4().hex[:8]}"

        try:
            snap = await self._store.sliding_window_admit(
                key,
                window_start_ms=now_ms - window_ms,
                now_ms=now_ms,
                member=member,
                limit=profile.max_requests,
                expire_seconds=profile.window_seconds + EXPIRY_BUFFER_SECONDS,
            )
        except StoreError as e:
            return self._on_store_error(e, identifier, profile, now)

        if not snap.admitted:
            reset_at = self._reset_from_oldest(snap.oldest_score, window_ms, now, profile)
            logger.info("rate_limit.rejected", extra={
                "profile": profile.name, "identifier": identifier,
                "count": snap.count, "reset_at": reset_at,
            })
            return RateLimitResult(allowed=False, remaining=0, limit=profile.max_requests, reset_at=reset_at)

        return RateLimitResult(
            allowed=True,
            remaining=max(0, profile.max_requests - snap.count - 1),
            limit=profile.max_requests,
            reset_at=math.ceil(now + profile.window_seconds),
        )

    async def status(self, identifier: str, profile: RateLimitProfile) -> Optional[RateLimitResult]:
        """Read-only peek at an identifier's window. None when the store is unreachable."""
        now = self._clock()
        window_ms = profile.window_seconds * 1000
        window_start = int(now * 1000) - window_ms
        key = profile.record_key(identifier)

        try:
            count = await self._store.count_in_range(key, window_start, POS_INF)
            oldest = await self._store.oldest_in_range(key, window_start) if count else None
        except StoreError as e:
            logger.warning("rate_limit.status_store_error", extra={
                "profile": profile.name, "identifier": identifier, "error": str(e),
            })
            return None

        return RateLimitResult(
            allowed=count < profile.max_requests,
            remaining=max(0, profile.max_requests - count),
            limit=profile.max_requests,
            reset_at=self._reset_from_oldest(oldest, window_ms, now, profile),
        )

    async def reset(self, identifier: str, profile: RateLimitProfile) -> bool:
        try:
            await self._store.delete(profile.record_key(identifier))
        except StoreError as e:
            logger.warning("rate_limit.reset_store_error", extra={
                "profile": profile.name, "identifier": identifier, "error": str(e),
            })
            return False
        logger.info("rate_limit.reset", extra={"profile": profile.name, "identifier": identifier})
        return True

    @staticmethod
    def _reset_from_oldest(oldest_ms: Optional[float], window_ms: int, now: float,
                           profile: RateLimitProfile) -> int:
        if oldest_ms is None:
            return math.ceil(now + profile.window_seconds)
        return math.ceil((oldest_ms + window_ms) / 1000)

    def _on_store_error(self, exc: StoreError, identifier: str, profile: RateLimitProfile,
                        now: float) -> RateLimitResult:
        reset_at = math.ceil(now + profile.window_seconds)
        if profile.name in self._fail_closed:
            logger.warning("rate_limit.store_error.fail_closed", extra={
                "profile": profile.name, "identifier": identifier,
                "error_type": type(exc).__name__, "error": str(exc),
            })
            return RateLimitResult(allowed=False, remaining=0, limit=profile.max_requests, reset_at=reset_at)

        logger.warning("rate_limit.store_error.fail_open", extra={
            "profile": profile.name, "identifier": identifier,
            "error_type": type(exc).__name__, "error": str(exc),
        })
        return RateLimitResult(allowed=True, remaining=profile.max_requests,
                               limit=profile.max_requests, reset_at=reset_at)
