from abc import ABC, abstractmethod
from typing import AsyncIterator, NamedTuple, Optional, Tuple

NEG_INF = float("-inf")
POS_INF = float("inf")


class WindowSnapshot(NamedTuple):
    """Outcome of one prune-count-maybe-insert pass over a scored set."""
    count: int                      # markers inside the window before this request
    oldest_score: Optional[float]   # lowest surviving score, only filled on rejection
    admitted: bool


class SharedStateStore(ABC):
    """
    Narrow capability interface over the shared keyed store.

    Keys are str, values are bytes. Implementations translate their own
    transport failures into StoreUnavailable / StoreTimeout.
    """

    # True when sliding_window_admit runs as one atomic unit on the server
    supports_atomic: bool = False

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]: ...

    @abstractmethod
    async def get_with_ttl(self, key: str) -> Tuple[Optional[bytes], Optional[int]]:
        """Value plus remaining ttl in seconds (None when missing or persistent)."""

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl_seconds: Optional[int] = None,
                  *, only_if_absent: bool = False) -> bool:
        """Store value. With only_if_absent, returns False when the key already exists."""

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def delete_if_equals(self, key: str, value: bytes) -> bool:
        """Compare-and-delete, used for lock tokens and reservations."""

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    @abstractmethod
    async def add_scored(self, key: str, member: str, score: float) -> None: ...

    @abstractmethod
    async def remove_by_score_range(self, key: str, min_score: float, max_score: float) -> int:
        """Remove members with min_score <= score <= max_score."""

    @abstractmethod
    async def count_in_range(self, key: str, min_score: float, max_score: float) -> int: ...

    @abstractmethod
    async def oldest_in_range(self, key: str, min_score: float) -> Optional[float]:
        """Lowest score >= min_score, or None."""

    @abstractmethod
    def scan_keys(self, pattern: str, batch_size: int = 500) -> AsyncIterator[str]:
        """Incrementally enumerate keys matching a glob pattern, one cursor step per round trip."""

    @abstractmethod
    async def flush(self) -> None: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        return None

    async def replace_if_equals(self, key: str, expected: bytes, value: bytes, ttl_seconds: int) -> bool:
        """
        Compare-and-set. Not atomic here; the value can change between the
        read and the write. Stores with server-side scripting override it.
        """
        if await self.get(key) != expected:
            return False
        await self.set(key, value, ttl_seconds)
        return True

    async def sliding_window_admit(self, key: str, *, window_start_ms: int, now_ms: int,
                                   member: str, limit: int, expire_seconds: int) -> WindowSnapshot:
        """
        Prune markers older than window_start_ms, count the rest and insert
        `member` at now_ms when below `limit`.

        This default composes primitives and is not atomic: concurrent callers
        for the same key can each see count < limit, so the window may overshoot
        by at most the number of racers. Stores with server-side scripting
        override it.
        """
        # scores are integer milliseconds, so "< window_start" is "<= window_start - 1"
        await self.remove_by_score_range(key, NEG_INF, window_start_ms - 1)
        count = await self.count_in_range(key, window_start_ms, POS_INF)
        if count >= limit:
            oldest = await self.oldest_in_range(key, window_start_ms)
            return WindowSnapshot(count, oldest, False)

        await self.add_scored(key, member, now_ms)
        await self.expire(key, expire_seconds)
        return WindowSnapshot(count, None, True)
