import asyncio
import fnmatch
from typing import AsyncIterator, Dict, Optional, Tuple

import pytest
import pytest_asyncio
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from reqguard.common.errors import StoreUnavailable
from reqguard.main import create_app
from reqguard.store.base import SharedStateStore

START_TS = 1_700_000_000.0


class FakeClock:
    """Wall clock stand-in, seconds since epoch."""

    def __init__(self, start: float = START_TS):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class InMemoryStore(SharedStateStore):
    """Single process store with clock driven expiry. Not atomic across awaits."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self._data: Dict[str, object] = {}
        self._expires: Dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        exp = self._expires.get(key)
        if exp is not None and self.clock() >= exp:
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def _zset(self, key: str, create: bool = False) -> Dict[str, float]:
        if self._alive(key):
            return self._data[key]
        if not create:
            return {}
        self._data[key] = {}
        return self._data[key]

    async def get(self, key: str) -> Optional[bytes]:
        return self._data[key] if self._alive(key) else None

    async def get_with_ttl(self, key: str) -> Tuple[Optional[bytes], Optional[int]]:
        if not self._alive(key):
            return None, None
        exp = self._expires.get(key)
        return self._data[key], None if exp is None else int(exp - self.clock())

    async def set(self, key, value, ttl_seconds=None, *, only_if_absent=False) -> bool:
        if only_if_absent and self._alive(key):
            return False
        self._data[key] = value
        if ttl_seconds:
            self._expires[key] = self.clock() + ttl_seconds
        else:
            self._expires.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for k in keys:
            if self._alive(k):
                removed += 1
            self._data.pop(k, None)
            self._expires.pop(k, None)
        return removed

    async def delete_if_equals(self, key: str, value: bytes) -> bool:
        if self._alive(key) and self._data[key] == value:
            return await self.delete(key) == 1
        return False

    async def exists(self, key: str) -> bool:
        return self._alive(key)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        if not self._alive(key):
            return False
        self._expires[key] = self.clock() + ttl_seconds
        return True

    async def add_scored(self, key: str, member: str, score: float) -> None:
        self._zset(key, create=True)[member] = score

    async def remove_by_score_range(self, key, min_score, max_score) -> int:
        zs = self._zset(key)
        doomed = [m for m, s in zs.items() if min_score <= s <= max_score]
        for m in doomed:
            del zs[m]
        return len(doomed)

    async def count_in_range(self, key, min_score, max_score) -> int:
        return sum(1 for s in self._zset(key).values() if min_score <= s <= max_score)

    async def oldest_in_range(self, key, min_score) -> Optional[float]:
        scores = [s for s in self._zset(key).values() if s >= min_score]
        return min(scores) if scores else None

    async def scan_keys(self, pattern: str, batch_size: int = 500) -> AsyncIterator[str]:
        for k in list(self._data):
            if self._alive(k) and fnmatch.fnmatchcase(k, pattern):
                yield k

    async def flush(self) -> None:
        self._data.clear()
        self._expires.clear()

    async def ping(self) -> bool:
        return True

    def keys(self):
        return [k for k in list(self._data) if self._alive(k)]


class InterleavingStore(InMemoryStore):
    """Hands control back to the loop after counting, so concurrent checks race."""

    async def count_in_range(self, key, min_score, max_score) -> int:
        count = await super().count_in_range(key, min_score, max_score)
        await asyncio.sleep(0)
        return count


class FailingStore(SharedStateStore):
    """Every operation fails as if the store were unreachable."""

    def __init__(self):
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise StoreUnavailable("connection refused")

    get = get_with_ttl = set = delete = delete_if_equals = exists = expire = _fail
    add_scored = remove_by_score_range = count_in_range = oldest_in_range = _fail
    flush = ping = sliding_window_admit = _fail

    async def scan_keys(self, pattern: str, batch_size: int = 500) -> AsyncIterator[str]:
        self.calls += 1
        raise StoreUnavailable("connection refused")
        yield  # pragma: no cover


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock)


@pytest.fixture
def interleaving_store(clock):
    return InterleavingStore(clock)


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest_asyncio.fixture
async def app_client(store):
    app = create_app(store=store)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield app, client
