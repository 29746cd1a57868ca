import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from reqguard.common.circuit_breaker import CircuitBreaker, CircuitOpenError
from reqguard.common.errors import StoreError, StoreTimeout, StoreUnavailable
from reqguard.store.base import NEG_INF, POS_INF
from reqguard.store.redis_store import RedisStore


class TickClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def scripts():
    return AsyncMock(name="sliding_window"), AsyncMock(name="delete_if_equals"), AsyncMock(name="replace_if_equals")


@pytest.fixture
def mock_redis(scripts):
    client = MagicMock()
    client.register_script = MagicMock(side_effect=list(scripts))
    client.get = AsyncMock(return_value=b"value")
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=2)
    client.exists = AsyncMock(return_value=1)
    client.zremrangebyscore = AsyncMock(return_value=3)
    client.zcount = AsyncMock(return_value=4)
    client.zrangebyscore = AsyncMock(return_value=[(b"m", 1700000000000.0)])
    client.ping = AsyncMock(return_value=True)
    client.flushdb = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def breaker_clock():
    return TickClock()


@pytest.fixture
def redis_store(mock_redis, breaker_clock):
    breaker = CircuitBreaker(name="redis-test", failure_threshold=2, recovery_timeout=5, clock=breaker_clock)
    return RedisStore(mock_redis, timeout_seconds=0.05, breaker=breaker)


@pytest.mark.asyncio
async def test_basic_commands_pass_through(redis_store, mock_redis):
    assert await redis_store.get("k") == b"value"
    assert await redis_store.set("k", b"v", 30, only_if_absent=True) is True
    mock_redis.set.assert_awaited_once_with("k", b"v", ex=30, nx=True)
    assert await redis_store.delete("a", "b") == 2
    assert await redis_store.exists("k") is True
    assert await redis_store.ping() is True


@pytest.mark.asyncio
async def test_delete_without_keys_skips_round_trip(redis_store, mock_redis):
    assert await redis_store.delete() == 0
    mock_redis.delete.assert_not_awaited()


@pytest.mark.asyncio
async def test_infinite_scores_become_redis_bounds(redis_store, mock_redis):
    await redis_store.remove_by_score_range("z", NEG_INF, 999)
    mock_redis.zremrangebyscore.assert_awaited_once_with("z", "-inf", 999)

    assert await redis_store.count_in_range("z", 1000, POS_INF) == 4
    mock_redis.zcount.assert_awaited_once_with("z", 1000, "+inf")

    assert await redis_store.oldest_in_range("z", 1000) == 1700000000000.0


@pytest.mark.asyncio
async def test_sliding_window_reply_parsing(redis_store, scripts):
    sliding = scripts[0]

    sliding.return_value = [2, -1, 1]
    snap = await redis_store.sliding_window_admit(
        "rl:auth:ip:1", window_start_ms=0, now_ms=900000, member="900000-abcd", limit=5, expire_seconds=910)
    assert snap.admitted and snap.count == 2 and snap.oldest_score is None
    sliding.assert_awaited_once_with(keys=["rl:auth:ip:1"], args=[0, 5, 900000, "900000-abcd", 910])

    sliding.return_value = [5, 12345, 0]
    snap = await redis_store.sliding_window_admit(
        "rl:auth:ip:1", window_start_ms=0, now_ms=900000, member="x", limit=5, expire_seconds=910)
    assert not snap.admitted
    assert snap.oldest_score == 12345.0


@pytest.mark.asyncio
async def test_delete_if_equals_uses_script(redis_store, scripts):
    cad = scripts[1]
    cad.return_value = 1

    assert await redis_store.delete_if_equals("lock", b"token") is True
    cad.assert_awaited_once_with(keys=["lock"], args=[b"token"])


@pytest.mark.asyncio
async def test_replace_if_equals_uses_script(redis_store, scripts):
    cas = scripts[2]
    cas.return_value = 0

    assert await redis_store.replace_if_equals("k", b"old", b"new", 60) is False
    cas.assert_awaited_once_with(keys=["k"], args=[b"old", b"new", 60])


@pytest.mark.asyncio
async def test_scan_keys_follows_cursor(redis_store, mock_redis):
    mock_redis.scan = AsyncMock(side_effect=[(17, [b"courses:1", b"courses:2"]), (0, [b"courses:3"])])

    keys = [k async for k in redis_store.scan_keys("courses:*", 2)]

    assert keys == ["courses:1", "courses:2", "courses:3"]
    assert mock_redis.scan.await_count == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("raised, expected", [
    (RedisConnectionError("refused"), StoreUnavailable),
    (ConnectionRefusedError(111, "refused"), StoreUnavailable),
    (RedisTimeoutError("slow"), StoreTimeout),
])
async def test_transport_errors_are_translated(redis_store, mock_redis, raised, expected):
    mock_redis.get.side_effect = raised

    with pytest.raises(expected):
        await redis_store.get("k")


@pytest.mark.asyncio
async def test_slow_call_times_out(redis_store, mock_redis):

    async def hang(*args, **kwargs):
        await asyncio.sleep(1)

    mock_redis.get.side_effect = hang

    with pytest.raises(StoreTimeout):
        await redis_store.get("k")


@pytest.mark.asyncio
async def test_response_error_does_not_trip_breaker(redis_store, mock_redis):
    mock_redis.get.side_effect = ResponseError("WRONGTYPE")

    for _ in range(3):
        with pytest.raises(StoreError) as exc_info:
            await redis_store.get("k")
        assert not isinstance(exc_info.value, StoreUnavailable)

    mock_redis.get.side_effect = None
    assert await redis_store.get("k") == b"value"


@pytest.mark.asyncio
async def test_breaker_fails_fast_then_recovers(redis_store, mock_redis, breaker_clock):
    mock_redis.get.side_effect = RedisConnectionError("refused")

    for _ in range(2):
        with pytest.raises(StoreUnavailable):
            await redis_store.get("k")

    # open: no round trip at all
    with pytest.raises(StoreUnavailable):
        await redis_store.get("k")
    assert mock_redis.get.await_count == 2

    breaker_clock.now += 5
    mock_redis.get.side_effect = None
    assert await redis_store.get("k") == b"value"
    assert mock_redis.get.await_count == 3


@pytest.mark.asyncio
async def test_close_releases_client(redis_store, mock_redis):
    await redis_store.close()
    mock_redis.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_half_open_allows_a_single_trial_call():
    clock = TickClock()
    breaker = CircuitBreaker(name="b", failure_threshold=1, recovery_timeout=1, clock=clock)

    await breaker.before_call()
    await breaker.after_call(False)
    assert breaker.state == "OPEN"

    clock.now += 1
    await breaker.before_call()
    assert breaker.state == "HALF_OPEN"
    with pytest.raises(CircuitOpenError):
        await breaker.before_call()

    # a failed trial call re-opens right away
    await breaker.after_call(False)
    assert breaker.state == "OPEN"

    clock.now += 1
    await breaker.before_call()
    await breaker.after_call(True)
    assert breaker.state == "CLOSED"


@pytest.mark.asyncio
async def test_cancelled_trial_call_frees_the_slot():
    clock = TickClock()
    breaker = CircuitBreaker(name="b", failure_threshold=1, recovery_timeout=1, clock=clock)
    await breaker.after_call(False)
    clock.now += 1

    await breaker.before_call()
    breaker.abandon_trial()

    await breaker.before_call()
    assert breaker.state == "HALF_OPEN"
