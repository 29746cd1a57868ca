import asyncio
import math
from functools import partial
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from reqguard.common.circuit_breaker import CircuitBreaker, CircuitOpenError
from reqguard.common.errors import StoreError, StoreTimeout, StoreUnavailable
from reqguard.config.settings import Settings, config_settings
from reqguard.store.base import SharedStateStore, WindowSnapshot
from reqguard.store.constants import logger
from reqguard.store.lua_scripts import LUA_DELETE_IF_EQUALS, LUA_REPLACE_IF_EQUALS, LUA_SLIDING_WINDOW


def _score_arg(score: float):
    if math.isinf(score):
        return "+inf" if score > 0 else "-inf"
    return score


def _decode(key) -> str:
    return key.decode() if isinstance(key, (bytes, bytearray)) else str(key)


class RedisStore(SharedStateStore):
    """SharedStateStore on redis.asyncio. Every round trip is time-bounded and circuit-guarded."""

    supports_atomic = True

    def __init__(self, client: redis.Redis, *, timeout_seconds: float = 0.25,
                 breaker: Optional[CircuitBreaker] = None):
        self._client = client
        self._timeout = timeout_seconds
        self._breaker = breaker or CircuitBreaker(name="redis")
        # register_script handles EVALSHA and falls back to EVAL on NOSCRIPT
        self._sliding_script = client.register_script(LUA_SLIDING_WINDOW)
        self._cad_script = client.register_script(LUA_DELETE_IF_EQUALS)
        self._cas_script = client.register_script(LUA_REPLACE_IF_EQUALS)

    async def _call(self, op: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            await self._breaker.before_call()
        except CircuitOpenError as e:
            raise StoreUnavailable(str(e)) from e

        try:
            result = await asyncio.wait_for(fn(), timeout=self._timeout)
        except asyncio.CancelledError:
            self._breaker.abandon_trial()
            raise
        except (asyncio.TimeoutError, RedisTimeoutError) as e:
            await self._breaker.after_call(False)
            logger.debug("store.timeout", extra={"op": op, "timeout": self._timeout})
            raise StoreTimeout(f"redis {op} exceeded {self._timeout}s") from e
        except (RedisConnectionError, OSError) as e:
            await self._breaker.after_call(False)
            raise StoreUnavailable(f"redis {op} failed: {e}") from e
        except ResponseError as e:
            # the server answered, the connection is healthy
            await self._breaker.after_call(True)
            raise StoreError(f"redis {op} rejected: {e}") from e
        except RedisError as e:
            await self._breaker.after_call(False)
            raise StoreUnavailable(f"redis {op} failed: {e}") from e

        await self._breaker.after_call(True)
        return result

    async def get(self, key: str) -> Optional[bytes]:
        return await self._call("get", partial(self._client.get, key))

    async def get_with_ttl(self, key: str) -> Tuple[Optional[bytes], Optional[int]]:
        async def _get_with_ttl():
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.get(key)
                pipe.ttl(key)
                return await pipe.execute()

        value, ttl = await self._call("get_with_ttl", _get_with_ttl)
        if value is None or ttl is None or ttl < 0:
            return value, None
        return value, int(ttl)

    async def set(self, key: str, value: bytes, ttl_seconds: Optional[int] = None,
                  *, only_if_absent: bool = False) -> bool:
        res = await self._call("set", partial(
            self._client.set, key, value, ex=ttl_seconds, nx=only_if_absent))
        return bool(res)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", partial(self._client.delete, *keys)))

    async def delete_if_equals(self, key: str, value: bytes) -> bool:
        res = await self._call("delete_if_equals", partial(self._cad_script, keys=[key], args=[value]))
        return bool(res)

    async def replace_if_equals(self, key: str, expected: bytes, value: bytes, ttl_seconds: int) -> bool:
        res = await self._call("replace_if_equals", partial(
            self._cas_script, keys=[key], args=[expected, value, ttl_seconds]))
        return bool(res)

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", partial(self._client.exists, key)))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._call("expire", partial(self._client.expire, key, ttl_seconds)))

    async def add_scored(self, key: str, member: str, score: float) -> None:
        await self._call("zadd", partial(self._client.zadd, key, {member: score}))

    async def remove_by_score_range(self, key: str, min_score: float, max_score: float) -> int:
        return int(await self._call("zremrangebyscore", partial(
            self._client.zremrangebyscore, key, _score_arg(min_score), _score_arg(max_score))))

    async def count_in_range(self, key: str, min_score: float, max_score: float) -> int:
        return int(await self._call("zcount", partial(
            self._client.zcount, key, _score_arg(min_score), _score_arg(max_score))))

    async def oldest_in_range(self, key: str, min_score: float) -> Optional[float]:
        rows = await self._call("zrangebyscore", partial(
            self._client.zrangebyscore, key, _score_arg(min_score), "+inf",
            start=0, num=1, withscores=True))
        if not rows:
            return None
        return float(rows[0][1])

    async def scan_keys(self, pattern: str, batch_size: int = 500) -> AsyncIterator[str]:
        cursor = 0
        while True:
            cursor, keys = await self._call("scan", partial(
                self._client.scan, cursor=cursor, match=pattern, count=batch_size))
            for key in keys:
                yield _decode(key)
            if int(cursor) == 0:
                break

    async def flush(self) -> None:
        await self._call("flushdb", self._client.flushdb)

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._client.ping))

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except RedisError as e:
            logger.warning("store.close_failed", extra={"error": str(e)})

    async def sliding_window_admit(self, key: str, *, window_start_ms: int, now_ms: int,
                                   member: str, limit: int, expire_seconds: int) -> WindowSnapshot:
        res = await self._call("sliding_window", partial(
            self._sliding_script, keys=[key],
            args=[window_start_ms, limit, now_ms, member, expire_seconds]))
        if not res or len(res) < 3:
            raise StoreError(f"unexpected sliding window reply: {res!r}")
        count = int(res[0])
        oldest = float(res[1])
        admitted = int(res[2]) == 1
        return WindowSnapshot(count, oldest if oldest >= 0 else None, admitted)


def create_redis_store(settings: Settings = config_settings) -> RedisStore:
    client = redis.Redis(
        host=settings.REDIS_HOST, port=settings.REDIS_PORT, db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        socket_timeout=settings.STORE_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.STORE_TIMEOUT_SECONDS,
        decode_responses=False)
    breaker = CircuitBreaker(
        name="redis",
        failure_threshold=settings.STORE_CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=settings.STORE_CIRCUIT_RECOVERY_SECONDS)
    return RedisStore(client, timeout_seconds=settings.STORE_TIMEOUT_SECONDS, breaker=breaker)
