import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import orjson

from reqguard.cache.constants import (
    CacheNamespace, DELETE_BATCH_SIZE, LOCK_POLL_INTERVAL, LOCK_SUFFIX, LOCK_TIMEOUT_SECONDS, SCAN_BATCH_SIZE,
    logger,
)
from reqguard.cache.utils import build_key, deserialize, serialize, validate_namespace
from reqguard.common.errors import InvalidConfiguration, StoreError
from reqguard.store.base import SharedStateStore

_MISSING = object()


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    total_keys: int = 0
    keys_by_namespace: Dict[str, int] = field(default_factory=dict)
    store_available: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalKeys": self.total_keys,
            "keysByNamespace": dict(self.keys_by_namespace),
            "hits": self.hits,
            "misses": self.misses,
            "storeAvailable": self.store_available,
        }


class ResponseCache:
    """
    Namespace scoped memoization over the shared store, entries live at `namespace:key`.

    Store failures degrade to a miss (reads) or a no-op (writes); a cache
    outage only costs latency. Hit/miss counters are per process.
    """

    def __init__(self, store: SharedStateStore, *, namespaces: Optional[Iterable[str]] = None):
        self._store = store
        self._namespaces = frozenset(validate_namespace(ns) for ns in namespaces) if namespaces else None
        self._hits = 0
        self._misses = 0

    def _namespace(self, namespace: str) -> str:
        ns = validate_namespace(namespace)
        if self._namespaces is not None and ns not in self._namespaces:
            raise InvalidConfiguration(f"unknown cache namespace: {ns!r}")
        return ns

    def _key(self, namespace: str, key: str) -> str:
        if key is None or key == "":
            raise InvalidConfiguration("cache key must not be empty")
        return build_key(self._namespace(namespace), key)

    async def get(self, namespace: str, key: str, default: Any = None) -> Any:
        full_key = self._key(namespace, key)
        try:
            raw = await self._store.get(full_key)
        except StoreError as e:
            self._misses += 1
            logger.warning("cache.store_error", extra={
                "op": "get", "key": full_key, "error_type": type(e).__name__, "error": str(e),
            })
            return default

        if raw is None:
            self._misses += 1
            logger.debug("cache.miss", extra={"key": full_key})
            return default

        try:
            value = deserialize(raw)
        except orjson.JSONDecodeError:
            self._misses += 1
            logger.warning("cache.corrupt_entry", extra={"key": full_key})
            await self._delete_quietly(full_key)
            return default

        self._hits += 1
        logger.debug("cache.hit", extra={"key": full_key})
        return value

    async def set(self, namespace: str, key: str, value: Any, ttl_seconds: int) -> bool:
        full_key = self._key(namespace, key)
        if int(ttl_seconds) <= 0:
            raise InvalidConfiguration(f"cache ttl must be positive, got {ttl_seconds!r}")
        data = serialize(value)
        try:
            await self._store.set(full_key, data, int(ttl_seconds))
        except StoreError as e:
            logger.warning("cache.store_error", extra={
                "op": "set", "key": full_key, "error_type": type(e).__name__, "error": str(e),
            })
            return False
        return True

    async def invalidate(self, namespace: str, key: str) -> bool:
        full_key = self._key(namespace, key)
        try:
            return await self._store.delete(full_key) > 0
        except StoreError as e:
            logger.warning("cache.store_error", extra={
                "op": "invalidate", "key": full_key, "error_type": type(e).__name__, "error": str(e),
            })
            return False

    async def invalidate_namespace(self, namespace: str) -> int:
        """Delete every `namespace:*` entry with cursor based SCAN, never KEYS."""
        ns = self._namespace(namespace)
        deleted = 0
        batch: List[str] = []
        try:
            async for k in self._store.scan_keys(f"{ns}:*", SCAN_BATCH_SIZE):
                batch.append(k)
                if len(batch) >= DELETE_BATCH_SIZE:
                    deleted += await self._store.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._store.delete(*batch)
        except StoreError as e:
            logger.warning("cache.store_error", extra={
                "op": "invalidate_namespace", "namespace": ns, "deleted": deleted,
                "error_type": type(e).__name__, "error": str(e),
            })
            return deleted

        logger.info("cache.namespace_invalidated", extra={"namespace": ns, "deleted": deleted})
        return deleted

    async def invalidate_namespaces(self, namespaces: Optional[Iterable[str]] = None) -> Dict[str, int]:
        """
        Clear several namespaces, by default every app cache namespace.
        Rate limit windows and idempotency records are left alone, unlike flush_all.
        """
        if namespaces is None:
            namespaces = sorted(self._namespaces) if self._namespaces is not None else [ns.value for ns in CacheNamespace]
        deleted = {}
        for ns in namespaces:
            ns = self._namespace(ns)
            deleted[ns] = await self.invalidate_namespace(ns)
        logger.info("cache.namespaces_invalidated", extra={"deleted": deleted})
        return deleted

    async def flush_all(self, triggered_by: str = "unknown") -> bool:
        """Drop every key in the store, cache or not. Administrative only."""
        logger.warning("cache.flush_all", extra={"triggered_by": triggered_by})
        try:
            await self._store.flush()
        except StoreError as e:
            logger.warning("cache.store_error", extra={
                "op": "flush_all", "triggered_by": triggered_by,
                "error_type": type(e).__name__, "error": str(e),
            })
            return False
        return True

    async def stats(self) -> CacheStats:
        stats = CacheStats(hits=self._hits, misses=self._misses)
        try:
            async for k in self._store.scan_keys("*", SCAN_BATCH_SIZE):
                if k.endswith(LOCK_SUFFIX):
                    continue
                stats.total_keys += 1
                ns, sep, _ = k.partition(":")
                if sep:
                    stats.keys_by_namespace[ns] = stats.keys_by_namespace.get(ns, 0) + 1
        except StoreError as e:
            logger.warning("cache.store_error", extra={
                "op": "stats", "error_type": type(e).__name__, "error": str(e),
            })
            return CacheStats(hits=self._hits, misses=self._misses, store_available=False)
        return stats

    async def get_or_set(self, namespace: str, key: str, loader: Callable[[], Awaitable[Any]],
                         ttl_seconds: int, *, wait_for_lock: bool = True) -> Any:
        """
        Cache-aside read. On a miss one worker recomputes under a short lock
        while the others poll for its result, then fall back to computing
        themselves if it never shows up.
        """
        value = await self.get(namespace, key, default=_MISSING)
        if value is not _MISSING:
            return value

        full_key = self._key(namespace, key)
        lock_key = full_key + LOCK_SUFFIX
        token = uuid.uuid4().hex.encode()
        try:
            locked = await self._store.set(lock_key, token, LOCK_TIMEOUT_SECONDS, only_if_absent=True)
        except StoreError:
            # store is down, nothing to coordinate with
            return await loader()

        if locked:
            try:
                # someone may have filled it between our miss and taking the lock
                value = await self._peek(full_key)
                if value is not _MISSING:
                    return value
                value = await loader()
                await self.set(namespace, key, value, ttl_seconds)
                return value
            finally:
                await self._release_lock(lock_key, token)

        if wait_for_lock:
            waited = 0.0
            while waited < LOCK_TIMEOUT_SECONDS + 1:
                await asyncio.sleep(LOCK_POLL_INTERVAL)
                waited += LOCK_POLL_INTERVAL
                value = await self._peek(full_key)
                if value is not _MISSING:
                    return value

        value = await loader()
        await self.set(namespace, key, value, ttl_seconds)
        return value

    async def _peek(self, full_key: str) -> Any:
        try:
            raw = await self._store.get(full_key)
        except StoreError:
            return _MISSING
        if raw is None:
            return _MISSING
        try:
            return deserialize(raw)
        except orjson.JSONDecodeError:
            return _MISSING

    async def _release_lock(self, lock_key: str, token: bytes):
        try:
            await self._store.delete_if_equals(lock_key, token)
        except StoreError as e:
            # lease expiry cleans it up
            logger.debug("cache.lock_release_failed", extra={"key": lock_key, "error": str(e)})

    async def _delete_quietly(self, full_key: str):
        try:
            await self._store.delete(full_key)
        except StoreError:
            pass
