import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from reqguard.common.errors import InvalidConfiguration
from reqguard.common.utils import now
from reqguard.config.settings import config_settings
from reqguard.idempotency.constants import IN_PROGRESS_PREFIX, logger
from reqguard.store.base import SharedStateStore


@dataclass(frozen=True)
class ProcessedEvent:
    event_id: str
    processed_at_iso: Optional[str]     # None while a reservation is in progress
    in_progress: bool = False


class IdempotencyTracker:
    """
    At-most-once gate for externally sourced events (payment webhooks etc).

    Fail-closed: StoreUnavailable / StoreTimeout propagate unchanged so the
    sender gets a retriable failure instead of a silent double-processing.
    """

    def __init__(self, store: SharedStateStore, *,
                 key_prefix: str = config_settings.IDEMPOTENCY_KEY_PREFIX,
                 default_ttl_seconds: int = config_settings.IDEMPOTENCY_TTL_SECONDS,
                 reservation_ttl_seconds: int = config_settings.IDEMPOTENCY_RESERVATION_TTL_SECONDS,
                 clock: Callable[[], datetime] = now):
        self._store = store
        self._prefix = key_prefix
        self._default_ttl = default_ttl_seconds
        self._reservation_ttl = reservation_ttl_seconds
        self._clock = clock

    def _key(self, event_id: str) -> str:
        if not event_id or not isinstance(event_id, str):
            raise ValueError("event_id must be a non-empty string")
        return f"{self._prefix}:{event_id}"

    async def is_processed(self, event_id: str) -> bool:
        """True once the event is marked, and also while a reservation for it is held."""
        return await self._store.exists(self._key(event_id))

    def _ttl(self, ttl_seconds: Optional[int]) -> int:
        if ttl_seconds is None:
            return self._default_ttl
        if int(ttl_seconds) <= 0:
            raise InvalidConfiguration(f"idempotency ttl must be positive, got {ttl_seconds!r}")
        return int(ttl_seconds)

    async def mark_processed(self, event_id: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = self._ttl(ttl_seconds)
        processed_at = self._clock().isoformat()
        await self._store.set(self._key(event_id), processed_at.encode(), ttl)
        logger.info("idempotency.marked", extra={"event_id": event_id, "ttl": ttl})

    async def get(self, event_id: str) -> Optional[ProcessedEvent]:
        raw = await self._store.get(self._key(event_id))
        if raw is None:
            return None
        value = raw.decode()
        if value.startswith(IN_PROGRESS_PREFIX):
            return ProcessedEvent(event_id=event_id, processed_at_iso=None, in_progress=True)
        return ProcessedEvent(event_id=event_id, processed_at_iso=value)

    async def reserve(self, event_id: str) -> Optional[str]:
        """
        Atomically claim the event before processing it. Returns a token to pass
        to release(), or None when the event is already reserved or done.
        The reservation lapses after reservation_ttl_seconds if never completed.
        """
        token = uuid.uuid4().hex
        claimed = await self._store.set(
            self._key(event_id), f"{IN_PROGRESS_PREFIX}{token}".encode(),
            self._reservation_ttl, only_if_absent=True)
        if not claimed:
            return None
        logger.debug("idempotency.reserved", extra={"event_id": event_id})
        return token

    async def complete(self, event_id: str, token: str, ttl_seconds: Optional[int] = None) -> bool:
        """
        Turn our reservation into the processed record. Returns False when the
        reservation is no longer ours (the lease ran out and another delivery
        claimed the event, or it was already completed); the record is left as is.
        """
        ttl = self._ttl(ttl_seconds)
        processed_at = self._clock().isoformat()
        swapped = await self._store.replace_if_equals(
            self._key(event_id), f"{IN_PROGRESS_PREFIX}{token}".encode(), processed_at.encode(), ttl)
        if not swapped:
            logger.warning("idempotency.reservation_lost", extra={"event_id": event_id})
            return False
        logger.info("idempotency.marked", extra={"event_id": event_id, "ttl": ttl})
        return True

    async def release(self, event_id: str, token: str) -> bool:
        """Drop our own reservation so a redelivery can try again."""
        released = await self._store.delete_if_equals(
            self._key(event_id), f"{IN_PROGRESS_PREFIX}{token}".encode())
        logger.info("idempotency.released", extra={"event_id": event_id, "released": released})
        return released
