import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from reqguard.common.errors import StoreError
from reqguard.idempotency.constants import logger
from reqguard.idempotency.tracker import IdempotencyTracker


@dataclass(frozen=True)
class EventOutcome:
    event_id: str
    processed: bool = False
    duplicate: bool = False
    in_progress: bool = False    # another delivery holds the reservation
    result: Any = None


async def process_once(tracker: IdempotencyTracker, event_id: str,
                       handler: Callable[[], Awaitable[Any]], *, reserve: bool = False) -> EventOutcome:
    """
    Run `handler` for an event at most once per retention window.

    Default mode is check -> process -> mark: a crash between process and mark
    means the event is processed again on redelivery, so handler side effects
    must tolerate a repeat (upserts keyed by order id, not blind inserts).
    reserve=True claims the event first, which shrinks that window but does not
    close it.

    Store failures propagate; the caller should answer the sender with a
    retriable error.
    """
    if not reserve:
        if await tracker.is_processed(event_id):
            logger.info("idempotency.duplicate", extra={"event_id": event_id})
            return EventOutcome(event_id=event_id, duplicate=True)
        result = await handler()
        await tracker.mark_processed(event_id)
        return EventOutcome(event_id=event_id, processed=True, result=result)

    token = await tracker.reserve(event_id)
    if token is None:
        existing = await tracker.get(event_id)
        if existing is None or existing.in_progress:
            logger.info("idempotency.in_progress", extra={"event_id": event_id})
            return EventOutcome(event_id=event_id, in_progress=True)
        logger.info("idempotency.duplicate", extra={"event_id": event_id})
        return EventOutcome(event_id=event_id, duplicate=True)

    try:
        result = await handler()
    except (Exception, asyncio.CancelledError):
        try:
            await tracker.release(event_id, token)
        except StoreError as e:
            # the reservation lease runs out on its own
            logger.warning("idempotency.release_failed", extra={"event_id": event_id, "error": str(e)})
        raise

    # the handler ran either way; a lost reservation is only logged by complete()
    await tracker.complete(event_id, token)
    return EventOutcome(event_id=event_id, processed=True, result=result)
