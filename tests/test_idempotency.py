import asyncio
from datetime import datetime, timezone

import pytest
from asgi_lifespan import LifespanManager
from fastapi import Depends, Request
from httpx import ASGITransport, AsyncClient

from reqguard.api.dependencies import get_idempotency_tracker
from reqguard.common.errors import InvalidConfiguration, StoreUnavailable
from reqguard.common.utils import success_response
from reqguard.idempotency.handlers import process_once
from reqguard.idempotency.tracker import IdempotencyTracker
from reqguard.main import create_app

url_prefix = "/api/v1"

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def tracker(store):
    return IdempotencyTracker(store, key_prefix="webhook:processed", default_ttl_seconds=86400,
                              reservation_ttl_seconds=300, clock=lambda: FIXED_NOW)


@pytest.mark.asyncio
async def test_mark_then_is_processed(tracker, store):
    assert await tracker.is_processed("evt_1") is False

    await tracker.mark_processed("evt_1")

    assert await tracker.is_processed("evt_1") is True
    assert await store.get("webhook:processed:evt_1") == FIXED_NOW.isoformat().encode()
    event = await tracker.get("evt_1")
    assert event.processed_at_iso == FIXED_NOW.isoformat()
    assert event.in_progress is False


@pytest.mark.asyncio
async def test_records_expire_after_retention(tracker, clock):
    await tracker.mark_processed("evt_old", ttl_seconds=60)

    clock.advance(61)

    assert await tracker.is_processed("evt_old") is False
    assert await tracker.get("evt_old") is None


@pytest.mark.asyncio
async def test_empty_event_id_rejected(tracker):
    with pytest.raises(ValueError):
        await tracker.is_processed("")


@pytest.mark.asyncio
async def test_store_outage_propagates(failing_store):
    tracker = IdempotencyTracker(failing_store)

    with pytest.raises(StoreUnavailable):
        await tracker.is_processed("evt_1")
    with pytest.raises(StoreUnavailable):
        await tracker.mark_processed("evt_1")


@pytest.mark.asyncio
async def test_process_once_skips_duplicate(tracker):
    side_effects = []

    async def handler():
        side_effects.append("order completed")
        return "done"

    first = await process_once(tracker, "evt_123", handler)
    second = await process_once(tracker, "evt_123", handler)

    assert first.processed and first.result == "done"
    assert second.duplicate and not second.processed
    assert side_effects == ["order completed"]


@pytest.mark.asyncio
async def test_reserve_blocks_concurrent_delivery(tracker):
    token = await tracker.reserve("evt_9")
    assert token is not None
    assert await tracker.reserve("evt_9") is None

    pending = await tracker.get("evt_9")
    assert pending.in_progress is True
    assert pending.processed_at_iso is None

    assert await tracker.release("evt_9", "someone-else") is False
    assert await tracker.release("evt_9", token) is True
    assert await tracker.is_processed("evt_9") is False


@pytest.mark.asyncio
async def test_reservation_lapses(tracker, clock):
    assert await tracker.reserve("evt_stuck") is not None

    clock.advance(301)

    assert await tracker.reserve("evt_stuck") is not None


@pytest.mark.asyncio
async def test_process_once_reserve_mode(tracker):
    started = asyncio.Event()
    release = asyncio.Event()
    calls = 0

    async def slow_handler():
        nonlocal calls
        calls += 1
        started.set()
        await release.wait()
        return "granted"

    first = asyncio.create_task(process_once(tracker, "evt_course", slow_handler, reserve=True))
    await started.wait()

    during = await process_once(tracker, "evt_course", slow_handler, reserve=True)
    assert during.in_progress

    release.set()
    outcome = await first
    assert outcome.processed and outcome.result == "granted"

    after = await process_once(tracker, "evt_course", slow_handler, reserve=True)
    assert after.duplicate
    assert calls == 1


@pytest.mark.asyncio
async def test_failed_handler_releases_reservation(tracker):

    async def broken():
        raise RuntimeError("downstream 500")

    with pytest.raises(RuntimeError):
        await process_once(tracker, "evt_retry", broken, reserve=True)

    assert await tracker.is_processed("evt_retry") is False

    async def ok():
        return 1

    outcome = await process_once(tracker, "evt_retry", ok, reserve=True)
    assert outcome.processed


def _webhook_app(store, fulfilled):
    app = create_app(store=store)

    @app.post(f"{url_prefix}/webhooks/payments")
    async def payment_webhook(request: Request, tracker: IdempotencyTracker = Depends(get_idempotency_tracker)):
        body = await request.json()

        async def fulfil():
            fulfilled.append(body["orderId"])

        outcome = await process_once(tracker, body["eventId"], fulfil)
        return success_response({"received": True, "duplicate": outcome.duplicate})

    return app


@pytest.mark.asyncio
async def test_duplicate_webhook_acknowledged_once_processed(store, clock):
    fulfilled = []
    app = _webhook_app(store, fulfilled)
    event = {"eventId": "evt_123", "orderId": "ord_1"}

    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            r1 = await client.post(f"{url_prefix}/webhooks/payments", json=event)
            clock.advance(2)
            r2 = await client.post(f"{url_prefix}/webhooks/payments", json=event)

    assert r1.status_code == 200
    assert r1.json()["data"]["duplicate"] is False
    assert r2.status_code == 200
    assert r2.json()["data"]["duplicate"] is True
    assert fulfilled == ["ord_1"]


@pytest.mark.asyncio
async def test_webhook_gets_retriable_error_when_store_down(failing_store):
    fulfilled = []
    app = _webhook_app(failing_store, fulfilled)

    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            r = await client.post(f"{url_prefix}/webhooks/payments", json={"eventId": "evt_1", "orderId": "o"})

    assert r.status_code == 503
    assert r.headers["Retry-After"] == "30"
    assert r.json()["error"]["code"] == "STORE_UNAVAILABLE"
    assert fulfilled == []


@pytest.mark.asyncio
async def test_explicit_ttl_must_be_positive(tracker, clock):
    with pytest.raises(InvalidConfiguration):
        await tracker.mark_processed("evt_zero", ttl_seconds=0)
    assert await tracker.is_processed("evt_zero") is False

    await tracker.mark_processed("evt_short", ttl_seconds=5)
    clock.advance(6)
    assert await tracker.is_processed("evt_short") is False


@pytest.mark.asyncio
async def test_complete_after_lost_reservation_keeps_new_holder(tracker, store, clock):
    stale_token = await tracker.reserve("evt_slow")
    clock.advance(301)
    fresh_token = await tracker.reserve("evt_slow")
    assert fresh_token is not None

    assert await tracker.complete("evt_slow", stale_token) is False
    assert (await tracker.get("evt_slow")).in_progress is True
    assert await store.get("webhook:processed:evt_slow") == f"in-progress:{fresh_token}".encode()

    assert await tracker.complete("evt_slow", fresh_token) is True
    event = await tracker.get("evt_slow")
    assert event.processed_at_iso == FIXED_NOW.isoformat()
    # a second completion with the spent token is a no-op
    assert await tracker.complete("evt_slow", fresh_token) is False
