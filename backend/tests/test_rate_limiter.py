from datetime import datetime, timedelta, timezone

import pytest

from app.models_sqlalchemy.models import AutopilotAction, InventoryItem
from app.services.autopilot.clock import ensure_utc
from app.services.autopilot.errors import RateLimitExceeded
from app.services.autopilot.rate_limiter import RateLimiter
from app.services.autopilot.types import RepriceCheckEvent


@pytest.fixture
def limiter(clock):
    caps = {"OFFER_ACCEPT": 3}
    return RateLimiter(clock, limit_for=lambda action_type: caps.get(action_type))


def test_cap_allows_n_then_denies(db, limiter):
    results = [limiter.try_acquire(db, "user-1", "OFFER_ACCEPT") for _ in range(4)]

    assert results == [True, True, True, False]
    assert limiter.used(db, "user-1", "OFFER_ACCEPT") == 3
    assert limiter.remaining(db, "user-1", "OFFER_ACCEPT") == 0


def test_counters_are_per_user(db, limiter):
    for _ in range(3):
        limiter.try_acquire(db, "user-1", "OFFER_ACCEPT")
    assert limiter.try_acquire(db, "user-2", "OFFER_ACCEPT") is True


def test_counter_resets_at_utc_midnight(db, clock, limiter):
    clock.set(datetime(2024, 3, 10, 23, 59, 59, tzinfo=timezone.utc))
    for _ in range(3):
        assert limiter.try_acquire(db, "user-1", "OFFER_ACCEPT") is True
    assert limiter.try_acquire(db, "user-1", "OFFER_ACCEPT") is False

    clock.advance(seconds=1)
    assert limiter.try_acquire(db, "user-1", "OFFER_ACCEPT") is True
    assert limiter.used(db, "user-1", "OFFER_ACCEPT") == 1


def test_acquire_raises_with_reset_time(db, clock, limiter):
    for _ in range(3):
        limiter.acquire(db, "user-1", "OFFER_ACCEPT")

    with pytest.raises(RateLimitExceeded) as exc_info:
        limiter.acquire(db, "user-1", "OFFER_ACCEPT")

    assert exc_info.value.limit == 3
    assert exc_info.value.resets_at == datetime(2024, 3, 11, tzinfo=timezone.utc)
    assert exc_info.value.retryable is True


def test_uncapped_action_types_always_pass(db, limiter):
    for _ in range(10):
        assert limiter.try_acquire(db, "user-1", "DELIST") is True
    assert limiter.remaining(db, "user-1", "DELIST") is None


@pytest.mark.asyncio
async def test_denied_execution_is_deferred_to_next_day(db, clock, make_service, item_factory, rule_factory):
    service = make_service(limits={"REPRICE": 1})
    first = item_factory(title="Wool coat")
    second = item_factory(title="Silk scarf")
    rule_factory("user-1", "reprice")

    actions = await service.submit(RepriceCheckEvent(user_id="user-1"))
    statuses = sorted(a.status for a in actions)
    assert statuses == ["approved", "executed"]

    deferred = next(a for a in actions if a.status == "approved")
    assert ensure_utc(deferred.next_attempt_at) == datetime(2024, 3, 11, tzinfo=timezone.utc)

    # Nothing is due before midnight.
    assert await service.run_due_retries() == []

    clock.set(datetime(2024, 3, 11, 0, 0, 1, tzinfo=timezone.utc))
    done = await service.run_due_retries()
    assert [a.id for a in done] == [deferred.id]
    assert db.get(AutopilotAction, deferred.id).status == "executed"
    prices = {db.get(InventoryItem, i.id).asking_price for i in (first, second)}
    assert prices == {90.0}
