from datetime import timedelta

import pytest

from app.models_sqlalchemy.models import InventoryItem
from app.services.autopilot.clock import ensure_utc
from app.services.autopilot.errors import ExpiredWindow, InvalidTransition
from app.services.autopilot.types import OfferReceivedEvent, RepriceCheckEvent


async def _executed_reprice(service, db, item_factory, rule_factory):
    item = item_factory(price=100.0)
    rule_factory("user-1", "reprice")
    actions = await service.submit(RepriceCheckEvent(user_id="user-1", idempotency_key="run-1"))
    action = actions[0]
    assert action.status == "executed"
    assert db.get(InventoryItem, item.id).asking_price == 90.0
    return item, action


@pytest.mark.asyncio
async def test_undo_exactly_at_deadline_succeeds(db, clock, service, item_factory, rule_factory, ebay_adapter):
    item, action = await _executed_reprice(service, db, item_factory, rule_factory)
    deadline = ensure_utc(action.undo_deadline)
    assert deadline == clock.now() + timedelta(hours=24)

    clock.set(deadline)
    undone = await service.undo(action.id)

    assert undone.status == "undone"
    assert ensure_utc(undone.undone_at) == deadline
    assert ebay_adapter.reverse.await_count == 1
    restored = db.get(InventoryItem, item.id)
    assert restored.asking_price == 100.0
    assert all(l.price == 100.0 for l in restored.listings)


@pytest.mark.asyncio
async def test_undo_one_second_late_fails(db, clock, service, item_factory, rule_factory, ebay_adapter):
    item, action = await _executed_reprice(service, db, item_factory, rule_factory)

    clock.set(ensure_utc(action.undo_deadline) + timedelta(seconds=1))
    with pytest.raises(ExpiredWindow):
        await service.undo(action.id)

    assert ebay_adapter.reverse.await_count == 0
    assert db.get(InventoryItem, item.id).asking_price == 90.0


@pytest.mark.asyncio
async def test_undo_twice_is_rejected(db, service, item_factory, rule_factory):
    _, action = await _executed_reprice(service, db, item_factory, rule_factory)

    await service.undo(action.id)
    with pytest.raises(InvalidTransition):
        await service.undo(action.id)


@pytest.mark.asyncio
async def test_offer_decisions_cannot_be_undone(service, rule_factory):
    rule_factory("user-1", "offer")
    actions = await service.submit(
        OfferReceivedEvent(
            user_id="user-1", item_id=None, offer_amount=95, asking_price=100, channel="ebay"
        )
    )
    assert actions[0].status == "executed"
    assert actions[0].undo_deadline is None

    with pytest.raises(ExpiredWindow):
        await service.undo(actions[0].id)


def test_time_remaining(db, clock, service):
    from app.models_sqlalchemy.models import AutopilotAction

    action = AutopilotAction(
        id="a-1",
        user_id="user-1",
        action_type="DELIST",
        confidence=0.95,
        confidence_level="HIGH",
        status="executed",
        reversible=True,
        undo_deadline=clock.now() + timedelta(hours=2),
    )
    assert service.undo_manager.time_remaining(action) == timedelta(hours=2)
    clock.advance(hours=3)
    assert service.undo_manager.time_remaining(action) == timedelta(0)
