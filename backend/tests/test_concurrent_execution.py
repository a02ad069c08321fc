import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.models_sqlalchemy import Base
from app.models_sqlalchemy.models import AutopilotAction
from app.services.autopilot.adapters import EffectResult
from app.services.autopilot.locks import ItemLocks
from app.services.autopilot.service import AutopilotService
from app.services.autopilot.types import OfferReceivedEvent

from conftest import enable_rule


@pytest.fixture
def session_factory(tmp_path):
    # Separate sessions on a shared file database stand in for separate processes.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'workers.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def sessions(session_factory):
    opened = [session_factory(), session_factory()]
    yield opened
    for session in opened:
        session.close()


def _worker(session, registry, clock):
    # Own ItemLocks per worker: nothing is shared in memory.
    return AutopilotService(
        session, registry=registry, clock=clock, locks=ItemLocks(), adapter_timeout=1.0, context_factors=False
    )


async def _approved_decline(worker):
    enable_rule(worker.db, "user-1", "offer")
    [action] = await worker.submit(
        OfferReceivedEvent(
            user_id="user-1",
            item_id="item-1",
            offer_amount=40,
            asking_price=100,
            offer_id="offer-9",
            channel="ebay",
        )
    )
    assert action.status == "pending"
    worker.approve(action.id)
    return action.id


@pytest.mark.asyncio
async def test_two_workers_execute_an_action_once(sessions, registry, clock, ebay_adapter):
    first, second = (_worker(s, registry, clock) for s in sessions)
    action_id = await _approved_decline(first)

    async def slow_execute(action_type, payload):
        await asyncio.sleep(0.05)
        return EffectResult(success=True)

    ebay_adapter.execute.side_effect = slow_execute

    results = await asyncio.gather(first.execute(action_id), second.execute(action_id))

    assert ebay_adapter.execute.await_count == 1
    assert sorted(r.status for r in results) == ["approved", "executed"]
    history = [e.to_status for e in first.get_action_history(action_id)]
    assert history.count("executed") == 1
    stored = first.db.get(AutopilotAction, action_id)
    first.db.refresh(stored)
    assert stored.claimed_by is None


@pytest.mark.asyncio
async def test_claim_held_by_live_worker_is_respected(sessions, registry, clock, ebay_adapter):
    first, second = (_worker(s, registry, clock) for s in sessions)
    action_id = await _approved_decline(first)

    assert first.actions.claim(action_id, "other-worker", clock.now(), clock.now() - timedelta(minutes=5), ["approved"])

    action = await second.execute(action_id)
    assert action.status == "approved"
    assert ebay_adapter.execute.await_count == 0


@pytest.mark.asyncio
async def test_abandoned_claim_is_taken_over(sessions, registry, clock, ebay_adapter):
    first, second = (_worker(s, registry, clock) for s in sessions)
    action_id = await _approved_decline(first)

    crashed_at = clock.now() - timedelta(hours=1)
    assert first.actions.claim(action_id, "crashed-worker", crashed_at, crashed_at - timedelta(minutes=5), ["approved"])

    action = await second.execute(action_id)
    assert action.status == "executed"
    assert action.claimed_by is None
    assert ebay_adapter.execute.await_count == 1
