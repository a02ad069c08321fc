import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.models_sqlalchemy import Base
from app.models_sqlalchemy.models import AutopilotAction, InventoryItem
from app.services.autopilot.adapters import EffectResult
from app.services.autopilot.batch import reprice_check_all, retry_due_actions, stale_check_all
from app.services.autopilot.errors import RetryableAdapterError

from conftest import add_item, enable_rule


@pytest.fixture(autouse=True)
def no_history_factors(monkeypatch):
    # Fresh users would otherwise get first-execution penalties and stay pending.
    monkeypatch.setattr(settings, "AUTOPILOT_CONTEXT_FACTORS_ENABLED", False)


@pytest.fixture
def session_factory(tmp_path):
    # Each (user, item) pair opens its own session, so use a file database.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'batch.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def seeded(session_factory, clock):
    db = session_factory()
    try:
        good = [
            add_item(db, clock, user_id="user-1", title="Denim jacket").id,
            add_item(db, clock, user_id="user-1", title="Wool scarf").id,
            add_item(db, clock, user_id="user-2", title="Leather bag").id,
        ]
        broken = add_item(db, clock, user_id="user-2", title="Undated lamp", listed_days_ago=None).id
        # No reprice rule for user-3: never evaluated.
        add_item(db, clock, user_id="user-3", title="Desk chair")
        # Sold items are not eligible.
        add_item(db, clock, user_id="user-1", title="Sold boots", status="sold")
        for user_id in ("user-1", "user-2"):
            enable_rule(db, user_id, "reprice")
        yield {"good": good, "broken": broken}
    finally:
        db.close()


@pytest.mark.asyncio
async def test_reprice_check_all_tolerates_a_failing_pair(session_factory, registry, clock, seeded):
    summary = await reprice_check_all(session_factory, registry=registry, clock=clock, concurrency=2)

    assert summary.users == 2
    assert summary.evaluated == 4
    assert summary.proposed == 3
    assert summary.executed == 3
    assert summary.errors == 1
    assert summary.error_details[0][:2] == ("user-2", seeded["broken"])

    db = session_factory()
    try:
        prices = [db.get(InventoryItem, item_id).asking_price for item_id in seeded["good"]]
        assert prices == [90.0, 90.0, 90.0]
        keys = {a.idempotency_key.split(":")[0] for a in db.query(AutopilotAction).all()}
        assert keys == {"reprice_check_all"}
    finally:
        db.close()

    data = summary.to_dict()
    assert data["errorDetails"][0]["itemId"] == seeded["broken"]


@pytest.mark.asyncio
async def test_adapter_failure_does_not_stop_other_pairs(session_factory, registry, clock, seeded, ebay_adapter):
    calls = {"n": 0}

    async def flaky(action_type, payload):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RetryableAdapterError("ebay: HTTP 503")
        return EffectResult(success=True)

    ebay_adapter.execute.side_effect = flaky

    summary = await reprice_check_all(session_factory, registry=registry, clock=clock, concurrency=1)
    assert summary.proposed == 3
    assert summary.executed == 2

    clock.advance(minutes=5)
    retried = await retry_due_actions(session_factory, registry=registry, clock=clock)
    assert retried == 1

    db = session_factory()
    try:
        statuses = sorted(a.status for a in db.query(AutopilotAction).all())
        assert statuses == ["executed", "executed", "executed"]
    finally:
        db.close()


@pytest.mark.asyncio
async def test_stale_check_all_without_rules_is_a_noop(session_factory, registry, clock, seeded):
    summary = await stale_check_all(session_factory, registry=registry, clock=clock)
    assert summary.users == 0
    assert summary.evaluated == 0


@pytest.mark.asyncio
async def test_autopilot_cycle_runs_every_job(session_factory, seeded):
    from app.workers.autopilot_loop import run_autopilot_once

    result = await run_autopilot_once(session_factory)

    assert set(result) == {"retried", "reprice", "stale"}
    assert result["reprice"]["users"] == 2
    assert result["stale"]["users"] == 0
