from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models_sqlalchemy import Base
from app.models_sqlalchemy.models import ChannelListing, InventoryItem
from app.services.autopilot.adapters import ChannelRegistry, EffectResult
from app.services.autopilot.clock import ManualClock
from app.services.autopilot.locks import ItemLocks
from app.services.autopilot.rate_limiter import RateLimiter
from app.services.autopilot.service import AutopilotService
from app.services.autopilot.state_machine import ActionStateMachine
from app.services.autopilot.store import RuleStore
from app.services.autopilot.undo import UndoManager


START = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return ManualClock(START)


def _mock_adapter():
    adapter = AsyncMock()
    adapter.execute.return_value = EffectResult(success=True)
    adapter.reverse.return_value = EffectResult(success=True)
    return adapter


@pytest.fixture
def ebay_adapter():
    return _mock_adapter()


@pytest.fixture
def mercari_adapter():
    return _mock_adapter()


@pytest.fixture
def registry(ebay_adapter, mercari_adapter):
    registry = ChannelRegistry(api_channels=["ebay", "mercari"])
    registry.register("ebay", ebay_adapter)
    registry.register("mercari", mercari_adapter)
    return registry


@pytest.fixture
def make_service(db, registry, clock):
    """Factory for an AutopilotService wired to the test session and clock."""

    def _make(limits=None, max_retries=3, adapter_timeout=1.0, session=None, locks=None, context_factors=False):
        limits = limits or {}
        return AutopilotService(
            session or db,
            registry=registry,
            clock=clock,
            limiter=RateLimiter(clock, limit_for=lambda action_type: limits.get(action_type)),
            locks=locks or ItemLocks(),
            machine=ActionStateMachine(
                clock, max_retries=max_retries, backoff_seconds=30, backoff_max_seconds=3600
            ),
            undo_manager=UndoManager(clock),
            adapter_timeout=adapter_timeout,
            context_factors=context_factors,
        )

    return _make


@pytest.fixture
def service(make_service):
    return make_service()


def add_item(
    db,
    clock,
    user_id="user-1",
    price=100.0,
    floor_price=None,
    listed_days_ago=10,
    channels=("ebay",),
    title="Vintage denim jacket",
    status="active",
):
    listed_at = clock.now() - timedelta(days=listed_days_ago) if listed_days_ago is not None else None
    item = InventoryItem(
        user_id=user_id,
        title=title,
        asking_price=price,
        floor_price=floor_price,
        status=status,
        listed_at=listed_at,
    )
    for channel in channels:
        item.listings.append(
            ChannelListing(
                channel=channel,
                external_id=f"{channel}-{title[:8]}",
                price=price,
                status="active",
                published_at=listed_at,
            )
        )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def enable_rule(db, user_id, rule_type, **config):
    return RuleStore(db).upsert_rule(user_id, rule_type, config or None, enabled=True)


@pytest.fixture
def item_factory(db, clock):
    def _make(**kwargs):
        return add_item(db, clock, **kwargs)

    return _make


@pytest.fixture
def rule_factory(db):
    def _make(user_id, rule_type, **config):
        return enable_rule(db, user_id, rule_type, **config)

    return _make
