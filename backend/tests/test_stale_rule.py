from datetime import datetime, timedelta, timezone

import pytest

from app.services.autopilot.confidence import ConfidenceScorer
from app.services.autopilot.errors import InputError
from app.services.autopilot.stale import evaluate_stale, staleness_level
from app.services.autopilot.types import (
    ActionType,
    ItemSnapshot,
    ListingSnapshot,
    StaleRuleConfig,
    StalenessLevel,
)


NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def scorer():
    return ConfidenceScorer(high=0.85, medium=0.65, low=0.40)


def _item(listed_days_ago):
    return ItemSnapshot(
        item_id="item-1",
        user_id="user-1",
        title="Canvas tote",
        price=40.0,
        floor_price=None,
        status="active",
        listed_at=NOW - timedelta(days=listed_days_ago) if listed_days_ago is not None else None,
        listings=[ListingSnapshot(listing_id="l-1", channel="ebay", price=40.0, status="active")],
    )


@pytest.mark.parametrize(
    "days, expected",
    [
        (0, StalenessLevel.FRESH),
        (29, StalenessLevel.FRESH),
        (30, StalenessLevel.WARNING),
        (60, StalenessLevel.STALE),
        (89, StalenessLevel.STALE),
        (90, StalenessLevel.VERY_STALE),
    ],
)
def test_staleness_levels(days, expected):
    assert staleness_level(days, 60) == expected


def test_notify_only_reports_without_proposing(scorer):
    proposal, report = evaluate_stale(StaleRuleConfig(), _item(61), NOW, scorer)

    assert proposal is None
    assert report.level == StalenessLevel.STALE
    assert report.days_listed == 61
    assert "relisting" in report.suggestion


def test_notify_only_wins_over_auto_relist(scorer):
    config = StaleRuleConfig(notify_only=True, auto_relist=True)
    proposal, _ = evaluate_stale(config, _item(61), NOW, scorer)
    assert proposal is None


def test_auto_relist_always_needs_approval(scorer):
    config = StaleRuleConfig(notify_only=False, auto_relist=True)
    proposal, report = evaluate_stale(config, _item(61), NOW, scorer)

    assert proposal.action_type == ActionType.RELIST
    assert proposal.confidence == pytest.approx(0.5)
    assert proposal.requires_approval is True
    assert proposal.reversible is True
    assert proposal.before_state["listedAt"] == (NOW - timedelta(days=61)).isoformat()
    assert proposal.payload["staleness"] == report.level.value


def test_very_stale_item_gets_archive_proposal(scorer):
    config = StaleRuleConfig(notify_only=False, auto_relist=False)

    proposal, _ = evaluate_stale(config, _item(95), NOW, scorer)
    assert proposal.action_type == ActionType.ARCHIVE
    assert proposal.requires_approval is True

    stale_only, _ = evaluate_stale(config, _item(65), NOW, scorer)
    assert stale_only is None


def test_fresh_item_gets_no_proposal(scorer):
    config = StaleRuleConfig(notify_only=False, auto_relist=True)
    proposal, report = evaluate_stale(config, _item(10), NOW, scorer)
    assert proposal is None
    assert report.level == StalenessLevel.FRESH


def test_missing_listing_date_raises(scorer):
    with pytest.raises(InputError):
        evaluate_stale(StaleRuleConfig(), _item(None), NOW, scorer)
