import pytest

from app.services.autopilot.confidence import (
    ConfidenceContext,
    ConfidenceScorer,
    describe_level,
)
from app.services.autopilot.types import ConfidenceLevel


@pytest.fixture
def scorer():
    return ConfidenceScorer(high=0.85, medium=0.65, low=0.40)


@pytest.mark.parametrize(
    "value, expected",
    [
        (1.0, ConfidenceLevel.HIGH),
        (0.85, ConfidenceLevel.HIGH),
        (0.8499, ConfidenceLevel.MEDIUM),
        (0.65, ConfidenceLevel.MEDIUM),
        (0.64, ConfidenceLevel.LOW),
        (0.40, ConfidenceLevel.LOW),
        (0.39, ConfidenceLevel.VERY_LOW),
        (0.0, ConfidenceLevel.VERY_LOW),
    ],
)
def test_level_thresholds(scorer, value, expected):
    assert scorer.level(value) == expected


def test_only_high_confidence_skips_approval(scorer):
    assert scorer.requires_approval(0.9) is False
    assert scorer.requires_approval(0.84) is True
    assert scorer.requires_approval(0.3) is True


def test_high_value_items_always_need_approval(scorer):
    assert scorer.requires_approval(0.99, item_price=250.0, high_value_threshold=200.0) is True
    assert scorer.requires_approval(0.99, item_price=199.99, high_value_threshold=200.0) is False


def test_conservative_counter_needs_approval(scorer):
    assert scorer.requires_approval(0.9, conservative_counter=True) is True


def test_score_without_context_is_base(scorer):
    result = scorer.score(0.9)
    assert result.score == pytest.approx(0.9)
    assert result.level == ConfidenceLevel.HIGH
    assert result.factors == []


def test_score_applies_value_tier_and_first_execution(scorer):
    ctx = ConfidenceContext(item_value=600.0, is_first_execution=True)
    result = scorer.score(0.9, ctx)

    assert result.score == pytest.approx(0.9 * 0.6 * 0.7)
    assert [f.name for f in result.factors] == ["very_high_value", "first_execution"]
    assert result.level == ConfidenceLevel.VERY_LOW


def test_score_is_clamped_to_one(scorer):
    ctx = ConfidenceContext(historical_accuracy=0.99, days_listed=45)
    result = scorer.score(0.95, ctx)
    assert result.score == 1.0
    assert result.level == ConfidenceLevel.HIGH


def test_inactivity_and_low_accuracy(scorer):
    ctx = ConfidenceContext(hours_since_last_activity=100, historical_accuracy=0.5)
    result = scorer.score(1.0, ctx)
    assert result.score == pytest.approx(0.7 * 0.8)
    names = {f.name for f in result.factors}
    assert names == {"user_inactive_long", "low_accuracy"}


def test_describe_level():
    assert "auto-execute" in describe_level(ConfidenceLevel.HIGH)
    assert "approval" in describe_level("LOW")
