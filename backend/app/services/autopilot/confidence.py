"""Confidence scoring for autopilot proposals.

A raw confidence in [0, 1] maps to a discrete level; the level (together
with the high-value and counter-round overrides) decides whether a proposal
can run without the user looking at it first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from app.config import settings

from .types import ConfidenceLevel


# Item value tiers (absolute price) used by the context adjustment.
VALUE_TIER_HIGH = 200
VALUE_TIER_VERY_HIGH = 500
VALUE_TIER_EXTREME = 1000


LEVEL_DESCRIPTIONS = {
    ConfidenceLevel.HIGH: "High confidence - safe to auto-execute",
    ConfidenceLevel.MEDIUM: "Medium confidence - requires approval",
    ConfidenceLevel.LOW: "Low confidence - requires approval",
    ConfidenceLevel.VERY_LOW: "Very low confidence - requires approval, review carefully",
}


@dataclass
class ConfidenceContext:
    """Optional caller-supplied signals that adjust a base confidence."""

    item_value: Optional[float] = None
    is_first_execution: bool = False
    hours_since_last_activity: Optional[float] = None
    is_new_buyer: bool = False
    rule_execution_count: Optional[int] = None
    days_listed: Optional[int] = None
    historical_accuracy: Optional[float] = None
    is_outlier: bool = False


@dataclass
class ConfidenceFactor:
    name: str
    multiplier: float
    reason: str


@dataclass
class ConfidenceScore:
    score: float
    level: ConfidenceLevel
    factors: List[ConfidenceFactor] = field(default_factory=list)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class ConfidenceScorer:
    """Maps raw confidence to a level. Pure; thresholds come from settings."""

    def __init__(
        self,
        high: Optional[float] = None,
        medium: Optional[float] = None,
        low: Optional[float] = None,
    ):
        self.high = settings.CONFIDENCE_HIGH_THRESHOLD if high is None else high
        self.medium = settings.CONFIDENCE_MEDIUM_THRESHOLD if medium is None else medium
        self.low = settings.CONFIDENCE_LOW_THRESHOLD if low is None else low

    def level(self, confidence: float) -> ConfidenceLevel:
        if confidence >= self.high:
            return ConfidenceLevel.HIGH
        if confidence >= self.medium:
            return ConfidenceLevel.MEDIUM
        if confidence >= self.low:
            return ConfidenceLevel.LOW
        return ConfidenceLevel.VERY_LOW

    def requires_approval(
        self,
        confidence: float,
        item_price: Optional[float] = None,
        high_value_threshold: Optional[float] = None,
        conservative_counter: bool = False,
    ) -> bool:
        """Anything short of HIGH needs approval; high-value items always do."""
        if self.level(confidence) != ConfidenceLevel.HIGH:
            return True
        if (
            item_price is not None
            and high_value_threshold is not None
            and item_price >= high_value_threshold
        ):
            return True
        return conservative_counter

    def score(self, base: float, context: Optional[ConfidenceContext] = None) -> ConfidenceScore:
        """Apply context factors multiplicatively to ``base`` and clamp to [0, 1]."""
        value = float(base)
        factors: List[ConfidenceFactor] = []

        def _apply(name: str, multiplier: float, reason: str) -> None:
            nonlocal value
            value *= multiplier
            factors.append(ConfidenceFactor(name=name, multiplier=multiplier, reason=reason))

        if context is not None:
            v = context.item_value
            if v is not None:
                if v > VALUE_TIER_EXTREME:
                    _apply("extreme_value", 0.5, f"Item value ${v:g} exceeds ${VALUE_TIER_EXTREME}")
                elif v > VALUE_TIER_VERY_HIGH:
                    _apply("very_high_value", 0.6, f"Item value ${v:g} exceeds ${VALUE_TIER_VERY_HIGH}")
                elif v > VALUE_TIER_HIGH:
                    _apply("high_value", 0.8, f"Item value ${v:g} exceeds ${VALUE_TIER_HIGH}")

            if context.is_first_execution:
                _apply("first_execution", 0.7, "First time executing this rule type")

            hours = context.hours_since_last_activity
            if hours is not None:
                if hours > 72:
                    _apply("user_inactive_long", 0.7, f"User inactive for {round(hours)} hours")
                elif hours > 24:
                    _apply("user_inactive", 0.9, f"User inactive for {round(hours)} hours")

            if context.is_new_buyer:
                _apply("new_buyer", 0.95, "Offer from a buyer with no previous interactions")

            if context.rule_execution_count is not None and context.rule_execution_count < 5:
                _apply(
                    "low_execution_count",
                    0.9,
                    f"Rule has only been executed {context.rule_execution_count} times",
                )

            if context.days_listed is not None and context.days_listed > 30:
                _apply("stale_listing", 1.05, f"Item listed for {context.days_listed} days")

            acc = context.historical_accuracy
            if acc is not None:
                if acc >= 0.95:
                    _apply("high_accuracy", 1.1, f"Rule has {acc * 100:.0f}% historical accuracy")
                elif acc < 0.7:
                    _apply("low_accuracy", 0.8, f"Rule has only {acc * 100:.0f}% historical accuracy")

            if context.is_outlier:
                _apply("outlier_pattern", 0.6, "Offer significantly outside normal patterns")

        value = _clamp(value)
        return ConfidenceScore(score=value, level=self.level(value), factors=factors)


def describe_level(level: ConfidenceLevel) -> str:
    return LEVEL_DESCRIPTIONS[ConfidenceLevel(level)]


default_scorer = ConfidenceScorer()
