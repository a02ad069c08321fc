"""Reprice rule: gradual price drops for listings that are not selling.

Drops are bounded twice. The daily cap limits how far the price may fall
below the highest price in effect during the trailing 24 hours; the weekly
cap does the same over the trailing 7 days. Both references come from the
item's executed, not-undone price changes, so the caps hold across any
number of reprice cycles.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from .clock import ensure_utc
from .confidence import ConfidenceContext, ConfidenceScorer
from .errors import InputError, NotImplementedStrategy
from .offers import ceil_cents, require_amount
from .types import (
    ActionType,
    ItemSnapshot,
    PriceChange,
    ProposedAction,
    RepriceRuleConfig,
    RepriceStrategy,
    is_reversible,
)


BASE_CONFIDENCE = 0.90
HIGH_VALUE_CONFIDENCE = 0.50
LARGE_DROP_PERCENT = 0.15
NEAR_FLOOR_MARGIN = 1.10

DAY = timedelta(days=1)
WEEK = timedelta(days=7)


def _reference_price(current: float, history: Sequence[PriceChange], since: datetime) -> float:
    """Highest price in effect at any point in [since, now]."""
    ref = current
    for change in history:
        if ensure_utc(change.executed_at) >= since:
            ref = max(ref, change.before_price)
    return ref


def _days_elapsed(item: ItemSnapshot, config: RepriceRuleConfig, history: Sequence[PriceChange], now: datetime) -> int:
    if item.listed_at is None:
        raise InputError(f"Item {item.item_id} has no listing date")
    listed_at = ensure_utc(item.listed_at)
    last_change = max((ensure_utc(c.executed_at) for c in history), default=None)

    if last_change is not None and last_change > listed_at:
        return int((now - last_change) / DAY)
    # Grace period only applies before the first drop.
    return int((now - listed_at) / DAY) - config.days_before_first_drop


def decay_rate(config: RepriceRuleConfig, engagement: Optional[float]) -> float:
    strategy = RepriceStrategy(config.strategy)
    if strategy == RepriceStrategy.TIME_DECAY:
        return config.decay_per_day
    if strategy == RepriceStrategy.PERFORMANCE:
        if engagement is None:
            raise InputError("performance strategy requires an engagement signal")
        if engagement < 0:
            raise InputError("engagement signal must not be negative")
        return config.decay_per_day / (1.0 + engagement)
    if strategy == RepriceStrategy.COMPETITIVE:
        raise NotImplementedStrategy(strategy.value)
    raise InputError(f"Unknown reprice strategy '{config.strategy}'")  # pragma: no cover


def reprice_confidence(
    new_price: float,
    current_price: float,
    floor_price: Optional[float],
    high_value: bool,
) -> float:
    confidence = HIGH_VALUE_CONFIDENCE if high_value else BASE_CONFIDENCE
    drop = (current_price - new_price) / current_price
    if drop >= LARGE_DROP_PERCENT:
        confidence = max(confidence - 0.2, 0.3)
    if floor_price is not None and new_price <= floor_price * NEAR_FLOOR_MARGIN:
        confidence = max(confidence - 0.1, 0.4)
    return confidence


def evaluate_reprice(
    config: RepriceRuleConfig,
    item: ItemSnapshot,
    now: datetime,
    scorer: ConfidenceScorer,
    history: Sequence[PriceChange] = (),
    engagement: Optional[float] = None,
    context: Optional[ConfidenceContext] = None,
) -> Optional[ProposedAction]:
    """Propose at most one REPRICE for ``item``. None means leave it alone."""
    # Strategy first so an unsupported one fails before any other work.
    rate = decay_rate(config, engagement if engagement is not None else item.engagement_score)

    now = ensure_utc(now)
    current = require_amount(item.price, "price")
    floor = item.floor_price if config.respect_floor_price else None

    if floor is not None and current <= floor:
        return None

    days = _days_elapsed(item, config, history, now)
    if days <= 0 or rate <= 0:
        return None

    target = current * (1 - min(1.0, rate * days))

    daily_floor = _reference_price(current, history, now - DAY) * (1 - config.max_daily_drop_percent)
    weekly_floor = _reference_price(current, history, now - WEEK) * (1 - config.max_weekly_drop_percent)

    capped_by = None
    new_price = target
    if daily_floor > new_price:
        new_price, capped_by = daily_floor, "daily"
    if weekly_floor > new_price:
        new_price, capped_by = weekly_floor, "weekly"

    clamped_by_floor = False
    if floor is not None and new_price < floor:
        new_price = floor
        clamped_by_floor = True
    else:
        new_price = ceil_cents(new_price)

    new_price = min(new_price, current)
    if new_price >= current:
        return None

    high_value = current >= config.high_value_threshold
    base = reprice_confidence(new_price, current, item.floor_price, high_value)
    scored = scorer.score(base, context)

    listings: List[dict] = [l.to_dict() for l in item.listings if l.status == "active"]
    payload = {
        "strategy": RepriceStrategy(config.strategy).value,
        "oldPrice": current,
        "newPrice": new_price,
        "dropPercent": round((current - new_price) / current, 4),
        "daysElapsed": days,
        "cappedBy": capped_by,
        "clampedByFloor": clamped_by_floor,
        "floorPrice": item.floor_price,
        "listings": listings,
    }
    if scored.factors:
        payload["confidenceFactors"] = [
            {"name": f.name, "multiplier": f.multiplier, "reason": f.reason} for f in scored.factors
        ]

    return ProposedAction(
        user_id=item.user_id,
        item_id=item.item_id,
        action_type=ActionType.REPRICE,
        confidence=scored.score,
        confidence_level=scored.level,
        requires_approval=scorer.requires_approval(
            scored.score,
            item_price=current,
            high_value_threshold=config.high_value_threshold,
        ),
        reversible=is_reversible(ActionType.REPRICE),
        payload=payload,
        before_state={"price": current, "listings": listings},
    )
