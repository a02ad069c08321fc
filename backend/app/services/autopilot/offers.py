"""Offer rule: accept, decline or counter a buyer offer."""

from __future__ import annotations

import math
from typing import Any, Optional

from .confidence import ConfidenceContext, ConfidenceScorer
from .errors import InputError
from .types import (
    ActionType,
    CONSERVATIVE_COUNTER_STRATEGIES,
    CounterStrategy,
    OfferReceivedEvent,
    OfferRuleConfig,
    ProposedAction,
    is_reversible,
)


ACCEPT_BASE_CONFIDENCE = 0.85
DECLINE_BASE_CONFIDENCE = 0.65
BELOW_FLOOR_DECLINE_CONFIDENCE = 0.75
COUNTER_BASE_CONFIDENCE = 0.90
COUNTER_ROUND_PENALTY = 0.10


def require_amount(value: Any, name: str, allow_zero: bool = False) -> float:
    """Return ``value`` as a finite positive float or raise InputError."""
    if value is None:
        raise InputError(f"{name} is required")
    if isinstance(value, bool):
        raise InputError(f"{name} must be a number")
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise InputError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(amount):
        raise InputError(f"{name} must be finite")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InputError(f"{name} must be greater than zero")
    return amount


def ceil_cents(value: float) -> float:
    # The epsilon keeps 92.00000000001 from becoming 92.01.
    return math.ceil(round(value * 100, 6)) / 100


def accept_confidence(ratio: float, threshold: float) -> float:
    if threshold >= 1:
        return 1.0
    scaled = ACCEPT_BASE_CONFIDENCE + (1 - ACCEPT_BASE_CONFIDENCE) * (ratio - threshold) / (1 - threshold)
    return min(1.0, scaled)


def decline_confidence(ratio: float, threshold: float) -> float:
    if threshold <= 0:
        return 1.0
    distance = max(0.0, (threshold - ratio) / threshold)
    return min(1.0, DECLINE_BASE_CONFIDENCE + (1 - DECLINE_BASE_CONFIDENCE) * distance)


def counter_confidence(counter_round: int) -> float:
    return max(0.0, COUNTER_BASE_CONFIDENCE - COUNTER_ROUND_PENALTY * counter_round)


def compute_counter_amount(
    strategy: CounterStrategy,
    offer_amount: float,
    asking_price: float,
    floor_price: Optional[float],
) -> float:
    """Counter amount for ``strategy``, never below the floor nor above asking."""
    if floor_price is not None and floor_price > asking_price:
        raise InputError(f"floorPrice {floor_price} is above askingPrice {asking_price}")

    strategy = CounterStrategy(strategy)
    if strategy == CounterStrategy.FLOOR:
        amount = max(floor_price or 0.0, asking_price * 0.95)
    elif strategy == CounterStrategy.MIDPOINT:
        amount = (offer_amount + asking_price) / 2
    elif strategy == CounterStrategy.ASKING_5:
        amount = asking_price * 0.95
    else:  # pragma: no cover - enum is exhaustive
        raise InputError(f"Unknown counter strategy '{strategy}'")

    # A counter has to ask for more than the buyer offered.
    amount = max(amount, offer_amount + 0.01)
    if floor_price is not None:
        amount = max(amount, floor_price)

    amount = ceil_cents(amount)
    return min(amount, asking_price)


def evaluate_offer(
    config: OfferRuleConfig,
    event: OfferReceivedEvent,
    scorer: ConfidenceScorer,
    context: Optional[ConfidenceContext] = None,
) -> Optional[ProposedAction]:
    """Decide what to do with ``event``. Returns None for manual review."""
    asking = require_amount(event.asking_price, "askingPrice")
    offer = require_amount(event.offer_amount, "offerAmount")
    floor = None
    if event.floor_price is not None:
        floor = require_amount(event.floor_price, "floorPrice", allow_zero=True)

    counter_round = event.counter_round
    if counter_round is None or isinstance(counter_round, bool) or not isinstance(counter_round, int):
        raise InputError("counterRound must be an integer")
    if counter_round < 0:
        raise InputError("counterRound must not be negative")

    ratio = offer / asking
    payload = {
        "offerId": event.offer_id,
        "offerAmount": offer,
        "askingPrice": asking,
        "floorPrice": floor,
        "ratio": round(ratio, 4),
        "buyerUsername": event.buyer_username,
        "counterRound": counter_round,
    }

    conservative_counter = False
    if ratio >= config.auto_accept_threshold:
        action_type = ActionType.OFFER_ACCEPT
        base = accept_confidence(ratio, config.auto_accept_threshold)
        payload["reason"] = (
            f"Offer ({ratio:.0%}) meets auto-accept threshold ({config.auto_accept_threshold:.0%})"
        )
    elif ratio <= config.auto_decline_threshold:
        action_type = ActionType.OFFER_DECLINE
        base = decline_confidence(ratio, config.auto_decline_threshold)
        payload["reason"] = (
            f"Offer ({ratio:.0%}) is at or below auto-decline threshold ({config.auto_decline_threshold:.0%})"
        )
    elif floor is not None and offer < floor and not config.auto_counter_enabled:
        action_type = ActionType.OFFER_DECLINE
        base = BELOW_FLOOR_DECLINE_CONFIDENCE
        payload["reason"] = f"Offer ({offer:.2f}) is below floor price ({floor:.2f})"
    elif config.auto_counter_enabled and counter_round < config.max_counter_rounds:
        action_type = ActionType.OFFER_COUNTER
        base = counter_confidence(counter_round)
        counter_amount = compute_counter_amount(config.counter_strategy, offer, asking, floor)
        payload["counterAmount"] = counter_amount
        payload["counterStrategy"] = CounterStrategy(config.counter_strategy).value
        payload["nextCounterRound"] = counter_round + 1
        payload["reason"] = (
            f"Counter offer using {payload['counterStrategy']} strategy at ${counter_amount:.2f}"
        )
        conservative_counter = (
            config.counter_strategy in CONSERVATIVE_COUNTER_STRATEGIES and counter_round > 0
        )
    else:
        return None

    scored = scorer.score(base, context)
    if scored.factors:
        payload["confidenceFactors"] = [
            {"name": f.name, "multiplier": f.multiplier, "reason": f.reason} for f in scored.factors
        ]

    requires_approval = scorer.requires_approval(
        scored.score,
        item_price=asking,
        high_value_threshold=config.high_value_threshold,
        conservative_counter=conservative_counter,
    )

    return ProposedAction(
        user_id=event.user_id,
        item_id=event.item_id,
        channel=event.channel,
        action_type=action_type,
        confidence=scored.score,
        confidence_level=scored.level,
        requires_approval=requires_approval,
        reversible=is_reversible(action_type),
        payload=payload,
        before_state={"offerId": event.offer_id, "offerStatus": "pending", "askingPrice": asking},
    )
