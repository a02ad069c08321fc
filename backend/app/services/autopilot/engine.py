"""Decision engine: routes a trigger event to the matching rule evaluator.

Everything here is pure. The caller loads rule config and item state and
passes them in; the engine returns proposals and never writes anything.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from app.utils.logger import logger

from .confidence import ConfidenceContext, ConfidenceScorer
from .delist import evaluate_delist
from .errors import InputError, NotImplementedStrategy
from .offers import evaluate_offer
from .repricing import evaluate_reprice
from .stale import evaluate_stale
from .types import (
    DelistOnSaleEvent,
    DelistRuleConfig,
    ItemSnapshot,
    ListingSnapshot,
    OfferReceivedEvent,
    OfferRuleConfig,
    PriceChange,
    ProposedAction,
    RepriceCheckEvent,
    RepriceRuleConfig,
    RepriceStrategy,
    RuleConfig,
    StaleCheckEvent,
    StaleReport,
    StaleRuleConfig,
    TriggerEvent,
)


@dataclass
class EvaluationResult:
    proposals: List[ProposedAction] = field(default_factory=list)
    reports: List[StaleReport] = field(default_factory=list)
    # (item_id, message) for items whose evaluation failed.
    errors: List[Tuple[Optional[str], str]] = field(default_factory=list)


def idempotency_key_for(event_key: Optional[str], proposal: ProposedAction) -> Optional[str]:
    """Derive a per-proposal key from the caller's per-event key."""
    if not event_key:
        return None
    parts = [event_key, proposal.item_id or "-", proposal.action_type.value]
    if proposal.channel:
        parts.append(proposal.channel)
    return ":".join(parts)


def offer_key_for(event: OfferReceivedEvent) -> Optional[str]:
    """Key for an offer redelivered without a caller key: one answer per offer and round.

    The action type is left out so a re-evaluation under a changed rule
    cannot answer the same offer a second time.
    """
    if not event.offer_id:
        return None
    channel = (event.channel or "-").lower()
    return f"offer:{channel}:{event.offer_id}:r{event.counter_round}"


class DecisionEngine:
    def __init__(self, scorer: ConfidenceScorer, is_api_channel: Callable[[str], bool]):
        self.scorer = scorer
        self.is_api_channel = is_api_channel

    def evaluate(
        self,
        event: TriggerEvent,
        config: RuleConfig,
        now: datetime,
        items: Sequence[ItemSnapshot] = (),
        history: Optional[Dict[str, List[PriceChange]]] = None,
        other_listings: Sequence[ListingSnapshot] = (),
        context: Optional[ConfidenceContext] = None,
        rule_id: Optional[str] = None,
        contexts: Optional[Dict[str, ConfidenceContext]] = None,
    ) -> EvaluationResult:
        """Evaluate ``event`` against ``config``.

        Offer and delist events raise :class:`InputError` on malformed input.
        Reprice and stale checks cover many items, so a bad item is recorded
        in ``errors`` and the rest are still evaluated. An unsupported
        reprice strategy raises :class:`NotImplementedStrategy` up front.
        ``contexts`` holds per-item confidence context for reprice checks and
        takes precedence over ``context`` for the items it covers.
        """
        result = EvaluationResult()
        contexts = contexts or {}

        if isinstance(event, OfferReceivedEvent):
            self._expect(config, OfferRuleConfig, event)
            proposal = evaluate_offer(config, event, self.scorer, context)
            if proposal is not None:
                if not self.is_api_channel(proposal.channel):
                    # Assisted channel: the user answers the buyer by hand.
                    proposal.payload["manualActionRequired"] = True
                    proposal.requires_approval = True
                result.proposals.append(proposal)

        elif isinstance(event, DelistOnSaleEvent):
            self._expect(config, DelistRuleConfig, event)
            result.proposals.extend(
                evaluate_delist(config, event, other_listings, self.is_api_channel, self.scorer)
            )

        elif isinstance(event, RepriceCheckEvent):
            self._expect(config, RepriceRuleConfig, event)
            if RepriceStrategy(config.strategy) == RepriceStrategy.COMPETITIVE:
                raise NotImplementedStrategy(RepriceStrategy.COMPETITIVE.value)
            history = history or {}
            for item in items:
                try:
                    proposal = evaluate_reprice(
                        config,
                        item,
                        now,
                        self.scorer,
                        history=history.get(item.item_id, []),
                        engagement=event.engagement.get(item.item_id),
                        context=contexts.get(item.item_id, context),
                    )
                except InputError as exc:
                    logger.warning("[autopilot] reprice skipped item_id=%s: %s", item.item_id, exc)
                    result.errors.append((item.item_id, str(exc)))
                    continue
                if proposal is not None:
                    result.proposals.append(proposal)

        elif isinstance(event, StaleCheckEvent):
            self._expect(config, StaleRuleConfig, event)
            for item in items:
                try:
                    proposal, report = evaluate_stale(config, item, now, self.scorer)
                except InputError as exc:
                    logger.warning("[autopilot] stale check skipped item_id=%s: %s", item.item_id, exc)
                    result.errors.append((item.item_id, str(exc)))
                    continue
                result.reports.append(report)
                if proposal is not None:
                    result.proposals.append(proposal)

        else:
            raise InputError(f"Unsupported event type {type(event).__name__}")

        event_key = getattr(event, "idempotency_key", None)
        for proposal in result.proposals:
            proposal.rule_id = rule_id
            if not event_key and isinstance(event, OfferReceivedEvent):
                proposal.idempotency_key = offer_key_for(event)
            else:
                proposal.idempotency_key = idempotency_key_for(event_key, proposal)
        return result

    @staticmethod
    def _expect(config: RuleConfig, expected: type, event: TriggerEvent) -> None:
        if not isinstance(config, expected):
            raise InputError(
                f"{type(event).__name__} needs a {expected.__name__}, got {type(config).__name__}"
            )
