"""Stale rule: flag items that have sat too long and optionally relist them."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Tuple

from .clock import ensure_utc
from .confidence import ConfidenceScorer
from .errors import InputError
from .types import (
    ActionType,
    ItemSnapshot,
    ProposedAction,
    StaleReport,
    StaleRuleConfig,
    StalenessLevel,
    is_reversible,
)


RELIST_CONFIDENCE = 0.50
ARCHIVE_CONFIDENCE = 0.70

WARNING_RATIO = 0.5
STALE_RATIO = 1.0
VERY_STALE_RATIO = 1.5

SUGGESTIONS = {
    StalenessLevel.FRESH: "No action needed",
    StalenessLevel.WARNING: "Consider refreshing photos or the title to boost visibility",
    StalenessLevel.STALE: "Consider a price drop or relisting to reach new buyers",
    StalenessLevel.VERY_STALE: "Consider relisting, bundling, or archiving this item",
}


def days_listed(item: ItemSnapshot, now: datetime) -> int:
    if item.listed_at is None:
        raise InputError(f"Item {item.item_id} has no listing date")
    return max(0, int((ensure_utc(now) - ensure_utc(item.listed_at)) / timedelta(days=1)))


def staleness_level(days: int, days_until_stale: int) -> StalenessLevel:
    if days_until_stale <= 0:
        raise InputError("daysUntilStale must be at least 1")
    ratio = days / days_until_stale
    if ratio >= VERY_STALE_RATIO:
        return StalenessLevel.VERY_STALE
    if ratio >= STALE_RATIO:
        return StalenessLevel.STALE
    if ratio >= WARNING_RATIO:
        return StalenessLevel.WARNING
    return StalenessLevel.FRESH


def stale_report(config: StaleRuleConfig, item: ItemSnapshot, now: datetime) -> StaleReport:
    days = days_listed(item, now)
    level = staleness_level(days, config.days_until_stale)
    return StaleReport(item_id=item.item_id, days_listed=days, level=level, suggestion=SUGGESTIONS[level])


def evaluate_stale(
    config: StaleRuleConfig,
    item: ItemSnapshot,
    now: datetime,
    scorer: ConfidenceScorer,
) -> Tuple[Optional[ProposedAction], StaleReport]:
    """Return the proposal (if any) together with the item's stale report.

    ``notify_only`` wins over ``auto_relist``: the report is the only output.
    RELIST always goes to the user for approval.
    """
    report = stale_report(config, item, now)
    if report.level in (StalenessLevel.FRESH, StalenessLevel.WARNING):
        return None, report
    if config.notify_only:
        return None, report

    if config.auto_relist:
        action_type = ActionType.RELIST
        confidence = RELIST_CONFIDENCE
        requires_approval = True
    elif report.level == StalenessLevel.VERY_STALE:
        action_type = ActionType.ARCHIVE
        confidence = ARCHIVE_CONFIDENCE
        requires_approval = scorer.requires_approval(confidence)
    else:
        return None, report

    listings = [l.to_dict() for l in item.listings if l.status == "active"]
    proposal = ProposedAction(
        user_id=item.user_id,
        item_id=item.item_id,
        action_type=action_type,
        confidence=confidence,
        confidence_level=scorer.level(confidence),
        requires_approval=requires_approval,
        reversible=is_reversible(action_type),
        payload={
            "daysListed": report.days_listed,
            "daysUntilStale": config.days_until_stale,
            "staleness": report.level.value,
            "suggestion": report.suggestion,
            "listings": listings,
        },
        before_state={
            "status": item.status,
            "price": item.price,
            "listedAt": ensure_utc(item.listed_at).isoformat() if item.listed_at else None,
            "listings": listings,
        },
    )
    return proposal, report
