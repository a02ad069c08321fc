"""Delist rule: once an item sells on one channel, pull it everywhere else."""

from __future__ import annotations

from typing import Callable, List, Sequence

from .confidence import ConfidenceScorer
from .errors import InputError
from .types import (
    ActionType,
    DelistOnSaleEvent,
    DelistRuleConfig,
    ListingSnapshot,
    ProposedAction,
    is_reversible,
)


DELIST_CONFIDENCE = 0.95


def evaluate_delist(
    config: DelistRuleConfig,
    event: DelistOnSaleEvent,
    other_listings: Sequence[ListingSnapshot],
    is_api_channel: Callable[[str], bool],
    scorer: ConfidenceScorer,
) -> List[ProposedAction]:
    """One proposal per other active listing.

    API channels get an executable DELIST. Assisted channels get a DELIST
    record flagged ``manualActionRequired`` that stays pending until the user
    confirms they removed the listing themselves.
    """
    if not event.item_id:
        raise InputError("itemId is required")
    if not event.sold_on_channel:
        raise InputError("soldOnChannel is required")
    if not event.order_id:
        raise InputError("orderId is required")

    if not config.auto_delist_on_sale:
        return []

    sold_on = event.sold_on_channel.lower()
    proposals: List[ProposedAction] = []
    for listing in other_listings:
        channel = listing.channel.lower()
        if channel == sold_on or listing.status != "active":
            continue

        payload = {
            "listingId": listing.listing_id,
            "externalId": listing.external_id,
            "channel": channel,
            "soldOnChannel": sold_on,
            "orderId": event.order_id,
        }
        api = is_api_channel(channel)
        if api:
            requires_approval = scorer.requires_approval(DELIST_CONFIDENCE)
        elif config.notify_for_assisted_channels:
            payload["manualActionRequired"] = True
            payload["reason"] = f"Item sold on {sold_on}; remove the {channel} listing manually"
            requires_approval = True
        else:
            continue

        proposals.append(
            ProposedAction(
                user_id=event.user_id,
                item_id=event.item_id,
                channel=channel,
                action_type=ActionType.DELIST,
                confidence=DELIST_CONFIDENCE,
                confidence_level=scorer.level(DELIST_CONFIDENCE),
                requires_approval=requires_approval,
                reversible=is_reversible(ActionType.DELIST),
                payload=payload,
                before_state=listing.to_dict(),
            )
        )
    return proposals
