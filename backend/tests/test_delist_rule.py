import pytest

from app.models_sqlalchemy.models import ChannelListing
from app.services.autopilot.confidence import ConfidenceScorer
from app.services.autopilot.delist import evaluate_delist
from app.services.autopilot.errors import InputError, ManualActionRequired
from app.services.autopilot.types import (
    ActionType,
    DelistOnSaleEvent,
    DelistRuleConfig,
    ListingSnapshot,
)


API_CHANNELS = {"ebay", "mercari"}


@pytest.fixture
def scorer():
    return ConfidenceScorer(high=0.85, medium=0.65, low=0.40)


def _listings():
    return [
        ListingSnapshot(listing_id="l-posh", channel="poshmark", price=50.0, status="active"),
        ListingSnapshot(listing_id="l-merc", channel="mercari", price=50.0, status="active", external_id="m123"),
    ]


def _event(**kwargs):
    data = dict(user_id="user-1", item_id="item-1", sold_on_channel="ebay", order_id="order-1")
    data.update(kwargs)
    return DelistOnSaleEvent(**data)


def test_sale_delists_api_channels_and_flags_assisted_ones(scorer):
    proposals = evaluate_delist(
        DelistRuleConfig(), _event(), _listings(), lambda c: c in API_CHANNELS, scorer
    )
    by_channel = {p.channel: p for p in proposals}

    mercari = by_channel["mercari"]
    assert mercari.action_type == ActionType.DELIST
    assert mercari.requires_approval is False
    assert mercari.manual_action_required is False
    assert mercari.payload["externalId"] == "m123"

    posh = by_channel["poshmark"]
    assert posh.manual_action_required is True
    assert posh.requires_approval is True
    assert posh.before_state["listingId"] == "l-posh"


def test_assisted_channels_skipped_without_notification(scorer):
    config = DelistRuleConfig(notify_for_assisted_channels=False)
    proposals = evaluate_delist(config, _event(), _listings(), lambda c: c in API_CHANNELS, scorer)
    assert [p.channel for p in proposals] == ["mercari"]


def test_disabled_rule_proposes_nothing(scorer):
    config = DelistRuleConfig(auto_delist_on_sale=False)
    assert evaluate_delist(config, _event(), _listings(), lambda c: True, scorer) == []


def test_listing_on_the_sold_channel_is_ignored(scorer):
    listings = _listings() + [ListingSnapshot(listing_id="l-ebay", channel="eBay", price=50.0, status="active")]
    proposals = evaluate_delist(DelistRuleConfig(), _event(), listings, lambda c: True, scorer)
    assert "ebay" not in {p.channel for p in proposals}


@pytest.mark.parametrize("field", ["item_id", "sold_on_channel", "order_id"])
def test_missing_fields_raise(scorer, field):
    with pytest.raises(InputError):
        evaluate_delist(DelistRuleConfig(), _event(**{field: ""}), [], lambda c: True, scorer)


@pytest.mark.asyncio
async def test_sale_on_ebay_end_to_end(db, service, item_factory, rule_factory, mercari_adapter):
    item = item_factory(price=50.0, channels=("ebay", "poshmark", "mercari"))
    rule_factory("user-1", "delist")

    actions = await service.submit(
        _event(item_id=item.id, idempotency_key="sale-1")
    )
    by_channel = {a.channel: a for a in actions}

    assert by_channel["mercari"].status == "executed"
    assert mercari_adapter.execute.await_count == 1
    assert by_channel["poshmark"].status == "pending"
    assert by_channel["poshmark"].payload["manualActionRequired"] is True

    listing = db.query(ChannelListing).filter(ChannelListing.channel == "mercari").one()
    assert listing.status == "ended"

    with pytest.raises(ManualActionRequired):
        service.approve(by_channel["poshmark"].id)
    with pytest.raises(ManualActionRequired):
        await service.execute(by_channel["poshmark"].id)

    dismissed = service.reject(by_channel["poshmark"].id, "removed it myself")
    assert dismissed.status == "rejected"
