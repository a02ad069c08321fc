"""Core value types for the autopilot engine.

Rule configs are pydantic models forming a tagged union on ``rule_type``;
trigger events and proposals are plain dataclasses that never touch the
database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


# ============================================================================
# ENUMS
# ============================================================================

class RuleType(str, Enum):
    OFFER = "offer"
    REPRICE = "reprice"
    STALE = "stale"
    DELIST = "delist"


class ActionType(str, Enum):
    OFFER_ACCEPT = "OFFER_ACCEPT"
    OFFER_DECLINE = "OFFER_DECLINE"
    OFFER_COUNTER = "OFFER_COUNTER"
    REPRICE = "REPRICE"
    DELIST = "DELIST"
    RELIST = "RELIST"
    ARCHIVE = "ARCHIVE"


class ActionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTED = "executed"
    FAILED = "failed"
    REJECTED = "rejected"
    UNDONE = "undone"


class ConfidenceLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    VERY_LOW = "VERY_LOW"


class CounterStrategy(str, Enum):
    FLOOR = "floor"
    MIDPOINT = "midpoint"
    ASKING_5 = "asking-5%"


class RepriceStrategy(str, Enum):
    TIME_DECAY = "time_decay"
    PERFORMANCE = "performance"
    COMPETITIVE = "competitive"


class StalenessLevel(str, Enum):
    FRESH = "fresh"
    WARNING = "warning"
    STALE = "stale"
    VERY_STALE = "very_stale"


# Offer decisions cannot be taken back once the buyer has been answered.
REVERSIBLE_ACTIONS = frozenset({
    ActionType.REPRICE,
    ActionType.DELIST,
    ActionType.RELIST,
    ActionType.ARCHIVE,
})

# Counter strategies that must go back to the user after the first round.
CONSERVATIVE_COUNTER_STRATEGIES = frozenset({CounterStrategy.FLOOR})


def is_reversible(action_type: ActionType) -> bool:
    return ActionType(action_type) in REVERSIBLE_ACTIONS


# ============================================================================
# RULE CONFIGS (tagged union on rule_type)
# ============================================================================

class _RuleConfigBase(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        use_enum_values=False,
    )

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class OfferRuleConfig(_RuleConfigBase):
    rule_type: Literal["offer"] = "offer"
    auto_accept_threshold: float = 0.90
    auto_decline_threshold: float = 0.50
    auto_counter_enabled: bool = False
    counter_strategy: CounterStrategy = CounterStrategy.MIDPOINT
    max_counter_rounds: int = 2
    high_value_threshold: float = 200.0


class RepriceRuleConfig(_RuleConfigBase):
    rule_type: Literal["reprice"] = "reprice"
    strategy: RepriceStrategy = RepriceStrategy.TIME_DECAY
    max_daily_drop_percent: float = 0.10
    max_weekly_drop_percent: float = 0.20
    respect_floor_price: bool = True
    high_value_threshold: float = 200.0
    # Fraction of the current price dropped per elapsed day.
    decay_per_day: float = 0.02
    days_before_first_drop: int = 0


class StaleRuleConfig(_RuleConfigBase):
    rule_type: Literal["stale"] = "stale"
    days_until_stale: int = 60
    notify_only: bool = True
    auto_relist: bool = False


class DelistRuleConfig(_RuleConfigBase):
    rule_type: Literal["delist"] = "delist"
    auto_delist_on_sale: bool = True
    notify_for_assisted_channels: bool = True


RuleConfig = Union[OfferRuleConfig, RepriceRuleConfig, StaleRuleConfig, DelistRuleConfig]


# ============================================================================
# TRIGGER EVENTS
# ============================================================================

@dataclass
class OfferReceivedEvent:
    user_id: str
    item_id: Optional[str]
    offer_amount: Any
    asking_price: Any
    floor_price: Optional[float] = None
    buyer_username: Optional[str] = None
    offer_id: Optional[str] = None
    channel: Optional[str] = None
    # 0 for the buyer's first offer; incremented by the caller per counter sent.
    counter_round: int = 0
    idempotency_key: Optional[str] = None

    rule_type = RuleType.OFFER


@dataclass
class RepriceCheckEvent:
    user_id: str
    item_id: Optional[str] = None
    # Opaque engagement signal per item id, used by the performance strategy.
    engagement: Dict[str, float] = field(default_factory=dict)
    idempotency_key: Optional[str] = None

    rule_type = RuleType.REPRICE


@dataclass
class StaleCheckEvent:
    user_id: str
    item_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    rule_type = RuleType.STALE


@dataclass
class DelistOnSaleEvent:
    user_id: str
    item_id: str
    sold_on_channel: str
    order_id: str
    idempotency_key: Optional[str] = None

    rule_type = RuleType.DELIST


TriggerEvent = Union[OfferReceivedEvent, RepriceCheckEvent, StaleCheckEvent, DelistOnSaleEvent]


# ============================================================================
# ITEM STATE (read model handed to the evaluators)
# ============================================================================

@dataclass
class ListingSnapshot:
    listing_id: str
    channel: str
    price: float
    status: str
    external_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listingId": self.listing_id,
            "channel": self.channel,
            "price": self.price,
            "status": self.status,
            "externalId": self.external_id,
        }


@dataclass
class ItemSnapshot:
    item_id: str
    user_id: str
    title: str
    price: float
    floor_price: Optional[float]
    status: str
    listed_at: Optional[datetime]
    engagement_score: Optional[float] = None
    listings: List[ListingSnapshot] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "title": self.title,
            "price": self.price,
            "floorPrice": self.floor_price,
            "status": self.status,
            "listedAt": self.listed_at.isoformat() if self.listed_at else None,
            "listings": [l.to_dict() for l in self.listings],
        }


@dataclass
class PriceChange:
    """An executed, not-undone reprice: the price before it and when it ran."""

    executed_at: datetime
    before_price: float
    after_price: float


# ============================================================================
# PROPOSALS
# ============================================================================

@dataclass
class ProposedAction:
    """A decision produced by an evaluator, before it is persisted."""

    user_id: str
    action_type: ActionType
    confidence: float
    confidence_level: ConfidenceLevel
    requires_approval: bool
    reversible: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    before_state: Optional[Dict[str, Any]] = None
    item_id: Optional[str] = None
    channel: Optional[str] = None
    rule_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    @property
    def manual_action_required(self) -> bool:
        return bool(self.payload.get("manualActionRequired"))


@dataclass
class StaleReport:
    """Staleness signal for one item, produced even when no action is proposed."""

    item_id: str
    days_listed: int
    level: StalenessLevel
    suggestion: str
