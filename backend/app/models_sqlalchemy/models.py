from sqlalchemy import Column, Integer, String, Float, DateTime, Date, Text, ForeignKey, Boolean, Index, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
import uuid

from . import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class InventoryStatus(str, enum.Enum):
    draft = "draft"
    active = "active"
    sold = "sold"
    shipped = "shipped"
    archived = "archived"


class ListingStatus(str, enum.Enum):
    draft = "draft"
    pending = "pending"
    active = "active"
    ended = "ended"
    sold = "sold"
    error = "error"


class InventoryItem(Base):
    """A physical item owned by a reseller, possibly listed on several channels."""

    __tablename__ = "inventory_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)

    title = Column(Text, nullable=False)
    sku = Column(String(64), nullable=True, index=True)

    asking_price = Column(Float, nullable=False)
    floor_price = Column(Float, nullable=True)

    # draft | active | sold | shipped | archived
    status = Column(String(32), nullable=False, default=InventoryStatus.draft.value, index=True)
    listed_at = Column(DateTime(timezone=True), nullable=True)

    # Opaque engagement signal (views/watchers/offers blend) maintained by the
    # sync side; the performance reprice strategy reads it as-is.
    engagement_score = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    listings = relationship("ChannelListing", back_populates="item", cascade="all, delete-orphan")


class ChannelListing(Base):
    """One listing of an inventory item on a marketplace channel."""

    __tablename__ = "channel_listings"

    id = Column(String(36), primary_key=True, default=_uuid)
    item_id = Column(String(36), ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False, index=True)

    # ebay | poshmark | mercari | depop
    channel = Column(String(32), nullable=False, index=True)
    external_id = Column(String(128), nullable=True)
    price = Column(Float, nullable=False)

    # draft | pending | active | ended | sold | error
    status = Column(String(32), nullable=False, default=ListingStatus.draft.value, index=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    item = relationship("InventoryItem", back_populates="listings")

    __table_args__ = (
        Index("idx_channel_listings_item_channel", "item_id", "channel"),
    )


class AutopilotRule(Base):
    """Per-user automation rule. Exactly one row per (user_id, rule_type).

    Rows are never deleted; turning a rule off flips ``enabled``.
    """

    __tablename__ = "autopilot_rules"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)

    # offer | reprice | stale | delist
    rule_type = Column(String(16), nullable=False)
    config = Column(JSON, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "rule_type", name="uq_autopilot_rules_user_type"),
    )


class AutopilotAction(Base):
    """A proposed or executed autopilot decision.

    Created from a Decision Engine proposal and afterwards mutated only via
    the action state machine. Rows are kept for audit.
    """

    __tablename__ = "autopilot_actions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    item_id = Column(String(36), nullable=True, index=True)
    rule_id = Column(String(36), nullable=True)

    # OFFER_ACCEPT | OFFER_DECLINE | OFFER_COUNTER | REPRICE | DELIST | RELIST | ARCHIVE
    action_type = Column(String(32), nullable=False, index=True)
    channel = Column(String(32), nullable=True)

    confidence = Column(Float, nullable=False)
    confidence_level = Column(String(16), nullable=False)

    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    payload = Column(JSON, nullable=True)

    # pending | approved | executed | failed | rejected | undone
    status = Column(String(16), nullable=False, default="pending", index=True)
    requires_approval = Column(Boolean, nullable=False, default=True)
    reversible = Column(Boolean, nullable=False, default=False)

    idempotency_key = Column(String(255), nullable=True, unique=True)

    executed_at = Column(DateTime(timezone=True), nullable=True)
    undo_deadline = Column(DateTime(timezone=True), nullable=True)
    undone_at = Column(DateTime(timezone=True), nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)

    # Set by the worker currently executing or undoing the action; a claim
    # older than AUTOPILOT_CLAIM_TTL_SECONDS may be taken over.
    claimed_by = Column(String(64), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    events = relationship(
        "AutopilotActionEvent",
        back_populates="action",
        cascade="all, delete-orphan",
        order_by="AutopilotActionEvent.id",
    )

    __table_args__ = (
        Index("idx_autopilot_actions_status_created_at", "status", "created_at"),
        Index("idx_autopilot_actions_user_created_at", "user_id", "created_at"),
    )


class AutopilotActionEvent(Base):
    """Status-change trail for an AutopilotAction (one row per transition)."""

    __tablename__ = "autopilot_action_events"

    # Integer key keeps insertion order stable when timestamps tie.
    id = Column(Integer, primary_key=True, autoincrement=True)
    action_id = Column(String(36), ForeignKey("autopilot_actions.id", ondelete="CASCADE"), nullable=False, index=True)

    from_status = Column(String(16), nullable=True)
    to_status = Column(String(16), nullable=False)
    note = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)

    action = relationship("AutopilotAction", back_populates="events")


class AutopilotRateLimit(Base):
    """Daily execution counter per (user, action type, UTC day).

    Rows are created lazily on the first increment of a day; rows for past
    days are simply never read again.
    """

    __tablename__ = "autopilot_rate_limits"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False)
    action_type = Column(String(32), nullable=False)
    day = Column(Date, nullable=False)
    count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "action_type", "day", name="uq_autopilot_rate_limits_key"),
    )


class BackgroundWorker(Base):
    """Heartbeat + status row for long-running background loops."""

    __tablename__ = "background_workers"

    id = Column(String(36), primary_key=True, default=_uuid)

    worker_name = Column(String(128), nullable=False, unique=True, index=True)
    interval_seconds = Column(Integer, nullable=True)

    last_started_at = Column(DateTime(timezone=True), nullable=True)
    last_finished_at = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(String(32), nullable=True)
    last_error_message = Column(Text, nullable=True)

    runs_ok_in_row = Column(Integer, nullable=False, default=0)
    runs_error_in_row = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
