"""Database access for rules, actions and inventory state.

Stores wrap a caller-owned Session. They flush but only commit where noted,
so the service decides transaction boundaries.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import (
    AutopilotAction,
    AutopilotActionEvent,
    AutopilotRule,
    ChannelListing,
    InventoryItem,
    InventoryStatus,
    ListingStatus,
)
from app.utils.logger import logger

from .errors import ActionNotFound
from .rules import coerce_rule_type, default_rule_config, parse_rule_config
from .types import (
    ActionStatus,
    ActionType,
    ItemSnapshot,
    ListingSnapshot,
    PriceChange,
    ProposedAction,
    RuleConfig,
    RuleType,
)


OPEN_STATUSES = (ActionStatus.PENDING.value, ActionStatus.APPROVED.value)
OFFER_ACTIONS = (ActionType.OFFER_ACCEPT, ActionType.OFFER_DECLINE, ActionType.OFFER_COUNTER)


class RuleStore:
    def __init__(self, db: Session):
        self.db = db

    def get_rule(self, user_id: str, rule_type: RuleType) -> Optional[AutopilotRule]:
        rt = coerce_rule_type(rule_type)
        return (
            self.db.query(AutopilotRule)
            .filter(AutopilotRule.user_id == user_id, AutopilotRule.rule_type == rt.value)
            .one_or_none()
        )

    def get_enabled_rule(self, user_id: str, rule_type: RuleType) -> Optional[Tuple[AutopilotRule, RuleConfig]]:
        """The user's rule and its parsed config, or None if missing/disabled."""
        rule = self.get_rule(user_id, rule_type)
        if rule is None or not rule.enabled:
            return None
        return rule, parse_rule_config(rule.rule_type, rule.config)

    def get_enabled_config(self, user_id: str, rule_type: RuleType) -> Optional[RuleConfig]:
        found = self.get_enabled_rule(user_id, rule_type)
        return found[1] if found else None

    def upsert_rule(
        self,
        user_id: str,
        rule_type: RuleType,
        config: Optional[Dict[str, Any]] = None,
        enabled: Optional[bool] = None,
    ) -> AutopilotRule:
        """Create or update the single (user, rule_type) rule. Commits."""
        rt = coerce_rule_type(rule_type)
        rule = self.get_rule(user_id, rt)

        if config is not None:
            parsed = parse_rule_config(rt, config)
        elif rule is None:
            parsed = default_rule_config(rt)
        else:
            parsed = None

        if rule is None:
            rule = AutopilotRule(
                id=str(uuid.uuid4()),
                user_id=user_id,
                rule_type=rt.value,
                config=parsed.to_json(),
                enabled=True if enabled is None else enabled,
            )
            self.db.add(rule)
            logger.info("[autopilot] rule created user_id=%s rule_type=%s", user_id, rt.value)
        else:
            if parsed is not None:
                rule.config = parsed.to_json()
            if enabled is not None:
                rule.enabled = enabled
            logger.info("[autopilot] rule updated user_id=%s rule_type=%s", user_id, rt.value)

        self.db.commit()
        self.db.refresh(rule)
        return rule

    def set_enabled(self, user_id: str, rule_type: RuleType, enabled: bool) -> AutopilotRule:
        return self.upsert_rule(user_id, rule_type, config=None, enabled=enabled)


class ActionStore:
    def __init__(self, db: Session):
        self.db = db

    def add_proposals(
        self,
        proposals: List[ProposedAction],
        now: datetime,
    ) -> List[Tuple[AutopilotAction, bool]]:
        """Persist proposals as ``pending`` actions.

        Returns ``(action, created)`` pairs. A proposal whose idempotency key
        was already stored, or which repeats an open action for the same
        item/type/channel, maps to the existing row with ``created=False``.
        """
        out: List[Tuple[AutopilotAction, bool]] = []
        for proposal in proposals:
            existing = None
            if proposal.idempotency_key:
                existing = self.find_by_idempotency_key(proposal.idempotency_key)
            if existing is None:
                existing = self.find_open_duplicate(proposal)
            if existing is not None:
                logger.info(
                    "[autopilot] duplicate proposal ignored action_id=%s type=%s item_id=%s",
                    existing.id, existing.action_type, existing.item_id,
                )
                out.append((existing, False))
                continue

            action = AutopilotAction(
                id=str(uuid.uuid4()),
                user_id=proposal.user_id,
                item_id=proposal.item_id,
                rule_id=proposal.rule_id,
                action_type=ActionType(proposal.action_type).value,
                channel=proposal.channel,
                confidence=proposal.confidence,
                confidence_level=proposal.confidence_level.value,
                before_state=proposal.before_state,
                payload=proposal.payload,
                status=ActionStatus.PENDING.value,
                requires_approval=proposal.requires_approval,
                reversible=proposal.reversible,
                idempotency_key=proposal.idempotency_key,
                retry_count=0,
                created_at=now,
                updated_at=now,
            )
            self.db.add(action)
            self.db.add(
                AutopilotActionEvent(
                    action_id=action.id,
                    from_status=None,
                    to_status=ActionStatus.PENDING.value,
                    note="proposed",
                    created_at=now,
                )
            )
            self.db.flush()
            out.append((action, True))
        return out

    def get(self, action_id: str) -> Optional[AutopilotAction]:
        return self.db.query(AutopilotAction).filter(AutopilotAction.id == action_id).one_or_none()

    def require(self, action_id: str) -> AutopilotAction:
        action = self.get(action_id)
        if action is None:
            raise ActionNotFound(action_id)
        return action

    def claim(
        self,
        action_id: str,
        token: str,
        now: datetime,
        stale_before: datetime,
        statuses: Sequence[str],
    ) -> bool:
        """Mark the action as being worked on by ``token``. Commits.

        A single conditional UPDATE, so of several workers racing for the same
        action exactly one wins. Fails when the action is not in ``statuses``
        or another worker holds a claim taken after ``stale_before``.
        """
        result = self.db.execute(
            update(AutopilotAction)
            .where(
                AutopilotAction.id == action_id,
                AutopilotAction.status.in_(list(statuses)),
                or_(
                    AutopilotAction.claimed_by.is_(None),
                    AutopilotAction.claimed_at < stale_before,
                ),
            )
            .values(claimed_by=token, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def release(self, action: AutopilotAction) -> None:
        """Drop the worker claim on ``action``. Commits."""
        action.claimed_by = None
        action.claimed_at = None
        self.db.commit()

    def find_by_idempotency_key(self, key: str) -> Optional[AutopilotAction]:
        return (
            self.db.query(AutopilotAction)
            .filter(AutopilotAction.idempotency_key == key)
            .one_or_none()
        )

    def find_open_duplicate(self, proposal: ProposedAction) -> Optional[AutopilotAction]:
        # Offers are answered once per offer; only the idempotency key dedupes them.
        if not proposal.item_id or ActionType(proposal.action_type) in OFFER_ACTIONS:
            return None
        q = self.db.query(AutopilotAction).filter(
            AutopilotAction.user_id == proposal.user_id,
            AutopilotAction.item_id == proposal.item_id,
            AutopilotAction.action_type == ActionType(proposal.action_type).value,
            AutopilotAction.status.in_(OPEN_STATUSES),
        )
        if proposal.channel:
            q = q.filter(AutopilotAction.channel == proposal.channel)
        return q.first()

    def list_recent(self, user_id: str, limit: int = 50) -> List[AutopilotAction]:
        return (
            self.db.query(AutopilotAction)
            .filter(AutopilotAction.user_id == user_id)
            .order_by(AutopilotAction.created_at.desc(), AutopilotAction.id)
            .limit(limit)
            .all()
        )

    def count_pending(self, user_id: str) -> int:
        return (
            self.db.query(AutopilotAction)
            .filter(
                AutopilotAction.user_id == user_id,
                AutopilotAction.status == ActionStatus.PENDING.value,
            )
            .count()
        )

    def recent_reprices(self, item_id: str, since: datetime) -> List[PriceChange]:
        rows = (
            self.db.query(AutopilotAction)
            .filter(
                AutopilotAction.item_id == item_id,
                AutopilotAction.action_type == ActionType.REPRICE.value,
                AutopilotAction.status == ActionStatus.EXECUTED.value,
                AutopilotAction.executed_at >= since,
            )
            .order_by(AutopilotAction.executed_at)
            .all()
        )
        changes = []
        for row in rows:
            payload = row.payload or {}
            before = (row.before_state or {}).get("price", payload.get("oldPrice"))
            if before is None:
                continue
            changes.append(
                PriceChange(
                    executed_at=row.executed_at,
                    before_price=float(before),
                    after_price=float(payload.get("newPrice", before)),
                )
            )
        return changes

    def due_for_attempt(self, now: datetime, user_id: Optional[str] = None) -> List[AutopilotAction]:
        """Actions whose deferred attempt time has come.

        Covers retries waiting in ``pending`` after a retryable failure and
        ``approved`` actions deferred by the rate limiter.
        """
        q = self.db.query(AutopilotAction).filter(
            AutopilotAction.status.in_(OPEN_STATUSES),
            AutopilotAction.next_attempt_at.isnot(None),
            AutopilotAction.next_attempt_at <= now,
        )
        if user_id is not None:
            q = q.filter(AutopilotAction.user_id == user_id)
        return q.order_by(AutopilotAction.next_attempt_at).all()

    def history(self, action_id: str) -> List[AutopilotActionEvent]:
        self.require(action_id)
        return (
            self.db.query(AutopilotActionEvent)
            .filter(AutopilotActionEvent.action_id == action_id)
            .order_by(AutopilotActionEvent.id)
            .all()
        )

    def successful_count(self, user_id: str, action_types: List[str]) -> int:
        return (
            self.db.query(AutopilotAction)
            .filter(
                AutopilotAction.user_id == user_id,
                AutopilotAction.action_type.in_(action_types),
                AutopilotAction.status == ActionStatus.EXECUTED.value,
            )
            .count()
        )


def _listing_snapshot(listing: ChannelListing) -> ListingSnapshot:
    return ListingSnapshot(
        listing_id=listing.id,
        channel=listing.channel,
        price=listing.price,
        status=listing.status,
        external_id=listing.external_id,
    )


def _item_snapshot(item: InventoryItem) -> ItemSnapshot:
    return ItemSnapshot(
        item_id=item.id,
        user_id=item.user_id,
        title=item.title,
        price=item.asking_price,
        floor_price=item.floor_price,
        status=item.status,
        listed_at=item.listed_at,
        engagement_score=item.engagement_score,
        listings=[_listing_snapshot(l) for l in item.listings],
    )


class ItemStore:
    def __init__(self, db: Session):
        self.db = db

    def _item(self, item_id: str) -> Optional[InventoryItem]:
        return self.db.query(InventoryItem).filter(InventoryItem.id == item_id).one_or_none()

    def eligible_items(self, user_id: str, item_id: Optional[str] = None) -> List[ItemSnapshot]:
        """Active items of ``user_id`` that have at least one active listing."""
        q = (
            self.db.query(InventoryItem)
            .filter(
                InventoryItem.user_id == user_id,
                InventoryItem.status == InventoryStatus.active.value,
                InventoryItem.listings.any(ChannelListing.status == ListingStatus.active.value),
            )
        )
        if item_id is not None:
            q = q.filter(InventoryItem.id == item_id)
        return [_item_snapshot(i) for i in q.order_by(InventoryItem.id).all()]

    def active_listings(self, item_id: str, exclude_channel: Optional[str] = None) -> List[ListingSnapshot]:
        q = self.db.query(ChannelListing).filter(
            ChannelListing.item_id == item_id,
            ChannelListing.status == ListingStatus.active.value,
        )
        if exclude_channel:
            q = q.filter(ChannelListing.channel != exclude_channel.lower())
        return [_listing_snapshot(l) for l in q.order_by(ChannelListing.channel).all()]

    def users_with_enabled_rule(self, rule_type: RuleType) -> List[str]:
        rt = coerce_rule_type(rule_type)
        rows = (
            self.db.query(AutopilotRule.user_id)
            .filter(AutopilotRule.rule_type == rt.value, AutopilotRule.enabled == True)  # noqa: E712
            .order_by(AutopilotRule.user_id)
            .all()
        )
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Local mirror of executed effects
    # ------------------------------------------------------------------

    def apply_execution(self, action: AutopilotAction, now: datetime) -> None:
        """Reflect a confirmed marketplace effect in the local inventory."""
        if not action.item_id:
            return
        item = self._item(action.item_id)
        if item is None:
            return
        payload = action.payload or {}
        action_type = ActionType(action.action_type)

        if action_type == ActionType.REPRICE:
            new_price = float(payload["newPrice"])
            item.asking_price = new_price
            for listing in item.listings:
                if listing.status == ListingStatus.active.value:
                    listing.price = new_price
        elif action_type == ActionType.DELIST:
            for listing in item.listings:
                if listing.id == payload.get("listingId"):
                    listing.status = ListingStatus.ended.value
                    listing.ended_at = now
        elif action_type == ActionType.RELIST:
            item.listed_at = now
            for listing in item.listings:
                if listing.status == ListingStatus.active.value:
                    listing.published_at = now
        elif action_type == ActionType.ARCHIVE:
            item.status = InventoryStatus.archived.value
            for listing in item.listings:
                if listing.status == ListingStatus.active.value:
                    listing.status = ListingStatus.ended.value
                    listing.ended_at = now
        elif action_type == ActionType.OFFER_ACCEPT:
            item.status = InventoryStatus.sold.value

    def apply_reversal(self, action: AutopilotAction) -> None:
        """Restore the local inventory from the action's before-state."""
        if not action.item_id:
            return
        item = self._item(action.item_id)
        if item is None:
            return
        before = action.before_state or {}
        action_type = ActionType(action.action_type)
        by_id = {l.id: l for l in item.listings}

        if action_type == ActionType.REPRICE:
            item.asking_price = float(before["price"])
            for snap in before.get("listings", []):
                listing = by_id.get(snap.get("listingId"))
                if listing is not None:
                    listing.price = snap.get("price", listing.price)
        elif action_type == ActionType.DELIST:
            listing = by_id.get(before.get("listingId"))
            if listing is not None:
                listing.status = before.get("status", ListingStatus.active.value)
                listing.ended_at = None
        elif action_type in (ActionType.RELIST, ActionType.ARCHIVE):
            if "status" in before:
                item.status = before["status"]
            listed_at = before.get("listedAt")
            if listed_at:
                item.listed_at = datetime.fromisoformat(listed_at)
            for snap in before.get("listings", []):
                listing = by_id.get(snap.get("listingId"))
                if listing is not None:
                    listing.status = snap.get("status", listing.status)
                    if listing.status == ListingStatus.active.value:
                        listing.ended_at = None
