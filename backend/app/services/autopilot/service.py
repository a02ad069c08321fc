"""AutopilotService: the engine's public surface.

Ties the pure decision engine to persistence, the rate limiter, the state
machine, the undo manager and the channel adapters. One instance wraps one
Session; background jobs create one per unit of work.

Executing and undoing an action first claims its row with a conditional
UPDATE, so only one worker (in this process or any other) talks to the
marketplace for a given action at a time. ``ItemLocks`` additionally
serializes work on the same item inside one process.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import AutopilotAction, AutopilotActionEvent
from app.utils.logger import autopilot_logger, logger

from .adapters import ChannelRegistry, EffectResult
from .clock import Clock, system_clock
from .confidence import ConfidenceContext, ConfidenceScorer, default_scorer
from .engine import DecisionEngine, EvaluationResult
from .errors import (
    AutopilotError,
    FatalAdapterError,
    InvalidTransition,
    ManualActionRequired,
    RetryableAdapterError,
)
from .locks import ItemLocks, item_locks
from .rate_limiter import RateLimiter
from .stale import days_listed
from .state_machine import ActionStateMachine
from .store import OPEN_STATUSES, ActionStore, ItemStore, RuleStore
from .types import (
    ActionStatus,
    ActionType,
    DelistOnSaleEvent,
    ItemSnapshot,
    ProposedAction,
    RepriceCheckEvent,
    RuleType,
    StaleCheckEvent,
    TriggerEvent,
)
from .undo import UndoManager


WEEK = timedelta(days=7)
ITEM_LEVEL_ACTIONS = (ActionType.REPRICE, ActionType.RELIST, ActionType.ARCHIVE)

RULE_ACTION_TYPES = {
    RuleType.OFFER: (ActionType.OFFER_ACCEPT, ActionType.OFFER_DECLINE, ActionType.OFFER_COUNTER),
    RuleType.REPRICE: (ActionType.REPRICE,),
    RuleType.STALE: (ActionType.RELIST, ActionType.ARCHIVE),
    RuleType.DELIST: (ActionType.DELIST,),
}


class AutopilotService:
    def __init__(
        self,
        db: Session,
        registry: Optional[ChannelRegistry] = None,
        clock: Optional[Clock] = None,
        scorer: Optional[ConfidenceScorer] = None,
        limiter: Optional[RateLimiter] = None,
        locks: Optional[ItemLocks] = None,
        machine: Optional[ActionStateMachine] = None,
        undo_manager: Optional[UndoManager] = None,
        adapter_timeout: Optional[float] = None,
        claim_ttl_seconds: Optional[int] = None,
        context_factors: Optional[bool] = None,
    ):
        self.db = db
        self.clock = clock or system_clock
        self.registry = registry or ChannelRegistry.from_settings()
        self.scorer = scorer or default_scorer
        self.limiter = limiter or RateLimiter(self.clock)
        self.locks = locks or item_locks
        self.machine = machine or ActionStateMachine(self.clock)
        self.undo_manager = undo_manager or UndoManager(self.clock)
        self.adapter_timeout = (
            settings.AUTOPILOT_ADAPTER_TIMEOUT_SECONDS if adapter_timeout is None else adapter_timeout
        )
        self.claim_ttl = timedelta(
            seconds=settings.AUTOPILOT_CLAIM_TTL_SECONDS if claim_ttl_seconds is None else claim_ttl_seconds
        )
        self.context_factors = (
            settings.AUTOPILOT_CONTEXT_FACTORS_ENABLED if context_factors is None else context_factors
        )

        self.rules = RuleStore(db)
        self.actions = ActionStore(db)
        self.items = ItemStore(db)
        self.engine = DecisionEngine(self.scorer, self.registry.is_api_channel)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def build_context(self, rule_type: RuleType, item: ItemSnapshot, now: datetime) -> ConfidenceContext:
        """Confidence context for ``item`` from the user's stored history."""
        count = self.actions.successful_count(
            item.user_id, [a.value for a in RULE_ACTION_TYPES[RuleType(rule_type)]]
        )
        return ConfidenceContext(
            item_value=item.price,
            is_first_execution=count == 0,
            rule_execution_count=count,
            days_listed=days_listed(item, now) if item.listed_at else None,
        )

    def evaluate_detailed(
        self,
        event: TriggerEvent,
        context: Optional[ConfidenceContext] = None,
    ) -> EvaluationResult:
        """Run the matching rule against current state without writing anything.

        A missing or disabled rule yields an empty result. Without a caller
        ``context``, reprice checks get one per item from :meth:`build_context`.
        """
        found = self.rules.get_enabled_rule(event.user_id, event.rule_type)
        if found is None:
            logger.info(
                "[autopilot] no enabled %s rule for user_id=%s", event.rule_type.value, event.user_id
            )
            return EvaluationResult()
        rule, config = found
        now = self.clock.now()

        kwargs: Dict[str, Any] = {"context": context, "rule_id": rule.id}
        if isinstance(event, (RepriceCheckEvent, StaleCheckEvent)):
            items = self.items.eligible_items(event.user_id, event.item_id)
            kwargs["items"] = items
            if isinstance(event, RepriceCheckEvent):
                kwargs["history"] = {
                    item.item_id: self.actions.recent_reprices(item.item_id, now - WEEK) for item in items
                }
                if context is None and self.context_factors:
                    kwargs["contexts"] = {
                        item.item_id: self.build_context(RuleType.REPRICE, item, now) for item in items
                    }
        elif isinstance(event, DelistOnSaleEvent):
            kwargs["other_listings"] = self.items.active_listings(
                event.item_id, exclude_channel=event.sold_on_channel
            )

        return self.engine.evaluate(event, config, now, **kwargs)

    def evaluate(self, event: TriggerEvent, context: Optional[ConfidenceContext] = None) -> List[ProposedAction]:
        return self.evaluate_detailed(event, context).proposals

    async def submit(
        self,
        event: TriggerEvent,
        context: Optional[ConfidenceContext] = None,
        auto_execute: bool = True,
        result: Optional[EvaluationResult] = None,
    ) -> List[AutopilotAction]:
        """Evaluate ``event`` and persist the proposals.

        Proposals that need no approval are approved straight away and, with
        ``auto_execute``, executed. Redelivered events map onto the actions
        they created the first time. ``result`` lets a caller that already
        evaluated the event skip a second evaluation.
        """
        if result is None:
            result = self.evaluate_detailed(event, context)
        now = self.clock.now()
        pairs = self.actions.add_proposals(result.proposals, now)

        auto_approved: List[AutopilotAction] = []
        for action, created in pairs:
            if not created:
                continue
            autopilot_logger.log_event(
                event_type="proposed",
                description=f"{action.action_type} proposed (confidence {action.confidence:.2f})",
                user_id=action.user_id,
                action_id=action.id,
                payload=action.payload,
            )
            if not action.requires_approval and not _is_manual(action):
                self.machine.approve(self.db, action, "auto-approved")
                auto_approved.append(action)
        self.db.commit()

        if auto_execute:
            for action in auto_approved:
                try:
                    await self.execute(action.id)
                except AutopilotError as exc:
                    logger.warning(
                        "[autopilot] auto-execute failed action_id=%s: %s", action.id, exc
                    )
        return [action for action, _ in pairs]

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    def approve(self, action_id: str, note: Optional[str] = None) -> AutopilotAction:
        action = self.actions.require(action_id)
        if _is_manual(action):
            raise ManualActionRequired(action.id, action.channel)
        self.machine.approve(self.db, action, note or "approved by user")
        self.db.commit()
        return action

    def reject(self, action_id: str, note: Optional[str] = None) -> AutopilotAction:
        action = self.actions.require(action_id)
        self.machine.reject(self.db, action, note or "rejected by user")
        action.next_attempt_at = None
        self.db.commit()
        return action

    async def execute(self, action_id: str) -> AutopilotAction:
        """Run an approved action through its channel adapter.

        Returns the action in its new state. A rate-limit denial leaves it
        ``approved`` with ``next_attempt_at`` at the next UTC midnight; adapter
        failures are recorded on the action rather than raised. When another
        worker holds the action, it is returned untouched.
        """
        action = self.actions.require(action_id)
        async with self.locks.hold(action.user_id, action.item_id):
            self.db.refresh(action)

            if action.status == ActionStatus.EXECUTED.value:
                return action
            if _is_manual(action):
                raise ManualActionRequired(action.id, action.channel)

            if not self._claim(action, OPEN_STATUSES):
                if action.status in OPEN_STATUSES or action.status == ActionStatus.EXECUTED.value:
                    return action
                raise InvalidTransition(action.id, action.status, ActionStatus.EXECUTED.value)
            try:
                return await self._execute_claimed(action)
            finally:
                self.actions.release(action)

    async def _execute_claimed(self, action: AutopilotAction) -> AutopilotAction:
        if action.status == ActionStatus.PENDING.value and (action.retry_count or 0) > 0:
            # Already approved once; the retry does not need a second approval.
            self.machine.approve(self.db, action, "retry")
        if action.status != ActionStatus.APPROVED.value:
            raise InvalidTransition(action.id, action.status, ActionStatus.EXECUTED.value)

        action.next_attempt_at = None
        self.db.commit()

        if not self.limiter.try_acquire(self.db, action.user_id, action.action_type):
            action.next_attempt_at = self.clock.next_midnight()
            self.db.commit()
            autopilot_logger.log_event(
                event_type="rate_limited",
                description=f"{action.action_type} deferred to {action.next_attempt_at.isoformat()}",
                user_id=action.user_id,
                action_id=action.id,
                status="deferred",
            )
            return action

        try:
            effect = await self._dispatch(action)
        except RetryableAdapterError as exc:
            self._record_failure(action, str(exc), True)
            return action
        except FatalAdapterError as exc:
            self._record_failure(action, str(exc), False)
            return action

        if effect.manual_action_required:
            self._record_failure(
                action, effect.message or "Channel requires manual action", False
            )
            return action

        now = self.clock.now()
        after_state = _default_after_state(action, now)
        after_state.update(effect.after_state or {})
        self.machine.mark_executed(
            self.db,
            action,
            after_state,
            self.undo_manager.window_for(action.action_type),
        )
        self.items.apply_execution(action, now)
        self.db.commit()
        autopilot_logger.log_event(
            event_type="executed",
            description=f"{action.action_type} executed",
            user_id=action.user_id,
            action_id=action.id,
            status="success",
        )
        return action

    async def undo(self, action_id: str) -> AutopilotAction:
        """Reverse an executed action. Raises ExpiredWindow past its deadline."""
        action = self.actions.require(action_id)
        async with self.locks.hold(action.user_id, action.item_id):
            self.db.refresh(action)
            self.undo_manager.check_undoable(action)

            if not self._claim(action, (ActionStatus.EXECUTED.value,)):
                return action
            try:
                now = self.undo_manager.check_undoable(action)
                effect = await self._reverse(action)
                if effect.manual_action_required:
                    raise ManualActionRequired(action.id, action.channel)

                self.machine.mark_undone(self.db, action, now)
                self.items.apply_reversal(action)
                self.db.commit()
                logger.info("[undo] action_id=%s type=%s undone", action.id, action.action_type)
                return action
            finally:
                self.actions.release(action)

    async def run_due_retries(self, user_id: Optional[str] = None) -> List[AutopilotAction]:
        """Re-attempt actions whose backoff or rate-limit deferral has elapsed."""
        due = self.actions.due_for_attempt(self.clock.now(), user_id)
        done: List[AutopilotAction] = []
        for action in due:
            try:
                done.append(await self.execute(action.id))
            except AutopilotError as exc:
                logger.warning("[autopilot] retry skipped action_id=%s: %s", action.id, exc)
        return done

    # ------------------------------------------------------------------
    # Read-only projections
    # ------------------------------------------------------------------

    def get_pending_count(self, user_id: str) -> int:
        return self.actions.count_pending(user_id)

    def get_recent_actions(self, user_id: str, limit: int = 20) -> List[AutopilotAction]:
        return self.actions.list_recent(user_id, limit)

    def get_action_history(self, action_id: str) -> List[AutopilotActionEvent]:
        return self.actions.history(action_id)

    # ------------------------------------------------------------------
    # Adapter plumbing
    # ------------------------------------------------------------------

    def _claim(self, action: AutopilotAction, statuses: Sequence[str]) -> bool:
        now = self.clock.now()
        claimed = self.actions.claim(
            action.id, uuid.uuid4().hex, now, now - self.claim_ttl, statuses
        )
        self.db.refresh(action)
        if not claimed:
            logger.info(
                "[autopilot] action_id=%s not claimed (status=%s, held by another worker or not %s)",
                action.id, action.status, "/".join(statuses),
            )
        return claimed

    def _record_failure(self, action: AutopilotAction, message: str, retryable: bool) -> None:
        scheduled = self.machine.mark_failed(self.db, action, message, retryable)
        self.db.commit()
        logger.warning(
            "[autopilot] action_id=%s type=%s failed retryable=%s scheduled_retry=%s: %s",
            action.id, action.action_type, retryable, scheduled, message,
        )
        autopilot_logger.log_event(
            event_type="failed",
            description=f"{action.action_type} failed",
            user_id=action.user_id,
            action_id=action.id,
            status="retrying" if scheduled else "failed",
            error=message,
        )

    async def _call(self, channel: Optional[str], call: Awaitable[EffectResult]) -> EffectResult:
        """Await one adapter call under the adapter timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self.adapter_timeout)
        except asyncio.TimeoutError:
            raise RetryableAdapterError(f"{channel}: adapter timed out after {self.adapter_timeout}s")

    async def _dispatch(self, action: AutopilotAction) -> EffectResult:
        action_type = ActionType(action.action_type)
        payload = dict(action.payload or {})

        if action.channel or action_type not in ITEM_LEVEL_ACTIONS:
            adapter = self.registry.get(action.channel)
            return await self._call(action.channel, adapter.execute(action_type, payload))

        # Item-level actions fan out to every active listing on an API channel.
        # If one listing fails, the ones already changed are rolled back so the
        # action either applies everywhere or nowhere.
        results: Dict[str, Any] = {}
        manual: List[str] = []
        done: List[Dict[str, Any]] = []
        for listing in payload.get("listings", []):
            channel = listing.get("channel")
            if not self.registry.is_api_channel(channel):
                manual.append(listing.get("listingId"))
                continue
            try:
                adapter = self.registry.get(channel)
                effect = await self._call(channel, adapter.execute(action_type, {**payload, "listing": listing}))
                if effect.manual_action_required:
                    raise FatalAdapterError(effect.message or f"{channel}: manual action required")
            except (RetryableAdapterError, FatalAdapterError) as exc:
                raise await self._roll_back(action, action_type, done, exc)
            done.append(listing)
            results[listing.get("listingId")] = effect.after_state
        if not results and manual:
            return EffectResult(
                success=False,
                manual_action_required=True,
                message="No listing of this item is on an API channel",
            )
        return EffectResult(success=True, after_state={"listings": results, "manualListings": manual})

    async def _roll_back(
        self,
        action: AutopilotAction,
        action_type: ActionType,
        listings: List[Dict[str, Any]],
        cause: AutopilotError,
    ) -> AutopilotError:
        """Reverse ``listings`` after a failed fan-out; returns the error to raise.

        If a listing cannot be reversed, retrying would apply the action to it
        twice, so the failure becomes fatal and names the listings to check.
        """
        if not listings:
            return cause
        before = dict(action.before_state or {})
        stuck: List[str] = []
        for listing in listings:
            channel = listing.get("channel")
            try:
                adapter = self.registry.get(channel)
                await self._call(channel, adapter.reverse(action_type, {**before, "listing": listing}))
            except (RetryableAdapterError, FatalAdapterError) as exc:
                logger.error(
                    "[autopilot] action_id=%s rollback failed on %s listing %s: %s",
                    action.id, channel, listing.get("listingId"), exc,
                )
                stuck.append(f"{channel}:{listing.get('listingId')}")
        if stuck:
            return FatalAdapterError(f"{cause}; rollback failed, check listings {', '.join(stuck)}")
        logger.info(
            "[autopilot] action_id=%s rolled back %s listing(s) after: %s", action.id, len(listings), cause
        )
        return cause

    async def _reverse(self, action: AutopilotAction) -> EffectResult:
        action_type = ActionType(action.action_type)
        before = dict(action.before_state or {})

        if action.channel or action_type not in ITEM_LEVEL_ACTIONS:
            adapter = self.registry.get(action.channel)
            return await self._call(action.channel, adapter.reverse(action_type, before))

        # Listings already reversed by an earlier, interrupted undo are skipped.
        after = dict(action.after_state or {})
        reversed_ids = list(after.get("reversedListings", []))
        api_listings = [
            l for l in before.get("listings", []) if self.registry.is_api_channel(l.get("channel"))
        ]
        if not api_listings and before.get("listings"):
            return EffectResult(success=False, manual_action_required=True)
        for listing in api_listings:
            if listing.get("listingId") in reversed_ids:
                continue
            channel = listing.get("channel")
            adapter = self.registry.get(channel)
            await self._call(channel, adapter.reverse(action_type, {**before, "listing": listing}))
            reversed_ids.append(listing.get("listingId"))
            action.after_state = {**after, "reversedListings": list(reversed_ids)}
            self.db.commit()
        return EffectResult(success=True)


def _is_manual(action: AutopilotAction) -> bool:
    return bool((action.payload or {}).get("manualActionRequired"))


def _default_after_state(action: AutopilotAction, now) -> Dict[str, Any]:
    payload = action.payload or {}
    action_type = ActionType(action.action_type)
    if action_type == ActionType.REPRICE:
        return {"price": payload.get("newPrice")}
    if action_type == ActionType.DELIST:
        return {"listingId": payload.get("listingId"), "status": "ended"}
    if action_type == ActionType.RELIST:
        return {"listedAt": now.isoformat()}
    if action_type == ActionType.ARCHIVE:
        return {"status": "archived"}
    if action_type == ActionType.OFFER_ACCEPT:
        return {"offerId": payload.get("offerId"), "offerStatus": "accepted"}
    if action_type == ActionType.OFFER_DECLINE:
        return {"offerId": payload.get("offerId"), "offerStatus": "declined"}
    return {
        "offerId": payload.get("offerId"),
        "offerStatus": "countered",
        "counterAmount": payload.get("counterAmount"),
    }
