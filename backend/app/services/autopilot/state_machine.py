"""Lifecycle of an AutopilotAction row.

pending -> approved | rejected
approved -> executed | failed
executed -> undone
failed -> pending (retry, only while retry_count is under the cap)

rejected, undone and a failed action that can no longer retry are terminal.
Every applied transition appends an AutopilotActionEvent row; committing is
left to the caller.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import AutopilotAction, AutopilotActionEvent
from app.utils.logger import autopilot_logger, logger

from .clock import Clock
from .errors import InvalidTransition
from .types import ActionStatus


ALLOWED_TRANSITIONS = {
    ActionStatus.PENDING.value: {ActionStatus.APPROVED.value, ActionStatus.REJECTED.value},
    ActionStatus.APPROVED.value: {ActionStatus.EXECUTED.value, ActionStatus.FAILED.value},
    ActionStatus.EXECUTED.value: {ActionStatus.UNDONE.value},
    ActionStatus.FAILED.value: {ActionStatus.PENDING.value},
    ActionStatus.REJECTED.value: set(),
    ActionStatus.UNDONE.value: set(),
}


class ActionStateMachine:
    def __init__(
        self,
        clock: Clock,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[int] = None,
        backoff_max_seconds: Optional[int] = None,
    ):
        self.clock = clock
        self.max_retries = settings.AUTOPILOT_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_seconds = (
            settings.AUTOPILOT_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.backoff_max_seconds = (
            settings.AUTOPILOT_RETRY_BACKOFF_MAX_SECONDS if backoff_max_seconds is None else backoff_max_seconds
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def can_retry(self, action: AutopilotAction) -> bool:
        return (action.retry_count or 0) < self.max_retries

    def is_terminal(self, action: AutopilotAction) -> bool:
        status = action.status
        if status in (ActionStatus.REJECTED.value, ActionStatus.UNDONE.value):
            return True
        return status == ActionStatus.FAILED.value and not self.can_retry(action)

    def backoff_for(self, retry_count: int) -> timedelta:
        """Exponential backoff for the ``retry_count``-th retry (1-based)."""
        exponent = max(0, retry_count - 1)
        seconds = min(self.backoff_seconds * (2 ** exponent), self.backoff_max_seconds)
        return timedelta(seconds=seconds)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        db: Session,
        action: AutopilotAction,
        new_status: ActionStatus,
        note: Optional[str] = None,
    ) -> str:
        """Validate and apply a status change. Returns the old status."""
        new_value = ActionStatus(new_status).value
        old_value = action.status

        if new_value not in ALLOWED_TRANSITIONS.get(old_value, set()):
            raise InvalidTransition(action.id, old_value, new_value)
        if old_value == ActionStatus.FAILED.value and not self.can_retry(action):
            raise InvalidTransition(action.id, old_value, new_value)

        now = self.clock.now()
        action.status = new_value
        action.updated_at = now
        db.add(
            AutopilotActionEvent(
                action_id=action.id,
                from_status=old_value,
                to_status=new_value,
                note=note,
                created_at=now,
            )
        )

        logger.info(
            "[autopilot] action_id=%s type=%s %s -> %s%s",
            action.id,
            action.action_type,
            old_value,
            new_value,
            f" ({note})" if note else "",
        )
        autopilot_logger.log_event(
            event_type="status_change",
            description=f"{action.action_type} {old_value} -> {new_value}",
            user_id=action.user_id,
            action_id=action.id,
            payload={"note": note} if note else None,
        )
        return old_value

    def approve(self, db: Session, action: AutopilotAction, note: Optional[str] = None) -> None:
        self.transition(db, action, ActionStatus.APPROVED, note or "approved")

    def reject(self, db: Session, action: AutopilotAction, note: Optional[str] = None) -> None:
        self.transition(db, action, ActionStatus.REJECTED, note or "rejected")

    def mark_executed(
        self,
        db: Session,
        action: AutopilotAction,
        after_state: Optional[Dict[str, Any]],
        undo_window: Optional[timedelta],
    ) -> None:
        self.transition(db, action, ActionStatus.EXECUTED, "executed by channel adapter")
        now = self.clock.now()
        action.after_state = after_state
        action.executed_at = now
        action.next_attempt_at = None
        action.error_message = None
        if action.reversible and undo_window is not None:
            action.undo_deadline = now + undo_window

    def mark_failed(
        self,
        db: Session,
        action: AutopilotAction,
        error: str,
        retryable: bool,
    ) -> bool:
        """Record a failed execution attempt.

        Returns True when a retry was scheduled (the action is back in
        ``pending`` with ``next_attempt_at`` set), False when the failure is
        terminal.
        """
        self.transition(db, action, ActionStatus.FAILED, error)
        action.error_message = error
        action.next_attempt_at = None

        if not retryable or not self.can_retry(action):
            if retryable:
                logger.warning(
                    "[autopilot] action_id=%s exhausted %s retries", action.id, self.max_retries
                )
            return False

        attempt = (action.retry_count or 0) + 1
        delay = self.backoff_for(attempt)
        self.transition(
            db,
            action,
            ActionStatus.PENDING,
            f"retry {attempt}/{self.max_retries} in {int(delay.total_seconds())}s",
        )
        action.retry_count = attempt
        action.next_attempt_at = self.clock.now() + delay
        return True

    def mark_undone(self, db: Session, action: AutopilotAction, now: datetime, note: Optional[str] = None) -> None:
        self.transition(db, action, ActionStatus.UNDONE, note or "undone")
        action.undone_at = now
