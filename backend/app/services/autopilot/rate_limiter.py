"""Per-user, per-action-type daily execution caps (UTC days).

The increment is a single conditional UPDATE (``count < cap``), so two
workers racing for the last slot cannot both get it. The row for a day is
created lazily by the first increment.
"""

from __future__ import annotations

import uuid
from datetime import date
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import AutopilotRateLimit
from app.utils.logger import logger

from .clock import Clock
from .errors import RateLimitExceeded
from .types import ActionType


class RateLimiter:
    def __init__(
        self,
        clock: Clock,
        limit_for: Optional[Callable[[str], Optional[int]]] = None,
    ):
        self.clock = clock
        self._limit_for = limit_for or settings.rate_limit_for

    def limit_for(self, action_type: ActionType) -> Optional[int]:
        return self._limit_for(ActionType(action_type).value)

    def _increment(self, db: Session, user_id: str, action_type: str, day: date, cap: int) -> bool:
        result = db.execute(
            update(AutopilotRateLimit)
            .where(
                AutopilotRateLimit.user_id == user_id,
                AutopilotRateLimit.action_type == action_type,
                AutopilotRateLimit.day == day,
                AutopilotRateLimit.count < cap,
            )
            .values(count=AutopilotRateLimit.count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _row_exists(self, db: Session, user_id: str, action_type: str, day: date) -> bool:
        return (
            db.query(AutopilotRateLimit.id)
            .filter(
                AutopilotRateLimit.user_id == user_id,
                AutopilotRateLimit.action_type == action_type,
                AutopilotRateLimit.day == day,
            )
            .first()
            is not None
        )

    def try_acquire(self, db: Session, user_id: str, action_type: ActionType) -> bool:
        """Consume one slot for today. Commits on success; False when capped."""
        action_value = ActionType(action_type).value
        cap = self.limit_for(action_value)
        if cap is None:
            return True

        day = self.clock.today()
        for _ in range(2):
            if self._increment(db, user_id, action_value, day, cap):
                db.commit()
                return True
            if self._row_exists(db, user_id, action_value, day):
                logger.info(
                    "[rate_limit] denied user_id=%s action_type=%s day=%s cap=%s",
                    user_id, action_value, day, cap,
                )
                return False
            try:
                db.add(
                    AutopilotRateLimit(
                        id=str(uuid.uuid4()),
                        user_id=user_id,
                        action_type=action_value,
                        day=day,
                        count=1,
                    )
                )
                db.commit()
                return True
            except IntegrityError:
                # Another worker created today's row first; go round again
                # and take the conditional UPDATE path.
                db.rollback()
        return False

    def acquire(self, db: Session, user_id: str, action_type: ActionType) -> None:
        """Like :meth:`try_acquire` but raises :class:`RateLimitExceeded`."""
        if not self.try_acquire(db, user_id, action_type):
            raise RateLimitExceeded(
                user_id=user_id,
                action_type=ActionType(action_type).value,
                limit=self.limit_for(action_type) or 0,
                resets_at=self.clock.next_midnight(),
            )

    def used(self, db: Session, user_id: str, action_type: ActionType) -> int:
        row = (
            db.query(AutopilotRateLimit)
            .filter(
                AutopilotRateLimit.user_id == user_id,
                AutopilotRateLimit.action_type == ActionType(action_type).value,
                AutopilotRateLimit.day == self.clock.today(),
            )
            .first()
        )
        return row.count if row else 0

    def remaining(self, db: Session, user_id: str, action_type: ActionType) -> Optional[int]:
        cap = self.limit_for(action_type)
        if cap is None:
            return None
        return max(0, cap - self.used(db, user_id, action_type))
