from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from app.config import settings
from app.models_sqlalchemy.models import AutopilotAction

from .clock import Clock, ensure_utc
from .errors import ExpiredWindow, InvalidTransition
from .types import ActionStatus, ActionType


class UndoManager:
    """Owns undo windows and the "may this still be undone?" check.

    Expiry is evaluated lazily when an undo is requested; nothing sweeps
    expired actions in the background. The deadline is inclusive.
    """

    def __init__(
        self,
        clock: Clock,
        window_for: Optional[Callable[[str], Optional[timedelta]]] = None,
    ):
        self.clock = clock
        self._window_for = window_for or settings.undo_window_for

    def window_for(self, action_type: ActionType) -> Optional[timedelta]:
        return self._window_for(ActionType(action_type).value)

    def time_remaining(self, action: AutopilotAction) -> Optional[timedelta]:
        if action.undo_deadline is None or action.status != ActionStatus.EXECUTED.value:
            return None
        remaining = ensure_utc(action.undo_deadline) - self.clock.now()
        return remaining if remaining >= timedelta(0) else timedelta(0)

    def check_undoable(self, action: AutopilotAction) -> datetime:
        """Raise unless ``action`` can be undone right now. Returns ``now``."""
        if action.status != ActionStatus.EXECUTED.value:
            raise InvalidTransition(action.id, action.status, ActionStatus.UNDONE.value)
        if not action.reversible or action.undo_deadline is None:
            raise ExpiredWindow(action.id, None)

        now = self.clock.now()
        deadline = ensure_utc(action.undo_deadline)
        if now > deadline:
            raise ExpiredWindow(action.id, deadline)
        return now
