from __future__ import annotations

from datetime import datetime
from typing import Optional


class AutopilotError(Exception):
    """Base class for every error raised by the autopilot engine."""

    retryable: bool = False


class InputError(AutopilotError):
    """Malformed or missing trigger event fields, or an invalid rule config."""


class NotImplementedStrategy(AutopilotError):
    """A configured strategy exists in the model but has no implementation."""

    def __init__(self, strategy: str):
        super().__init__(f"Strategy '{strategy}' is not implemented")
        self.strategy = strategy


class RateLimitExceeded(AutopilotError):
    """Daily cap reached for (user, action type). Re-attempted next period."""

    retryable = True

    def __init__(self, user_id: str, action_type: str, limit: int, resets_at: datetime):
        super().__init__(
            f"Daily limit of {limit} reached for {action_type} (user {user_id}); "
            f"resets at {resets_at.isoformat()}"
        )
        self.user_id = user_id
        self.action_type = action_type
        self.limit = limit
        self.resets_at = resets_at


class RetryableAdapterError(AutopilotError):
    """Network error, timeout, 5xx or throttling from a marketplace."""

    retryable = True


class FatalAdapterError(AutopilotError):
    """The marketplace rejected the request as invalid. Never retried."""


class ExpiredWindow(AutopilotError):
    """Undo requested after the action's undo deadline."""

    def __init__(self, action_id: str, deadline: Optional[datetime]):
        if deadline is None:
            msg = f"Action {action_id} has no undo window"
        else:
            msg = f"Undo window for action {action_id} expired at {deadline.isoformat()}"
        super().__init__(msg)
        self.action_id = action_id
        self.deadline = deadline


class InvalidTransition(AutopilotError):
    def __init__(self, action_id: str, from_status: str, to_status: str):
        super().__init__(f"Action {action_id}: cannot move from '{from_status}' to '{to_status}'")
        self.action_id = action_id
        self.from_status = from_status
        self.to_status = to_status


class ActionNotFound(AutopilotError):
    def __init__(self, action_id: str):
        super().__init__(f"Action {action_id} not found")
        self.action_id = action_id


class ManualActionRequired(AutopilotError):
    """The action targets an assisted channel and must be done by the user."""

    def __init__(self, action_id: str, channel: Optional[str]):
        super().__init__(f"Action {action_id} on channel '{channel}' requires manual action")
        self.action_id = action_id
        self.channel = channel
