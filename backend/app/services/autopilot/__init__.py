"""Autopilot decision & action engine.

Decides what to do about offers, stale listings, slow sellers and sold items,
and whether it may be done without asking the user:

- ``engine`` + the rule modules (offers, repricing, stale, delist) turn a
  trigger event and the user's rule config into proposals. Pure.
- ``confidence`` maps raw confidence to a level and the approval decision.
- ``state_machine`` owns the action lifecycle; ``undo`` the undo windows.
- ``rate_limiter`` enforces per-user daily caps per action type.
- ``adapters`` are the only code that talks to marketplaces.
- ``service`` wires all of the above to the database; ``batch`` fans the
  scheduled checks out over every (user, item) pair.
"""

from .service import AutopilotService
from .batch import BatchSummary, reprice_check_all, retry_due_actions, stale_check_all
from .types import (
    ActionStatus,
    ActionType,
    ConfidenceLevel,
    DelistOnSaleEvent,
    OfferReceivedEvent,
    RepriceCheckEvent,
    RuleType,
    StaleCheckEvent,
)
