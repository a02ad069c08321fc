"""Scheduled fan-out jobs: reprice-check-all and stale-check-all.

Each job enumerates users with the rule enabled, then their eligible items,
and runs one evaluation per (user, item) pair under a semaphore. Every pair
gets its own Session and AutopilotService; one pair failing is logged and
counted, never fatal to the batch.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy import SessionLocal
from app.utils.logger import logger

from .adapters import ChannelRegistry
from .clock import Clock, system_clock
from .service import AutopilotService
from .store import ItemStore
from .types import ActionStatus, RepriceCheckEvent, RuleType, StaleCheckEvent


@dataclass
class BatchSummary:
    job: str
    users: int = 0
    evaluated: int = 0
    proposed: int = 0
    executed: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: List[Tuple[str, Optional[str], str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "job": self.job,
            "users": self.users,
            "evaluated": self.evaluated,
            "proposed": self.proposed,
            "executed": self.executed,
            "skipped": self.skipped,
            "errors": self.errors,
            "errorDetails": [
                {"userId": u, "itemId": i, "error": e} for u, i, e in self.error_details
            ],
        }


def _enumerate_pairs(session_factory: Callable[[], Session], rule_type: RuleType) -> List[Tuple[str, str]]:
    db = session_factory()
    try:
        items = ItemStore(db)
        pairs: List[Tuple[str, str]] = []
        for user_id in items.users_with_enabled_rule(rule_type):
            for item in items.eligible_items(user_id):
                pairs.append((user_id, item.item_id))
        return pairs
    finally:
        db.close()


async def _run_check_all(
    job: str,
    rule_type: RuleType,
    make_event: Callable[[str, str, str], object],
    session_factory: Callable[[], Session],
    registry: Optional[ChannelRegistry],
    clock: Clock,
    concurrency: Optional[int],
    auto_execute: bool,
) -> BatchSummary:
    summary = BatchSummary(job=job)
    pairs = _enumerate_pairs(session_factory, rule_type)
    summary.users = len({user_id for user_id, _ in pairs})
    if not pairs:
        logger.info("[batch] %s: nothing to evaluate", job)
        return summary

    run_key = clock.now().strftime("%Y-%m-%dT%H:%M")
    semaphore = asyncio.Semaphore(concurrency or settings.AUTOPILOT_BATCH_CONCURRENCY)

    async def _run_safe(user_id: str, item_id: str) -> None:
        async with semaphore:
            db = session_factory()
            try:
                service = AutopilotService(db, registry=registry, clock=clock)
                event = make_event(user_id, item_id, f"{job}:{run_key}")
                result = service.evaluate_detailed(event)
                summary.evaluated += 1
                for failed_item, message in result.errors:
                    summary.errors += 1
                    summary.error_details.append((user_id, failed_item, message))
                if not result.proposals:
                    summary.skipped += 1
                    return
                actions = await service.submit(event, auto_execute=auto_execute, result=result)
                summary.proposed += len(actions)
                summary.executed += sum(
                    1 for a in actions if a.status == ActionStatus.EXECUTED.value
                )
            except Exception as exc:
                summary.errors += 1
                summary.error_details.append((user_id, item_id, str(exc)))
                logger.error(
                    "[batch] %s failed for user_id=%s item_id=%s: %s",
                    job, user_id, item_id, exc,
                    exc_info=True,
                )
                db.rollback()
            finally:
                db.close()

    await asyncio.gather(*[_run_safe(u, i) for u, i in pairs], return_exceptions=True)

    logger.info(
        "[batch] %s done users=%s evaluated=%s proposed=%s executed=%s skipped=%s errors=%s",
        job, summary.users, summary.evaluated, summary.proposed,
        summary.executed, summary.skipped, summary.errors,
    )
    return summary


async def reprice_check_all(
    session_factory: Callable[[], Session] = SessionLocal,
    registry: Optional[ChannelRegistry] = None,
    clock: Clock = system_clock,
    concurrency: Optional[int] = None,
    auto_execute: bool = True,
) -> BatchSummary:
    return await _run_check_all(
        "reprice_check_all",
        RuleType.REPRICE,
        lambda user_id, item_id, key: RepriceCheckEvent(
            user_id=user_id, item_id=item_id, idempotency_key=key
        ),
        session_factory,
        registry,
        clock,
        concurrency,
        auto_execute,
    )


async def stale_check_all(
    session_factory: Callable[[], Session] = SessionLocal,
    registry: Optional[ChannelRegistry] = None,
    clock: Clock = system_clock,
    concurrency: Optional[int] = None,
    auto_execute: bool = True,
) -> BatchSummary:
    return await _run_check_all(
        "stale_check_all",
        RuleType.STALE,
        lambda user_id, item_id, key: StaleCheckEvent(
            user_id=user_id, item_id=item_id, idempotency_key=key
        ),
        session_factory,
        registry,
        clock,
        concurrency,
        auto_execute,
    )


async def retry_due_actions(
    session_factory: Callable[[], Session] = SessionLocal,
    registry: Optional[ChannelRegistry] = None,
    clock: Clock = system_clock,
) -> int:
    """Re-attempt every action whose backoff or rate-limit deferral elapsed."""
    db = session_factory()
    try:
        service = AutopilotService(db, registry=registry, clock=clock)
        return len(await service.run_due_retries())
    except Exception as exc:
        logger.error("[batch] retry_due_actions failed: %s", exc, exc_info=True)
        db.rollback()
        return 0
    finally:
        db.close()
