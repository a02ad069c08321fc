"""Autopilot background loop.

Every ``interval_seconds`` runs, in order:

- retries whose backoff elapsed and actions deferred by the rate limiter,
- reprice-check-all over every user with an enabled reprice rule,
- stale-check-all over every user with an enabled stale rule.

The loop is started from app.main on startup when AUTOPILOT_LOOP_ENABLED is
set, or standalone via ``python -m app.workers.autopilot_loop``.

A heartbeat is kept in the BackgroundWorker table under
worker_name="autopilot_loop" so the admin API can show when the loop last
ran and whether it looks stale.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import BackgroundWorker
from app.services.autopilot.batch import reprice_check_all, retry_due_actions, stale_check_all
from app.utils.logger import logger


WORKER_NAME = "autopilot_loop"


def _get_or_create_worker_row(db: Session) -> Optional[BackgroundWorker]:
    try:
        worker: Optional[BackgroundWorker] = (
            db.query(BackgroundWorker)
            .filter(BackgroundWorker.worker_name == WORKER_NAME)
            .one_or_none()
        )
        if worker is None:
            worker = BackgroundWorker(worker_name=WORKER_NAME, interval_seconds=None)
            db.add(worker)
            db.commit()
            db.refresh(worker)
        return worker
    except Exception as exc:
        logger.error("Failed to load/create BackgroundWorker row for %s: %s", WORKER_NAME, exc)
        db.rollback()
        return None


async def run_autopilot_once(session_factory=SessionLocal) -> dict:
    """One full cycle. Returns the per-job summaries."""
    retried = await retry_due_actions(session_factory)
    reprice = await reprice_check_all(session_factory)
    stale = await stale_check_all(session_factory)
    return {
        "retried": retried,
        "reprice": reprice.to_dict(),
        "stale": stale.to_dict(),
    }


async def run_autopilot_loop(interval_seconds: Optional[int] = None) -> None:
    interval = interval_seconds or settings.AUTOPILOT_LOOP_INTERVAL_SECONDS
    logger.info("[autopilot] loop started (interval=%s seconds)", interval)

    db = SessionLocal()
    worker_row = _get_or_create_worker_row(db)
    if worker_row is not None:
        worker_row.interval_seconds = interval
        db.commit()

    try:
        while True:
            if worker_row is not None:
                worker_row.last_started_at = datetime.now(timezone.utc)
                worker_row.last_status = "running"
                worker_row.last_error_message = None
                db.commit()

            try:
                result = await run_autopilot_once()
                cycle_error = None
                if result["reprice"]["errors"] or result["stale"]["errors"]:
                    logger.warning(
                        "[autopilot] cycle finished with errors reprice=%s stale=%s",
                        result["reprice"]["errors"],
                        result["stale"]["errors"],
                    )
            except Exception as exc:
                cycle_error = exc
                logger.error("[autopilot] cycle failed: %s", exc, exc_info=True)

            if worker_row is not None:
                worker_row.last_finished_at = datetime.now(timezone.utc)
                if cycle_error is None:
                    worker_row.last_status = "ok"
                    worker_row.runs_ok_in_row = (worker_row.runs_ok_in_row or 0) + 1
                    worker_row.runs_error_in_row = 0
                else:
                    worker_row.last_status = "error"
                    worker_row.last_error_message = str(cycle_error)[:2000]
                    worker_row.runs_error_in_row = (worker_row.runs_error_in_row or 0) + 1
                    worker_row.runs_ok_in_row = 0
                db.commit()

            await asyncio.sleep(interval)
    finally:
        db.close()


if __name__ == "__main__":
    from app.models_sqlalchemy import init_db

    init_db()
    asyncio.run(run_autopilot_loop())
