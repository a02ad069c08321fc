"""
Background workers for the reseller autopilot.

Workers:
- autopilot_loop: runs due retries, reprice-check-all and stale-check-all
  every AUTOPILOT_LOOP_INTERVAL_SECONDS (default 15 minutes)
"""

from app.workers.autopilot_loop import run_autopilot_loop, run_autopilot_once
