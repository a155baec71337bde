"""Scheduled jobs over the ledger and the cost monitor.

These are plain functions with no cadence of their own; ``server/jobs.py``
is the entrypoint an external scheduler runs. Each account is handled in
its own transaction and a failing account never stops the batch.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING

from server.promptpm.billing.types import BatchResult

if TYPE_CHECKING:
    from server.promptpm.billing.interfaces import CostGovernor, Ledger

log = logging.getLogger(__name__)


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def process_monthly_reset(ledger: "Ledger", now: dt.datetime | None = None) -> BatchResult:
    now = now or _now()
    result = BatchResult()
    for user_id in ledger.due_monthly_resets(now):
        try:
            if ledger.apply_monthly_reset(user_id, now):
                result.processed += 1
        except Exception:
            log.exception("Monthly credit reset failed for user %s", user_id)
            result.failed += 1
            result.failed_users.append(user_id)
    log.info("Monthly credit reset finished (processed=%s, failed=%s)", result.processed, result.failed)
    return result


def expire_rollover_credits(ledger: "Ledger", now: dt.datetime | None = None) -> BatchResult:
    now = now or _now()
    result = BatchResult()
    for user_id in ledger.due_rollover_expirations(now):
        try:
            if ledger.apply_rollover_expiration(user_id, now):
                result.processed += 1
        except Exception:
            log.exception("Rollover expiration failed for user %s", user_id)
            result.failed += 1
            result.failed_users.append(user_id)
    log.info("Rollover expiration finished (expired=%s, failed=%s)", result.processed, result.failed)
    return result


def reset_monthly_costs(governor: "CostGovernor", now: dt.datetime | None = None) -> BatchResult:
    # One aggregate statement: it either resets every due user or none.
    result = BatchResult()
    try:
        result.processed = governor.reset_monthly_costs(now or _now())
    except Exception:
        log.exception("Monthly API cost reset failed")
        result.failed = 1
    return result
