"""
Periodic credit jobs.

Run by an external scheduler (cron or rq-scheduler) through workers.queue,
or directly: python -m charachat.workers.jobs <job-name>
"""
from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime
from typing import Dict, Optional

from charachat.core.clock import start_of_previous_month, utc_now
from charachat.core.database import get_db_session
from charachat.features.credits.ledger import (
    close_monthly_snapshot,
    create_monthly_snapshot,
    list_ledger_accounts,
)
from charachat.features.credits.reconciliation import run_reconciliation
from charachat.features.plans.cycle import grant_monthly_credits, list_due_paid_plans, renew_free_plan_cycles
from charachat.features.usage.service import process_usage_logs

logger = logging.getLogger("charachat.workers")


def process_pending_usage(limit: Optional[int] = None) -> Dict:
    """Charge pending usage logs."""
    with get_db_session() as session:
        processed = process_usage_logs(session, limit)
    return {"processed": processed}


def run_monthly_snapshots(now: Optional[datetime] = None) -> Dict:
    """
    Close last month's snapshots and open this month's for every account.

    Per-account failures are logged and skipped.
    """
    now = now or utc_now()
    previous_month = start_of_previous_month(now)
    results = {"snapshots_created": 0, "snapshots_closed": 0, "failed": 0}

    with get_db_session() as session:
        account_ids = list_ledger_accounts(session)

    for account_id in account_ids:
        try:
            with get_db_session() as session:
                if close_monthly_snapshot(session, account_id, previous_month):
                    results["snapshots_closed"] += 1
                create_monthly_snapshot(session, account_id, now=now)
                results["snapshots_created"] += 1
        except Exception:
            logger.error("[jobs] monthly snapshot failed", exc_info=True, extra={"account_id": account_id})
            results["failed"] += 1

    logger.info("[jobs] monthly snapshots done", extra=results)
    return results


def grant_due_monthly_credits(now: Optional[datetime] = None) -> Dict:
    """
    Grant monthly credits to paid plans whose 30-day window elapsed.

    Per-account failures are logged and skipped.
    """
    now = now or utc_now()
    results = {"granted": 0, "skipped": 0, "failed": 0}

    with get_db_session() as session:
        due = list_due_paid_plans(session, now=now)

    for account_id, plan_id in due:
        try:
            with get_db_session() as session:
                granted = grant_monthly_credits(session, account_id, plan_id, now=now)
            results["granted" if granted else "skipped"] += 1
        except Exception:
            logger.error(
                "[jobs] monthly grant failed",
                exc_info=True,
                extra={"account_id": account_id, "plan_id": plan_id},
            )
            results["failed"] += 1

    logger.info("[jobs] monthly grants done", extra=results)
    return results


def renew_free_cycles(now: Optional[datetime] = None) -> Dict:
    with get_db_session() as session:
        renewed = renew_free_plan_cycles(session, now=now)
    return {"renewed": renewed}


def reconcile_ledgers() -> Dict:
    with get_db_session() as session:
        report = run_reconciliation(session)
    if report["mismatches"]:
        logger.error("[jobs] ledger reconciliation found mismatches", extra={"mismatches": len(report["mismatches"])})
    return report


JOBS = {
    "process-usage": process_pending_usage,
    "monthly-snapshots": run_monthly_snapshots,
    "monthly-grants": grant_due_monthly_credits,
    "renew-free-cycles": renew_free_cycles,
    "reconcile": reconcile_ledgers,
}


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a credit maintenance job once.")
    parser.add_argument("job", choices=sorted(JOBS))
    args = parser.parse_args()

    result = JOBS[args.job]()
    print(json.dumps(result, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
