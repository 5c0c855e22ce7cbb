"""
Ledger reconciliation.

Replays each account's transactions and checks the balance_after chain.
Read-only: mismatches are reported, never corrected here. Corrections go
through an ADJUSTMENT transaction written by an operator.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from charachat.core.clock import utc_now
from charachat.core.database import credit_transactions
from charachat.features.credits.ledger import get_current_balance, list_ledger_accounts

logger = logging.getLogger("charachat.credits.reconciliation")


def verify_account_ledger(db: Session, account_id: str) -> Dict:
    """
    Replay one account's ledger in sequence order.

    Returns a report with every row whose balance_after differs from the
    running sum, the ledger sum, the last recorded balance_after and the
    balance the resolver currently returns.
    """
    rows = db.execute(
        select(
            credit_transactions.c.id,
            credit_transactions.c.sequence,
            credit_transactions.c.amount_credits,
            credit_transactions.c.balance_after,
        )
        .where(credit_transactions.c.account_id == account_id)
        .order_by(credit_transactions.c.sequence.asc())
    ).fetchall()

    running = 0
    broken_links: List[Dict] = []
    last_balance_after: Optional[int] = None
    for row in rows:
        running += row.amount_credits
        if row.balance_after != running:
            broken_links.append({
                "transaction_id": row.id,
                "sequence": row.sequence,
                "expected_balance_after": running,
                "recorded_balance_after": row.balance_after,
            })
        last_balance_after = row.balance_after

    resolved = get_current_balance(db, account_id)
    final_matches = last_balance_after is None or last_balance_after == running

    return {
        "account_id": account_id,
        "transaction_count": len(rows),
        "ledger_sum": running,
        "last_balance_after": last_balance_after,
        "resolved_balance": resolved,
        "broken_links": broken_links,
        "ok": not broken_links and final_matches and resolved == running,
    }


def run_reconciliation(db: Session) -> Dict:
    """
    Verify every account with ledger activity.

    Returns reconciliation report.
    """
    account_ids = list_ledger_accounts(db)
    mismatches = []

    for account_id in account_ids:
        report = verify_account_ledger(db, account_id)
        if not report["ok"]:
            mismatches.append(report)
            logger.warning(
                "[reconciliation] ledger mismatch",
                extra={
                    "account_id": account_id,
                    "ledger_sum": report["ledger_sum"],
                    "resolved_balance": report["resolved_balance"],
                    "broken_links": len(report["broken_links"]),
                },
            )

    report = {
        "status": "completed",
        "accounts_checked": len(account_ids),
        "mismatches": mismatches,
        "reconciled_at": utc_now().isoformat(),
    }
    logger.info(
        "[reconciliation] completed",
        extra={"accounts_checked": len(account_ids), "mismatches": len(mismatches)},
    )
    return report
