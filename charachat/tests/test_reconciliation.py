"""
Ledger reconciliation reports.
"""
from datetime import timedelta

from sqlalchemy import update

from charachat.core.database import credit_transactions
from charachat.features.credits.ledger import create_transaction
from charachat.features.credits.reconciliation import run_reconciliation, verify_account_ledger
from charachat.models.credits import TransactionKind


def _seed_ledger(db, account_id, now):
    create_transaction(db, account_id, TransactionKind.GRANT_INITIAL, 50, now=now)
    create_transaction(db, account_id, TransactionKind.CONSUMPTION, -12, now=now + timedelta(minutes=1))
    create_transaction(db, account_id, TransactionKind.SYSTEM_REWARD, 25, now=now + timedelta(minutes=2))


def test_clean_ledger_verifies(db, now):
    _seed_ledger(db, "acct_ok", now)

    report = verify_account_ledger(db, "acct_ok")

    assert report["ok"] is True
    assert report["transaction_count"] == 3
    assert report["ledger_sum"] == 63
    assert report["last_balance_after"] == 63
    assert report["broken_links"] == []


def test_tampered_balance_after_is_reported(db, now):
    _seed_ledger(db, "acct_bad", now)
    db.execute(
        update(credit_transactions)
        .where(credit_transactions.c.account_id == "acct_bad", credit_transactions.c.sequence == 2)
        .values(balance_after=999)
    )
    db.commit()

    report = verify_account_ledger(db, "acct_bad")

    assert report["ok"] is False
    assert report["broken_links"] == [
        {
            "transaction_id": report["broken_links"][0]["transaction_id"],
            "sequence": 2,
            "expected_balance_after": 38,
            "recorded_balance_after": 999,
        }
    ]


def test_run_reconciliation_collects_mismatches(db, now):
    _seed_ledger(db, "acct_a", now)
    _seed_ledger(db, "acct_b", now)
    db.execute(
        update(credit_transactions)
        .where(credit_transactions.c.account_id == "acct_b", credit_transactions.c.sequence == 3)
        .values(balance_after=1)
    )
    db.commit()

    report = run_reconciliation(db)

    assert report["status"] == "completed"
    assert report["accounts_checked"] == 2
    assert [m["account_id"] for m in report["mismatches"]] == ["acct_b"]
