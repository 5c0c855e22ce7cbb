"""
Credit ledger: balance resolution and the single write path.

Manages credit accounting with:
- Append-only ledger (credit_transactions)
- Monthly balance snapshots to bound balance reads
- Per-account write serialization (row lock + sequence compare-and-swap)
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Tuple, Union
from uuid import uuid4

from sqlalchemy import select, insert, update, func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from charachat.core.clock import ensure_utc, start_of_month, start_of_previous_month, start_of_next_month, utc_now
from charachat.core.database import (
    credit_accounts,
    credit_transactions,
    monthly_balances,
    transactional,
)
from charachat.core.errors import InsufficientCreditsError, LedgerConflictError
from charachat.models.credits import (
    CreditTransaction,
    MonthlySnapshot,
    TransactionKind,
    TransactionResult,
)

logger = logging.getLogger("charachat.credits.ledger")


def _now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) if now is not None else utc_now()


def _row_to_transaction(row) -> CreditTransaction:
    return CreditTransaction(
        id=row.id,
        account_id=row.account_id,
        sequence=row.sequence,
        kind=TransactionKind(row.transaction_type),
        amount=row.amount_credits,
        balance_after=row.balance_after,
        notes=row.notes,
        related_usage_log_id=row.related_usage_log_id,
        related_plan_id=row.related_plan_id,
        created_at=ensure_utc(row.created_at),
    )


def _row_to_snapshot(row) -> MonthlySnapshot:
    return MonthlySnapshot(
        account_id=row.account_id,
        month_start=ensure_utc(row.month_start),
        starting_balance=row.starting_balance,
        ending_balance=row.ending_balance,
        credits_granted=row.credits_granted or 0,
        credits_spent=row.credits_spent or 0,
    )


def _sum_amounts(db: Session, account_id: str, since: Optional[datetime] = None, until: Optional[datetime] = None) -> int:
    stmt = select(func.coalesce(func.sum(credit_transactions.c.amount_credits), 0)).where(
        credit_transactions.c.account_id == account_id
    )
    if since is not None:
        stmt = stmt.where(credit_transactions.c.created_at >= since)
    if until is not None:
        stmt = stmt.where(credit_transactions.c.created_at < until)
    return int(db.execute(stmt).scalar() or 0)


def get_snapshot(db: Session, account_id: str, month_start: datetime) -> Optional[MonthlySnapshot]:
    row = db.execute(
        select(monthly_balances).where(
            monthly_balances.c.account_id == account_id,
            monthly_balances.c.month_start == month_start,
        )
    ).first()
    return _row_to_snapshot(row) if row else None


def get_current_balance(db: Session, account_id: str, *, now: Optional[datetime] = None) -> int:
    """
    Current balance for an account.

    Uses the snapshot for the current month as a baseline when one exists,
    otherwise sums the whole ledger. No data means a balance of 0.
    """
    month_start = start_of_month(_now(now))
    snapshot = get_snapshot(db, account_id, month_start)
    if snapshot:
        return snapshot.starting_balance + _sum_amounts(db, account_id, since=month_start)
    return _sum_amounts(db, account_id)


def ensure_credit_account(db: Session, account_id: str, *, now: Optional[datetime] = None) -> None:
    """Create the account's ledger head row if missing (does not commit)."""
    exists = db.execute(
        select(credit_accounts.c.account_id).where(credit_accounts.c.account_id == account_id)
    ).first()
    if exists:
        return
    ts = _now(now)
    db.execute(
        insert(credit_accounts).values(
            account_id=account_id,
            ledger_sequence=0,
            created_at=ts,
            updated_at=ts,
        )
    )


def lock_credit_account(db: Session, account_id: str, now: datetime) -> int:
    """Lock the account's ledger head and return its current sequence."""
    stmt = (
        select(credit_accounts.c.ledger_sequence)
        .where(credit_accounts.c.account_id == account_id)
        .with_for_update()
    )
    sequence = db.execute(stmt).scalar()
    if sequence is None:
        ensure_credit_account(db, account_id, now=now)
        sequence = db.execute(stmt).scalar()
    return int(sequence or 0)


def append_transaction(
    db: Session,
    account_id: str,
    kind: Union[TransactionKind, str],
    amount: int,
    notes: Optional[str] = None,
    related_usage_log_id: Optional[str] = None,
    related_plan_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> TransactionResult:
    """
    Validate and append one ledger row without committing.

    Callers own the surrounding database transaction; use this directly only
    when the ledger write must commit together with other state changes.

    Raises:
        InsufficientCreditsError: debit would leave a negative balance
        LedgerConflictError: a concurrent writer advanced the ledger first
    """
    kind = TransactionKind(kind)
    amount = int(amount)
    ts = _now(now)

    try:
        sequence = lock_credit_account(db, account_id, ts)
        current_balance = get_current_balance(db, account_id, now=ts)
        new_balance = current_balance + amount

        if amount < 0 and new_balance < 0:
            logger.info(
                "[ledger] debit rejected",
                extra={"account_id": account_id, "kind": kind.value, "amount": amount, "balance": current_balance},
            )
            raise InsufficientCreditsError(balance=current_balance, required=-amount)

        txn_id = str(uuid4())
        db.execute(
            insert(credit_transactions).values(
                id=txn_id,
                account_id=account_id,
                sequence=sequence + 1,
                transaction_type=kind.value,
                amount_credits=amount,
                balance_after=new_balance,
                notes=notes,
                related_usage_log_id=related_usage_log_id,
                related_plan_id=related_plan_id,
                created_at=ts,
            )
        )
        advanced = db.execute(
            update(credit_accounts)
            .where(
                credit_accounts.c.account_id == account_id,
                credit_accounts.c.ledger_sequence == sequence,
            )
            .values(ledger_sequence=sequence + 1, updated_at=ts)
        )
    except IntegrityError as e:
        raise LedgerConflictError(f"Concurrent ledger write for account {account_id}") from e

    if advanced.rowcount != 1:
        raise LedgerConflictError(f"Concurrent ledger write for account {account_id}")

    transaction = CreditTransaction(
        id=txn_id,
        account_id=account_id,
        sequence=sequence + 1,
        kind=kind,
        amount=amount,
        balance_after=new_balance,
        notes=notes,
        related_usage_log_id=related_usage_log_id,
        related_plan_id=related_plan_id,
        created_at=ts,
    )
    logger.info(
        "[ledger] transaction appended",
        extra={"account_id": account_id, "kind": kind.value, "amount": amount, "balance_after": new_balance},
    )
    return TransactionResult(transaction=transaction, new_balance=new_balance)


def create_transaction(
    db: Session,
    account_id: str,
    kind: Union[TransactionKind, str],
    amount: int,
    notes: Optional[str] = None,
    related_usage_log_id: Optional[str] = None,
    related_plan_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> TransactionResult:
    """
    Append a transaction and commit it.

    This is the mutation path for every balance change. A rejected debit
    leaves the ledger untouched.
    """
    with transactional(db):
        return append_transaction(
            db,
            account_id,
            kind,
            amount,
            notes,
            related_usage_log_id,
            related_plan_id,
            now=now,
        )


def has_enough_credits(db: Session, account_id: str, required_credits: int, *, now: Optional[datetime] = None) -> bool:
    return get_current_balance(db, account_id, now=now) >= required_credits


def get_transaction_history(
    db: Session,
    account_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
    kind: Optional[Union[TransactionKind, str]] = None,
) -> Tuple[List[CreditTransaction], int]:
    """Account ledger, newest first, with the unpaginated total."""
    conditions = [credit_transactions.c.account_id == account_id]
    if kind is not None:
        conditions.append(credit_transactions.c.transaction_type == TransactionKind(kind).value)

    rows = db.execute(
        select(credit_transactions)
        .where(*conditions)
        .order_by(credit_transactions.c.sequence.desc())
        .limit(limit)
        .offset(offset)
    ).fetchall()
    total = db.execute(
        select(func.count()).select_from(credit_transactions).where(*conditions)
    ).scalar() or 0

    return [_row_to_transaction(row) for row in rows], int(total)


def list_ledger_accounts(db: Session) -> List[str]:
    rows = db.execute(select(credit_accounts.c.account_id).order_by(credit_accounts.c.account_id)).fetchall()
    return [row[0] for row in rows]


def _balance_at(db: Session, account_id: str, moment: datetime) -> int:
    """Balance from transactions strictly before moment."""
    previous_start = start_of_previous_month(moment)
    previous = get_snapshot(db, account_id, previous_start)
    if previous:
        return previous.starting_balance + _sum_amounts(db, account_id, since=previous_start, until=moment)
    return _sum_amounts(db, account_id, until=moment)


def create_monthly_snapshot(db: Session, account_id: str, *, now: Optional[datetime] = None) -> MonthlySnapshot:
    """
    Create the current month's snapshot if absent (idempotent).

    The starting balance is the balance as of the first instant of the month,
    so a job running late in the month does not count this month's activity twice.
    The balance is read under the account lock, after any in-flight ledger write
    has committed.
    """
    ts = _now(now)
    month_start = start_of_month(ts)
    existing = get_snapshot(db, account_id, month_start)
    if existing:
        return existing

    try:
        with transactional(db):
            lock_credit_account(db, account_id, ts)
            existing = get_snapshot(db, account_id, month_start)
            if existing:
                return existing

            starting_balance = _balance_at(db, account_id, month_start)
            db.execute(
                insert(monthly_balances).values(
                    account_id=account_id,
                    month_start=month_start,
                    starting_balance=starting_balance,
                    credits_granted=0,
                    credits_spent=0,
                    created_at=ts,
                    updated_at=ts,
                )
            )
    except IntegrityError:
        logger.debug("[ledger] snapshot already created concurrently", extra={"account_id": account_id})

    return get_snapshot(db, account_id, month_start)


def close_monthly_snapshot(db: Session, account_id: str, month_start: datetime) -> Optional[MonthlySnapshot]:
    """Fill the informational month-end fields of an existing snapshot."""
    month_start = ensure_utc(month_start)
    snapshot = get_snapshot(db, account_id, month_start)
    if not snapshot:
        return None

    month_end = start_of_next_month(month_start)
    amount = credit_transactions.c.amount_credits
    granted, spent = db.execute(
        select(
            func.coalesce(func.sum(case((amount > 0, amount), else_=0)), 0),
            func.coalesce(func.sum(case((amount < 0, -amount), else_=0)), 0),
        ).where(
            credit_transactions.c.account_id == account_id,
            credit_transactions.c.created_at >= month_start,
            credit_transactions.c.created_at < month_end,
        )
    ).one()

    with transactional(db):
        db.execute(
            update(monthly_balances)
            .where(
                monthly_balances.c.account_id == account_id,
                monthly_balances.c.month_start == month_start,
            )
            .values(
                credits_granted=int(granted),
                credits_spent=int(spent),
                ending_balance=snapshot.starting_balance + int(granted) - int(spent),
                updated_at=utc_now(),
            )
        )

    return get_snapshot(db, account_id, month_start)
