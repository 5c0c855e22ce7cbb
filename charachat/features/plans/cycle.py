"""
Plan credit cycles.

Monthly credits follow a rolling window anchored to the plan's last grant
(CREDIT_CYCLE_DAYS, 30 by default), not the calendar month. A grant and the
plan's last_credits_granted_at update always commit together.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import select, insert, update, or_
from sqlalchemy.orm import Session

from charachat.core.clock import end_of_month, ensure_utc, utc_now, whole_days_between
from charachat.core.config import settings
from charachat.core.database import credit_transactions, plans, transactional, user_plans
from charachat.core.errors import MissingSeedDataError
from charachat.features.credits.ledger import append_transaction, lock_credit_account
from charachat.features.plans.service import (
    demote_active_plans,
    get_plan,
    get_plan_by_tier,
    get_user_current_plan,
    row_to_user_plan,
)
from charachat.models.credits import TransactionKind
from charachat.models.plan import PlanTier, SubscriptionStatus, UserPlan

logger = logging.getLogger("charachat.plans.cycle")


def _now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) if now is not None else utc_now()


def is_eligible_for_monthly_credits(user_plan: UserPlan, *, now: Optional[datetime] = None) -> bool:
    """
    True once a full cycle has passed since the last grant.

    Always False when the plan has never been granted; the initial grant
    goes through grant_initial_credits or subscription activation.
    """
    if user_plan.last_credits_granted_at is None:
        return False
    return whole_days_between(_now(now), user_plan.last_credits_granted_at) >= settings.CREDIT_CYCLE_DAYS


def get_current_period(user_plan: UserPlan, *, now: Optional[datetime] = None) -> int:
    """1 for days 0-29 since the reference date, 2 for days 30-59, and so on."""
    reference = user_plan.last_credits_granted_at or user_plan.created_at
    days = max(whole_days_between(_now(now), reference), 0)
    return days // settings.CREDIT_CYCLE_DAYS + 1


def _mark_granted(db: Session, user_plan_id: str, now: datetime) -> None:
    db.execute(
        update(user_plans)
        .where(user_plans.c.id == user_plan_id)
        .values(last_credits_granted_at=now, updated_at=now)
    )


def _grant_for_plan_row(db: Session, user_plan_id: str, now: datetime) -> bool:
    """Lock one user plan, re-check eligibility, grant and stamp it."""
    with transactional(db):
        row = db.execute(
            select(user_plans).where(user_plans.c.id == user_plan_id).with_for_update()
        ).first()
        if not row or row.status != SubscriptionStatus.ACTIVE.value:
            return False

        plan = get_plan(db, row.plan_id)
        if not plan:
            return False

        user_plan = row_to_user_plan(row, plan)
        if user_plan.last_credits_granted_at is not None and not is_eligible_for_monthly_credits(user_plan, now=now):
            return False

        append_transaction(
            db,
            row.account_id,
            TransactionKind.GRANT_PLAN,
            plan.credits_per_month,
            notes=f"Monthly credits: {plan.name}",
            related_plan_id=plan.plan_id,
            now=now,
        )
        _mark_granted(db, user_plan_id, now)

    logger.info(
        "[cycle] monthly credits granted",
        extra={"account_id": row.account_id, "plan_id": plan.plan_id, "amount": plan.credits_per_month},
    )
    return True


def grant_monthly_credits(
    db: Session,
    account_id: str,
    plan_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """
    Grant the current plan's monthly credits if its cycle has elapsed.

    plan_id restricts the lookup to one plan. No current plan is a no-op.
    Returns whether a grant occurred.
    """
    now = _now(now)
    stmt = (
        select(user_plans.c.id)
        .where(
            user_plans.c.account_id == account_id,
            user_plans.c.status == SubscriptionStatus.ACTIVE.value,
            user_plans.c.current_period_end > now,
        )
        .order_by(user_plans.c.created_at.desc())
        .limit(1)
    )
    if plan_id:
        stmt = stmt.where(user_plans.c.plan_id == plan_id)

    user_plan_id = db.execute(stmt).scalar()
    if not user_plan_id:
        return False
    return _grant_for_plan_row(db, user_plan_id, now)


def _active_free_rows(account_id: Optional[str] = None):
    stmt = (
        select(user_plans)
        .join(plans, plans.c.plan_id == user_plans.c.plan_id)
        .where(
            user_plans.c.status == SubscriptionStatus.ACTIVE.value,
            plans.c.tier == PlanTier.FREE.value,
        )
    )
    if account_id:
        stmt = stmt.where(user_plans.c.account_id == account_id)
    return stmt


def renew_free_plan_cycles(db: Session, *, now: Optional[datetime] = None, account_id: Optional[str] = None) -> int:
    """
    Roll ACTIVE FREE plans whose cycle ended forward to the end of this month.

    Free plans have no billing provider to renew them. Returns the number
    of plans renewed.
    """
    now = _now(now)
    rows = db.execute(
        _active_free_rows(account_id).where(user_plans.c.current_period_end <= now)
    ).fetchall()
    if not rows:
        return 0

    with transactional(db):
        for row in rows:
            db.execute(
                update(user_plans)
                .where(user_plans.c.id == row.id)
                .values(current_period_start=now, current_period_end=end_of_month(now), updated_at=now)
            )

    logger.info("[cycle] free plan cycles renewed", extra={"count": len(rows)})
    return len(rows)


def grant_free_monthly_credits_on_login(db: Session, account_id: str, *, now: Optional[datetime] = None) -> bool:
    """
    Login-triggered grant for accounts on the FREE plan.

    Returns whether a grant occurred.
    """
    now = _now(now)
    renew_free_plan_cycles(db, now=now, account_id=account_id)

    row = db.execute(
        _active_free_rows(account_id)
        .where(user_plans.c.current_period_end > now)
        .order_by(user_plans.c.created_at.desc())
        .limit(1)
    ).first()
    if not row:
        return False
    return _grant_for_plan_row(db, row.id, now)


def _initial_grant_recorded(db: Session, account_id: str) -> bool:
    return db.execute(
        select(credit_transactions.c.id).where(
            credit_transactions.c.account_id == account_id,
            credit_transactions.c.transaction_type == TransactionKind.GRANT_INITIAL.value,
        )
    ).first() is not None


def grant_initial_credits(db: Session, account_id: str, *, now: Optional[datetime] = None) -> UserPlan:
    """
    Signup grant: FREE plan credits plus the account's first plan record.

    The cycle runs from now to the end of the current month and the 30-day
    grant clock starts immediately. Repeated signups return the current plan
    without granting again; if that plan has lapsed, a fresh FREE record
    replaces any stale ACTIVE ones.

    Raises:
        MissingSeedDataError: the FREE plan was never seeded
    """
    now = _now(now)
    free_plan = get_plan_by_tier(db, PlanTier.FREE)
    if not free_plan:
        raise MissingSeedDataError("FREE plan not found; run plan seeding")

    if _initial_grant_recorded(db, account_id):
        existing = get_user_current_plan(db, account_id, now=now)
        if existing:
            logger.warning("[cycle] initial credits already granted", extra={"account_id": account_id})
            return existing

    user_plan_id = str(uuid4())
    period_end = end_of_month(now)
    with transactional(db):
        # Concurrent signups for one account serialize here
        lock_credit_account(db, account_id, now)
        already_granted = _initial_grant_recorded(db, account_id)
        if already_granted:
            existing = get_user_current_plan(db, account_id, now=now)
            if existing:
                logger.warning("[cycle] initial credits already granted", extra={"account_id": account_id})
                return existing

        demote_active_plans(db, account_id, now)
        db.execute(
            insert(user_plans).values(
                id=user_plan_id,
                account_id=account_id,
                plan_id=free_plan.plan_id,
                status=SubscriptionStatus.ACTIVE.value,
                payment_provider=None,
                current_period_start=now,
                current_period_end=period_end,
                last_credits_granted_at=now,
                cancel_at_period_end=False,
                created_at=now,
                updated_at=now,
            )
        )
        if not already_granted:
            append_transaction(
                db,
                account_id,
                TransactionKind.GRANT_INITIAL,
                free_plan.credits_per_month,
                notes="Initial signup credits",
                related_plan_id=free_plan.plan_id,
                now=now,
            )

    if already_granted:
        logger.info("[cycle] lapsed free plan replaced", extra={"account_id": account_id})
    else:
        logger.info(
            "[cycle] initial credits granted",
            extra={"account_id": account_id, "amount": free_plan.credits_per_month},
        )
    return UserPlan(
        id=user_plan_id,
        account_id=account_id,
        plan_id=free_plan.plan_id,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=now,
        current_period_end=period_end,
        last_credits_granted_at=now,
        created_at=now,
        plan=free_plan,
    )


def list_due_paid_plans(db: Session, *, now: Optional[datetime] = None) -> List[Tuple[str, str]]:
    """(account_id, plan_id) for ACTIVE paid plans whose grant window has elapsed."""
    now = _now(now)
    cutoff = now - timedelta(days=settings.CREDIT_CYCLE_DAYS)
    rows = db.execute(
        select(user_plans.c.account_id, user_plans.c.plan_id)
        .join(plans, plans.c.plan_id == user_plans.c.plan_id)
        .where(
            user_plans.c.status == SubscriptionStatus.ACTIVE.value,
            user_plans.c.current_period_end > now,
            plans.c.tier != PlanTier.FREE.value,
            or_(
                user_plans.c.last_credits_granted_at.is_(None),
                user_plans.c.last_credits_granted_at <= cutoff,
            ),
        )
    ).fetchall()
    return [(row.account_id, row.plan_id) for row in rows]
