"""
charachat/features/plans/service.py

Plan catalog and current-plan lookups.

Handles:
- Plan seeding (free, plus, premium)
- Catalog lookups by id, tier or payment provider id
- Current plan resolution for an account
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from charachat.core.clock import ensure_utc, utc_now
from charachat.core.config import settings
from charachat.core.database import plans, user_plans
from charachat.models.plan import (
    PaymentProviderName,
    Plan,
    PlanTier,
    SubscriptionStatus,
    UserPlan,
)


# Default plan configurations
DEFAULT_PLANS = {
    "free": {
        "tier": PlanTier.FREE,
        "name": "Free",
        "price_monthly": Decimal("0"),
        "credits_per_month": 50,
        "description": "Monthly starter credits at no cost",
        "payment_provider": None,
    },
    "plus": {
        "tier": PlanTier.PLUS,
        "name": "Plus",
        "price_monthly": Decimal("9.99"),
        "credits_per_month": 100,
        "description": "More credits every cycle",
        "payment_provider": PaymentProviderName.STRIPE,
    },
    "premium": {
        "tier": PlanTier.PREMIUM,
        "name": "Premium",
        "price_monthly": Decimal("29.99"),
        "credits_per_month": 500,
        "description": "The largest monthly allowance and doubled daily rewards",
        "payment_provider": PaymentProviderName.STRIPE,
    },
}


def _external_ids(plan_id: str) -> dict:
    if plan_id == "plus":
        return {"stripe_price_id": settings.STRIPE_PRICE_PLUS, "paypal_plan_id": settings.PAYPAL_PLAN_PLUS}
    if plan_id == "premium":
        return {"stripe_price_id": settings.STRIPE_PRICE_PREMIUM, "paypal_plan_id": settings.PAYPAL_PLAN_PREMIUM}
    return {"stripe_price_id": None, "paypal_plan_id": None}


def seed_plans(db: Session) -> None:
    """
    Seed default plans into database (idempotent).

    Existing plans are left untouched except for missing provider ids,
    which are filled from configuration. Safe to call multiple times.
    """
    now = utc_now()

    for plan_id, config in DEFAULT_PLANS.items():
        external_ids = _external_ids(plan_id)
        existing = db.execute(
            select(plans).where(plans.c.plan_id == plan_id)
        ).first()

        if not existing:
            db.execute(
                insert(plans).values(
                    plan_id=plan_id,
                    tier=config["tier"].value,
                    name=config["name"],
                    price_monthly=config["price_monthly"],
                    credits_per_month=config["credits_per_month"],
                    description=config["description"],
                    payment_provider=config["payment_provider"].value if config["payment_provider"] else None,
                    is_active=True,
                    created_at=now,
                    **external_ids,
                )
            )
            continue

        missing = {key: value for key, value in external_ids.items() if value and not getattr(existing, key)}
        if missing:
            db.execute(update(plans).where(plans.c.plan_id == plan_id).values(**missing))

    db.commit()


def _row_to_plan(row) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        tier=PlanTier(row.tier),
        name=row.name,
        price_monthly=Decimal(str(row.price_monthly)),
        credits_per_month=row.credits_per_month,
        description=row.description,
        payment_provider=PaymentProviderName(row.payment_provider) if row.payment_provider else None,
        stripe_price_id=row.stripe_price_id,
        paypal_plan_id=row.paypal_plan_id,
        is_active=bool(row.is_active),
    )


def row_to_user_plan(row, plan: Optional[Plan] = None) -> UserPlan:
    return UserPlan(
        id=row.id,
        account_id=row.account_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        payment_provider=PaymentProviderName(row.payment_provider) if row.payment_provider else None,
        current_period_start=ensure_utc(row.current_period_start),
        current_period_end=ensure_utc(row.current_period_end),
        last_credits_granted_at=ensure_utc(row.last_credits_granted_at),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        canceled_at=ensure_utc(row.canceled_at),
        stripe_subscription_id=row.stripe_subscription_id,
        stripe_customer_id=row.stripe_customer_id,
        paypal_subscription_id=row.paypal_subscription_id,
        created_at=ensure_utc(row.created_at),
        plan=plan,
    )


def get_plan(db: Session, plan_id: str) -> Optional[Plan]:
    """Get plan by ID."""
    row = db.execute(select(plans).where(plans.c.plan_id == plan_id)).first()
    return _row_to_plan(row) if row else None


def get_plan_by_tier(db: Session, tier: Union[PlanTier, str]) -> Optional[Plan]:
    row = db.execute(select(plans).where(plans.c.tier == PlanTier(tier).value)).first()
    return _row_to_plan(row) if row else None


def get_plan_by_external_id(
    db: Session,
    provider: Union[PaymentProviderName, str],
    external_id: str,
) -> Optional[Plan]:
    """Resolve a Stripe price id or PayPal plan id to a catalog plan."""
    provider = PaymentProviderName(provider)
    column = plans.c.stripe_price_id if provider == PaymentProviderName.STRIPE else plans.c.paypal_plan_id
    row = db.execute(select(plans).where(column == external_id)).first()
    return _row_to_plan(row) if row else None


def list_plans(db: Session, active_only: bool = True) -> List[Plan]:
    stmt = select(plans)
    if active_only:
        stmt = stmt.where(plans.c.is_active == True)  # noqa: E712
    rows = db.execute(stmt).fetchall()
    return sorted((_row_to_plan(row) for row in rows), key=lambda plan: plan.tier.rank)


def get_user_current_plan(db: Session, account_id: str, *, now: Optional[datetime] = None) -> Optional[UserPlan]:
    """
    The account's current plan: the most recent ACTIVE row whose cycle has not ended.

    Returns None if the account has no such row.
    """
    now = ensure_utc(now) if now is not None else utc_now()
    row = db.execute(
        select(user_plans)
        .where(
            user_plans.c.account_id == account_id,
            user_plans.c.status == SubscriptionStatus.ACTIVE.value,
            user_plans.c.current_period_end > now,
        )
        .order_by(user_plans.c.created_at.desc())
        .limit(1)
    ).first()
    if not row:
        return None
    return row_to_user_plan(row, get_plan(db, row.plan_id))


def get_latest_user_plan(db: Session, account_id: str) -> Optional[UserPlan]:
    """Most recent subscription record in any status."""
    row = db.execute(
        select(user_plans)
        .where(user_plans.c.account_id == account_id)
        .order_by(user_plans.c.created_at.desc())
        .limit(1)
    ).first()
    if not row:
        return None
    return row_to_user_plan(row, get_plan(db, row.plan_id))


def demote_active_plans(db: Session, account_id: str, now: datetime, keep_id: Optional[str] = None) -> None:
    """Mark every ACTIVE plan of the account except keep_id CANCELED (does not commit)."""
    stmt = update(user_plans).where(
        user_plans.c.account_id == account_id,
        user_plans.c.status == SubscriptionStatus.ACTIVE.value,
    )
    if keep_id:
        stmt = stmt.where(user_plans.c.id != keep_id)
    db.execute(stmt.values(status=SubscriptionStatus.CANCELED.value, canceled_at=now, updated_at=now))


def is_user_premium(db: Session, account_id: str, *, now: Optional[datetime] = None) -> bool:
    current = get_user_current_plan(db, account_id, now=now)
    return bool(current and current.plan and current.plan.tier == PlanTier.PREMIUM)


def is_user_plus_or_better(db: Session, account_id: str, *, now: Optional[datetime] = None) -> bool:
    current = get_user_current_plan(db, account_id, now=now)
    return bool(current and current.plan and current.plan.tier.rank >= PlanTier.PLUS.rank)
