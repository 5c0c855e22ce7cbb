"""
Subscription lifecycle.

Coordinates:
- Checkout and plan changes with the payment provider
- Activation (demote old plans, record the new one, grant its credits)
- Cancellation and reactivation
- Provider webhook processing (idempotent per provider event id)

All provider-specific code lives in features/billing.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import select, insert, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from charachat.core.clock import ensure_utc, utc_now
from charachat.core.config import settings
from charachat.core.database import billing_events, transactional, user_plans
from charachat.core.errors import (
    ConflictError,
    NoActiveSubscriptionError,
    PlanNotFoundError,
    ValidationError,
)
from charachat.features.billing.factory import get_payment_provider
from charachat.features.billing.provider import (
    CheckoutResult,
    PaymentProvider,
    WebhookAction,
    WebhookResult,
)
from charachat.features.credits.ledger import append_transaction, lock_credit_account
from charachat.features.plans.cycle import grant_monthly_credits
from charachat.features.plans.service import (
    demote_active_plans,
    get_plan,
    get_plan_by_external_id,
    get_plan_by_tier,
    get_user_current_plan,
    row_to_user_plan,
)
from charachat.models.credits import TransactionKind
from charachat.models.plan import PaymentProviderName, PlanTier, SubscriptionStatus, UserPlan

logger = logging.getLogger("charachat.subscriptions")


def _now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) if now is not None else utc_now()


def find_user_plan_by_subscription(db: Session, subscription_id: str) -> Optional[UserPlan]:
    """Most recent plan record carrying this Stripe or PayPal subscription id."""
    row = db.execute(
        select(user_plans)
        .where(
            or_(
                user_plans.c.stripe_subscription_id == subscription_id,
                user_plans.c.paypal_subscription_id == subscription_id,
            )
        )
        .order_by(user_plans.c.created_at.desc())
        .limit(1)
    ).first()
    if not row:
        return None
    return row_to_user_plan(row, get_plan(db, row.plan_id))


def activate_subscription(
    db: Session,
    account_id: str,
    plan_id: str,
    subscription_id: str,
    *,
    provider: Optional[PaymentProviderName] = None,
    customer_id: Optional[str] = None,
    next_billing_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> UserPlan:
    """
    Record a provider-confirmed subscription as the account's plan.

    In one database transaction: every ACTIVE plan of the account becomes
    CANCELED, a new ACTIVE plan is inserted (period ends at the provider's
    next billing time, or SUBSCRIPTION_FALLBACK_DAYS from now) and the plan's
    monthly credits are granted. Repeated calls for the same external
    subscription return the existing record.

    Raises:
        PlanNotFoundError: plan_id is not in the catalog
    """
    now = _now(now)
    plan = get_plan(db, plan_id)
    if not plan:
        raise PlanNotFoundError(f"Plan {plan_id} not found")

    existing = find_user_plan_by_subscription(db, subscription_id)
    if existing:
        logger.info(
            "[subscriptions] activation already recorded",
            extra={"account_id": account_id, "subscription_id": subscription_id},
        )
        return existing

    provider = PaymentProviderName(provider or plan.payment_provider or PaymentProviderName.STRIPE)
    next_billing_at = ensure_utc(next_billing_at)
    if next_billing_at is None or next_billing_at <= now:
        next_billing_at = now + timedelta(days=settings.SUBSCRIPTION_FALLBACK_DAYS)

    user_plan_id = str(uuid4())
    values: Dict[str, Any] = {
        "id": user_plan_id,
        "account_id": account_id,
        "plan_id": plan.plan_id,
        "status": SubscriptionStatus.ACTIVE.value,
        "payment_provider": provider.value,
        "current_period_start": now,
        "current_period_end": next_billing_at,
        "last_credits_granted_at": now,
        "cancel_at_period_end": False,
        "created_at": now,
        "updated_at": now,
    }
    if provider == PaymentProviderName.PAYPAL:
        values["paypal_subscription_id"] = subscription_id
    else:
        values["stripe_subscription_id"] = subscription_id
        values["stripe_customer_id"] = customer_id

    try:
        with transactional(db):
            # Concurrent deliveries of the same subscription serialize here
            lock_credit_account(db, account_id, now)
            existing = find_user_plan_by_subscription(db, subscription_id)
            if existing:
                logger.info(
                    "[subscriptions] activation already recorded",
                    extra={"account_id": account_id, "subscription_id": subscription_id},
                )
                return existing

            demote_active_plans(db, account_id, now)
            db.execute(insert(user_plans).values(**values))
            append_transaction(
                db,
                account_id,
                TransactionKind.GRANT_PLAN,
                plan.credits_per_month,
                notes=f"Monthly credits: {plan.name}",
                related_plan_id=plan.plan_id,
                now=now,
            )
    except IntegrityError:
        existing = find_user_plan_by_subscription(db, subscription_id)
        if not existing:
            raise
        logger.info(
            "[subscriptions] activation recorded concurrently",
            extra={"account_id": account_id, "subscription_id": subscription_id},
        )
        return existing

    logger.info(
        "[subscriptions] subscription activated",
        extra={
            "account_id": account_id,
            "plan_id": plan.plan_id,
            "subscription_id": subscription_id,
            "amount": plan.credits_per_month,
        },
    )
    return find_user_plan_by_subscription(db, subscription_id)


def _stored_customer_id(db: Session, account_id: str) -> Optional[str]:
    return db.execute(
        select(user_plans.c.stripe_customer_id)
        .where(
            user_plans.c.account_id == account_id,
            user_plans.c.stripe_customer_id.isnot(None),
        )
        .order_by(user_plans.c.created_at.desc())
        .limit(1)
    ).scalar()


def _current_paid_plan(db: Session, account_id: str, now: datetime) -> UserPlan:
    current = get_user_current_plan(db, account_id, now=now)
    if not current or not current.payment_provider or not current.external_subscription_id:
        raise NoActiveSubscriptionError("No active subscription found")
    return current


def subscribe_to_plan(
    db: Session,
    account_id: str,
    plan_id: str,
    *,
    email: Optional[str] = None,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    """
    Start a paid subscription, or switch plans if one is already running.

    The plan only becomes active once the provider confirms payment via webhook.
    """
    now = _now(now)
    plan = get_plan(db, plan_id)
    if not plan or not plan.is_active:
        raise PlanNotFoundError(f"Plan {plan_id} not found or not active")
    if plan.is_free:
        raise ValidationError("The free plan does not need a subscription")

    current = get_user_current_plan(db, account_id, now=now)
    if current:
        if current.plan_id == plan_id:
            raise ConflictError("Already subscribed to this plan")
        if current.payment_provider and current.plan and not current.plan.is_free:
            change_plan(db, account_id, plan_id, provider=provider, now=now)
            return CheckoutResult(
                subscription_id=current.external_subscription_id or "",
                provider=current.payment_provider,
            )

    provider = provider or get_payment_provider(plan.payment_provider or PaymentProviderName.STRIPE)
    result = provider.create_subscription(
        account_id,
        plan,
        email=email,
        customer_id=_stored_customer_id(db, account_id),
    )
    logger.info(
        "[subscriptions] subscription initiated",
        extra={"account_id": account_id, "plan_id": plan_id, "subscription_id": result.subscription_id},
    )
    return result


def cancel_subscription(
    db: Session,
    account_id: str,
    reason: Optional[str] = None,
    *,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
) -> UserPlan:
    """Cancel the paid plan at period end with the provider and mark it CANCELED."""
    now = _now(now)
    current = _current_paid_plan(db, account_id, now)

    provider = provider or get_payment_provider(current.payment_provider)
    provider.cancel_subscription(current.external_subscription_id, reason)

    with transactional(db):
        db.execute(
            update(user_plans)
            .where(user_plans.c.id == current.id)
            .values(
                status=SubscriptionStatus.CANCELED.value,
                cancel_at_period_end=True,
                canceled_at=now,
                updated_at=now,
            )
        )

    logger.info(
        "[subscriptions] subscription canceled",
        extra={"account_id": account_id, "subscription_id": current.external_subscription_id},
    )
    return find_user_plan_by_subscription(db, current.external_subscription_id)


def reactivate_subscription(
    db: Session,
    account_id: str,
    *,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
) -> UserPlan:
    """
    Undo a pending cancellation.

    Any other ACTIVE plan of the account is demoted so exactly one ACTIVE
    plan remains.
    """
    now = _now(now)
    row = db.execute(
        select(user_plans)
        .where(
            user_plans.c.account_id == account_id,
            user_plans.c.status == SubscriptionStatus.CANCELED.value,
            user_plans.c.cancel_at_period_end == True,  # noqa: E712
            user_plans.c.current_period_end > now,
            user_plans.c.payment_provider.isnot(None),
        )
        .order_by(user_plans.c.created_at.desc())
        .limit(1)
    ).first()
    if not row:
        raise NoActiveSubscriptionError("No subscription pending cancellation found")

    pending = row_to_user_plan(row)
    if not pending.external_subscription_id:
        raise NoActiveSubscriptionError("Subscription ID not found")

    provider = provider or get_payment_provider(pending.payment_provider)
    provider.reactivate_subscription(pending.external_subscription_id)

    with transactional(db):
        demote_active_plans(db, account_id, now, keep_id=pending.id)
        db.execute(
            update(user_plans)
            .where(user_plans.c.id == pending.id)
            .values(
                status=SubscriptionStatus.ACTIVE.value,
                cancel_at_period_end=False,
                canceled_at=None,
                updated_at=now,
            )
        )

    logger.info(
        "[subscriptions] subscription reactivated",
        extra={"account_id": account_id, "subscription_id": pending.external_subscription_id},
    )
    return find_user_plan_by_subscription(db, pending.external_subscription_id)


def change_plan(
    db: Session,
    account_id: str,
    new_plan_id: str,
    *,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
) -> UserPlan:
    """Move a running paid subscription to another plan of the same provider."""
    now = _now(now)
    current = _current_paid_plan(db, account_id, now)

    new_plan = get_plan(db, new_plan_id)
    if not new_plan or not new_plan.is_active:
        raise PlanNotFoundError(f"Plan {new_plan_id} not found or not active")
    if new_plan.is_free:
        raise ValidationError("Cancel the subscription to return to the free plan")
    if new_plan.payment_provider and new_plan.payment_provider != current.payment_provider:
        raise ValidationError("Cannot change to a plan with a different payment provider")

    provider = provider or get_payment_provider(current.payment_provider)
    provider.change_plan(current.external_subscription_id, new_plan)

    with transactional(db):
        db.execute(
            update(user_plans)
            .where(user_plans.c.id == current.id)
            .values(plan_id=new_plan.plan_id, updated_at=now)
        )

    logger.info(
        "[subscriptions] plan changed",
        extra={"account_id": account_id, "old_plan_id": current.plan_id, "plan_id": new_plan.plan_id},
    )
    return find_user_plan_by_subscription(db, current.external_subscription_id)


def get_subscription_status(db: Session, account_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Current plan summary; accounts without a plan record read as FREE."""
    now = _now(now)
    current = get_user_current_plan(db, account_id, now=now)

    if not current:
        return {
            "plan": get_plan_by_tier(db, PlanTier.FREE),
            "status": SubscriptionStatus.ACTIVE,
            "is_free": True,
            "payment_provider": None,
            "current_period_start": None,
            "current_period_end": None,
            "cancel_at_period_end": False,
            "canceled_at": None,
        }

    return {
        "plan": current.plan,
        "status": current.status,
        "is_free": bool(current.plan and current.plan.is_free),
        "payment_provider": current.payment_provider,
        "current_period_start": current.current_period_start,
        "current_period_end": current.current_period_end,
        "cancel_at_period_end": current.cancel_at_period_end,
        "canceled_at": current.canceled_at,
    }


def _set_status(db: Session, user_plan: UserPlan, status: SubscriptionStatus, now: datetime) -> None:
    values: Dict[str, Any] = {"status": status.value, "updated_at": now}
    if status == SubscriptionStatus.CANCELED:
        values["canceled_at"] = now
    with transactional(db):
        db.execute(update(user_plans).where(user_plans.c.id == user_plan.id).values(**values))


def _handle_payment_succeeded(db: Session, result: WebhookResult, user_plan: UserPlan, now: datetime) -> None:
    """Renewal: make sure the plan is ACTIVE with a live period, then grant if due."""
    values: Dict[str, Any] = {}
    next_billing_at = ensure_utc(result.next_billing_at)
    if next_billing_at and next_billing_at > now:
        values["current_period_end"] = next_billing_at
    elif user_plan.current_period_end <= now:
        values["current_period_start"] = now
        values["current_period_end"] = now + timedelta(days=settings.SUBSCRIPTION_FALLBACK_DAYS)

    if user_plan.status != SubscriptionStatus.ACTIVE or values:
        with transactional(db):
            if user_plan.status != SubscriptionStatus.ACTIVE:
                demote_active_plans(db, user_plan.account_id, now, keep_id=user_plan.id)
                values["status"] = SubscriptionStatus.ACTIVE.value
            values["updated_at"] = now
            db.execute(update(user_plans).where(user_plans.c.id == user_plan.id).values(**values))

    granted = grant_monthly_credits(db, user_plan.account_id, user_plan.plan_id, now=now)
    logger.info(
        "[subscriptions] payment succeeded",
        extra={"account_id": user_plan.account_id, "subscription_id": result.subscription_id, "granted": granted},
    )


def process_subscription_webhook(db: Session, result: WebhookResult, *, now: Optional[datetime] = None) -> None:
    """Apply a normalized provider event to the account's plan records."""
    now = _now(now)
    logger.info(
        "[subscriptions] processing webhook",
        extra={"action": result.action.value, "subscription_id": result.subscription_id, "account_id": result.account_id},
    )

    if result.action == WebhookAction.NONE:
        return

    if result.action == WebhookAction.ACTIVATED:
        plan_id = result.plan_id
        if not plan_id and result.external_plan_id:
            plan = get_plan_by_external_id(db, result.provider, result.external_plan_id)
            plan_id = plan.plan_id if plan else None
        if not result.account_id or not plan_id or not result.subscription_id:
            logger.error(
                "[subscriptions] activation event missing fields",
                extra={"event_id": result.event_id, "subscription_id": result.subscription_id},
            )
            return
        activate_subscription(
            db,
            result.account_id,
            plan_id,
            result.subscription_id,
            provider=result.provider,
            customer_id=result.customer_id,
            next_billing_at=result.next_billing_at,
            now=now,
        )
        return

    if not result.subscription_id:
        logger.error("[subscriptions] webhook missing subscription id", extra={"event_id": result.event_id})
        return

    user_plan = find_user_plan_by_subscription(db, result.subscription_id)
    if not user_plan:
        logger.warning(
            "[subscriptions] no plan record for subscription",
            extra={"subscription_id": result.subscription_id, "action": result.action.value},
        )
        return

    if result.action == WebhookAction.CANCELLED:
        _set_status(db, user_plan, SubscriptionStatus.CANCELED, now)
        logger.info("[subscriptions] subscription ended", extra={"subscription_id": result.subscription_id})
    elif result.action == WebhookAction.PAYMENT_FAILED:
        _set_status(db, user_plan, SubscriptionStatus.PAYMENT_FAILED, now)
        logger.warning(
            "[subscriptions] payment failed",
            extra={"account_id": user_plan.account_id, "subscription_id": result.subscription_id},
        )
    elif result.action == WebhookAction.PAYMENT_SUCCEEDED:
        _handle_payment_succeeded(db, result, user_plan, now)


def process_webhook_event(
    db: Session,
    provider: PaymentProvider,
    headers: Dict[str, str],
    body: bytes,
) -> WebhookResult:
    """
    Process a provider webhook (idempotent).

    1. Verify signature and parse
    2. Skip events already processed
    3. Apply state changes
    4. Mark as processed (or record the error and re-raise)

    Raises:
        PaymentWebhookError: If signature invalid or parsing fails
    """
    result = provider.parse_webhook(headers, body)
    provider_name = result.provider.value

    existing = db.execute(
        select(billing_events.c.processed).where(
            billing_events.c.provider == provider_name,
            billing_events.c.event_id == result.event_id,
        )
    ).first()
    if existing and existing.processed:
        logger.info("[subscriptions] duplicate webhook skipped", extra={"event_id": result.event_id})
        return result

    if not existing:
        try:
            with transactional(db):
                db.execute(
                    insert(billing_events).values(
                        provider=provider_name,
                        event_id=result.event_id,
                        event_type=result.event_type,
                        received_at=utc_now(),
                        processed=False,
                    )
                )
        except IntegrityError:
            # Another delivery of the same event is being processed
            logger.info("[subscriptions] concurrent webhook delivery skipped", extra={"event_id": result.event_id})
            return result

    event_filter = (billing_events.c.provider == provider_name, billing_events.c.event_id == result.event_id)
    try:
        process_subscription_webhook(db, result)
    except Exception as e:
        db.rollback()
        with transactional(db):
            db.execute(update(billing_events).where(*event_filter).values(error=str(e)))
        raise

    with transactional(db):
        db.execute(
            update(billing_events)
            .where(*event_filter)
            .values(processed=True, processed_at=utc_now(), error=None)
        )
    return result
