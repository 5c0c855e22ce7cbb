"""
Subscription API routes.

- GET  /api/v1/subscriptions/plans
- POST /api/v1/subscriptions/subscribe
- POST /api/v1/subscriptions/cancel
- POST /api/v1/subscriptions/reactivate
- POST /api/v1/subscriptions/change-plan
- GET  /api/v1/subscriptions/status

Provider failures map to 502; provider not configured maps to 503.
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from charachat.core.auth import get_current_account_id
from charachat.core.database import get_db
from charachat.features.billing.provider import PaymentProviderError
from charachat.features.plans.service import list_plans
from charachat.features.subscriptions.service import (
    cancel_subscription,
    change_plan,
    get_subscription_status,
    reactivate_subscription,
    subscribe_to_plan,
)
from charachat.models.plan import UserPlan

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


class SubscribeRequest(BaseModel):
    plan_id: str
    email: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ChangePlanRequest(BaseModel):
    plan_id: str


def _provider_failure(e: PaymentProviderError) -> HTTPException:
    if "not configured" in str(e):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


def _plan_summary(user_plan: UserPlan) -> Dict:
    return {
        "plan_id": user_plan.plan_id,
        "status": user_plan.status,
        "current_period_end": user_plan.current_period_end,
        "cancel_at_period_end": user_plan.cancel_at_period_end,
    }


@router.get("/plans")
def plans(db: Session = Depends(get_db)) -> Dict:
    return {"plans": list_plans(db)}


@router.post("/subscribe")
def subscribe(
    body: SubscribeRequest,
    account_id: str = Depends(get_current_account_id),
    db: Session = Depends(get_db),
) -> Dict:
    """
    Start checkout for a paid plan.

    Returns a Stripe client_secret or a PayPal approval_url. Credits are
    granted once the provider confirms the subscription by webhook.
    """
    try:
        result = subscribe_to_plan(db, account_id, body.plan_id, email=body.email)
    except PaymentProviderError as e:
        raise _provider_failure(e)
    return {
        "subscription_id": result.subscription_id,
        "provider": result.provider,
        "client_secret": result.client_secret,
        "approval_url": result.approval_url,
    }


@router.post("/cancel")
def cancel(
    body: CancelRequest,
    account_id: str = Depends(get_current_account_id),
    db: Session = Depends(get_db),
) -> Dict:
    try:
        user_plan = cancel_subscription(db, account_id, body.reason)
    except PaymentProviderError as e:
        raise _provider_failure(e)
    return _plan_summary(user_plan)


@router.post("/reactivate")
def reactivate(account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)) -> Dict:
    try:
        user_plan = reactivate_subscription(db, account_id)
    except PaymentProviderError as e:
        raise _provider_failure(e)
    return _plan_summary(user_plan)


@router.post("/change-plan")
def change(
    body: ChangePlanRequest,
    account_id: str = Depends(get_current_account_id),
    db: Session = Depends(get_db),
) -> Dict:
    try:
        user_plan = change_plan(db, account_id, body.plan_id)
    except PaymentProviderError as e:
        raise _provider_failure(e)
    return _plan_summary(user_plan)


@router.get("/status")
def status(account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)) -> Dict:
    return get_subscription_status(db, account_id)
