"""
Credits API routes.

- GET  /api/v1/credits/balance
- GET  /api/v1/credits/transactions
- POST /api/v1/credits/daily-reward
- GET  /api/v1/credits/daily-reward/status
- GET  /api/v1/credits/first-chat-reward/status
- GET  /api/v1/credits/service-costs
- POST /api/v1/credits/estimate-cost
- GET  /api/v1/credits/usage
- GET  /api/v1/credits/plan
- POST /api/v1/credits/check-balance
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from charachat.core.auth import get_current_account_id
from charachat.core.database import get_db
from charachat.features.credits.ledger import get_current_balance, get_transaction_history
from charachat.features.credits.rewards import (
    claim_daily_reward,
    get_daily_reward_status,
    get_first_chat_reward_status,
)
from charachat.features.plans.cycle import get_current_period, is_eligible_for_monthly_credits
from charachat.features.plans.service import get_user_current_plan
from charachat.features.usage.service import (
    estimate_service_cost,
    get_service_costs,
    get_user_monthly_usage,
)
from charachat.models.credits import TransactionKind
from charachat.models.usage import ServiceKind, UsageMetrics

router = APIRouter(prefix="/api/v1/credits", tags=["credits"])


class EstimateCostRequest(BaseModel):
    service_type: ServiceKind
    metrics: UsageMetrics = Field(default_factory=UsageMetrics)


class CheckBalanceRequest(BaseModel):
    required_credits: int = Field(ge=0)


@router.get("/balance")
def balance(account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)) -> Dict:
    return {"balance": get_current_balance(db, account_id)}


@router.get("/transactions")
def transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    type: Optional[TransactionKind] = Query(None),
    account_id: str = Depends(get_current_account_id),
    db: Session = Depends(get_db),
) -> Dict:
    """Ledger history, newest first."""
    items, total = get_transaction_history(db, account_id, limit=limit, offset=offset, kind=type)
    return {"transactions": items, "total": total, "limit": limit, "offset": offset}


@router.post("/daily-reward")
def daily_reward(account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)) -> Dict:
    """
    Claim the daily login reward.

    Errors:
        409 already_claimed: includes can_claim_at (next UTC midnight)
    """
    grant = claim_daily_reward(db, account_id)
    return {"credits_granted": grant.credits_granted, "new_balance": grant.new_balance}


@router.get("/daily-reward/status")
def daily_reward_status(account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)) -> Dict:
    status = get_daily_reward_status(db, account_id)
    return {"claimed": status.claimed, "can_claim_at": status.can_claim_at}


@router.get("/first-chat-reward/status")
def first_chat_reward_status(account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)) -> Dict:
    status = get_first_chat_reward_status(db, account_id)
    return {"claimed": status.claimed, "can_claim_at": status.can_claim_at}


@router.get("/service-costs")
def service_costs(db: Session = Depends(get_db)) -> Dict:
    return {"service_costs": get_service_costs(db)}


@router.post("/estimate-cost")
def estimate_cost(
    body: EstimateCostRequest,
    account_id: str = Depends(get_current_account_id),
    db: Session = Depends(get_db),
) -> Dict:
    estimated = estimate_service_cost(db, body.service_type, body.metrics)
    current = get_current_balance(db, account_id)
    return {
        "service_type": body.service_type,
        "estimated_credits": estimated,
        "current_balance": current,
        "has_enough": current >= estimated,
    }


@router.get("/usage")
def usage(account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)) -> Dict[str, Any]:
    return get_user_monthly_usage(db, account_id)


@router.get("/plan")
def plan(account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)) -> Dict:
    """Current plan with its credit cycle position."""
    current = get_user_current_plan(db, account_id)
    if not current:
        return {"plan": None, "user_plan": None, "current_period": None, "eligible_for_monthly_credits": False}
    return {
        "plan": current.plan,
        "user_plan": current.model_dump(exclude={"plan"}),
        "current_period": get_current_period(current),
        "eligible_for_monthly_credits": is_eligible_for_monthly_credits(current),
    }


@router.post("/check-balance")
def check_balance(
    body: CheckBalanceRequest,
    account_id: str = Depends(get_current_account_id),
    db: Session = Depends(get_db),
) -> Dict:
    current = get_current_balance(db, account_id)
    return {
        "balance": current,
        "required": body.required_credits,
        "has_enough": current >= body.required_credits,
    }
