"""
Account lifecycle hooks called by the auth service.

- POST /api/v1/accounts/signup: first plan record + initial credits (idempotent)
- POST /api/v1/accounts/login: FREE plan monthly grant when the cycle elapsed
"""
import logging
from typing import Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from charachat.core.auth import get_current_account_id
from charachat.core.database import get_db
from charachat.features.credits.ledger import get_current_balance
from charachat.features.plans.cycle import grant_free_monthly_credits_on_login, grant_initial_credits

logger = logging.getLogger("charachat")

router = APIRouter(prefix="/api/v1/accounts", tags=["accounts"])


@router.post("/signup")
def signup(account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)) -> Dict:
    user_plan = grant_initial_credits(db, account_id)
    return {
        "plan_id": user_plan.plan_id,
        "current_period_end": user_plan.current_period_end,
        "balance": get_current_balance(db, account_id),
    }


@router.post("/login")
def login(account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)) -> Dict:
    granted = grant_free_monthly_credits_on_login(db, account_id)
    if granted:
        logger.info("[accounts] login grant applied", extra={"account_id": account_id})
    return {"monthly_credits_granted": granted, "balance": get_current_balance(db, account_id)}
