"""
charachat/models/credits.py

Credit ledger models.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class TransactionKind(str, Enum):
    GRANT_INITIAL = "GRANT_INITIAL"
    GRANT_PLAN = "GRANT_PLAN"
    SYSTEM_REWARD = "SYSTEM_REWARD"
    CONSUMPTION = "CONSUMPTION"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"


class ClaimKind(str, Enum):
    """Once-per-day rewards. The value doubles as the transaction note."""
    DAILY_LOGIN = "daily_login_reward"
    DAILY_FIRST_CHAT = "daily_first_chat_reward"


class CreditTransaction(BaseModel):
    """
    One immutable ledger row.

    balance_after equals the previous row's balance_after plus amount
    (or amount itself for the account's first row).
    """
    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    sequence: int
    kind: TransactionKind
    amount: int
    balance_after: int
    notes: Optional[str] = None
    related_usage_log_id: Optional[str] = None
    related_plan_id: Optional[str] = None
    created_at: datetime


class TransactionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction: CreditTransaction
    new_balance: int


class RewardGrant(BaseModel):
    model_config = ConfigDict(frozen=True)

    credits_granted: int
    new_balance: int


class RewardStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    claimed: bool
    can_claim_at: datetime


class MonthlySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    month_start: datetime
    starting_balance: int
    ending_balance: Optional[int] = None
    credits_granted: int = 0
    credits_spent: int = 0
