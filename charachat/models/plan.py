"""
charachat/models/plan.py

Plan catalog and subscription records.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class PlanTier(str, Enum):
    FREE = "FREE"
    PLUS = "PLUS"
    PREMIUM = "PREMIUM"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER = [PlanTier.FREE, PlanTier.PLUS, PlanTier.PREMIUM]


class PaymentProviderName(str, Enum):
    STRIPE = "STRIPE"
    PAYPAL = "PAYPAL"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


class Plan(BaseModel):
    """
    A billing tier. Seeded reference data, never written at runtime.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    tier: PlanTier
    name: str
    price_monthly: Decimal = Decimal("0")
    credits_per_month: int
    description: Optional[str] = None
    payment_provider: Optional[PaymentProviderName] = None
    stripe_price_id: Optional[str] = None
    paypal_plan_id: Optional[str] = None
    is_active: bool = True

    @property
    def is_free(self) -> bool:
        return self.tier == PlanTier.FREE


class UserPlan(BaseModel):
    """
    An account's enrollment in a plan.

    Constraint: at most one ACTIVE row per account.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    plan_id: str
    status: SubscriptionStatus
    payment_provider: Optional[PaymentProviderName] = None
    current_period_start: datetime
    current_period_end: datetime
    last_credits_granted_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    paypal_subscription_id: Optional[str] = None
    created_at: datetime
    plan: Optional[Plan] = None

    @property
    def external_subscription_id(self) -> Optional[str]:
        if self.payment_provider == PaymentProviderName.STRIPE:
            return self.stripe_subscription_id
        if self.payment_provider == PaymentProviderName.PAYPAL:
            return self.paypal_subscription_id
        return None
