"""
Payment provider protocol.

Defines the interface for subscription payment providers (Stripe, PayPal).
This allows swapping providers without changing subscription logic.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from charachat.models.plan import PaymentProviderName, Plan


class WebhookAction(str, Enum):
    """What a provider event means for the account's subscription record."""
    ACTIVATED = "ACTIVATED"
    CANCELLED = "CANCELLED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    NONE = "NONE"


@dataclass
class WebhookResult:
    """Provider event normalized for process_subscription_webhook."""
    event_id: str
    event_type: str
    action: WebhookAction
    provider: PaymentProviderName
    account_id: Optional[str] = None
    plan_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    next_billing_at: Optional[datetime] = None
    external_plan_id: Optional[str] = None  # Stripe price id / PayPal plan id
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CheckoutResult:
    """What the client needs to finish paying for a new subscription."""
    subscription_id: str
    provider: PaymentProviderName
    client_secret: Optional[str] = None  # Stripe
    approval_url: Optional[str] = None  # PayPal
    customer_id: Optional[str] = None


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle:
    - Subscription creation (checkout)
    - Cancellation, reactivation and plan changes
    - Webhook signature verification and parsing
    """

    name: PaymentProviderName

    def create_subscription(
        self,
        account_id: str,
        plan: Plan,
        email: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Start a subscription for the account.

        Raises:
            PaymentProviderError: If the provider rejects the request
        """
        ...

    def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None) -> None:
        ...

    def reactivate_subscription(self, subscription_id: str) -> None:
        ...

    def change_plan(self, subscription_id: str, new_plan: Plan) -> None:
        ...

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookResult:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include the signature headers)
            body: Raw webhook body (for signature verification)

        Raises:
            PaymentWebhookError: If signature invalid or parsing fails
        """
        ...


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""
    pass


class PaymentWebhookError(PaymentProviderError):
    """Exception for webhook verification and parsing errors."""
    pass
