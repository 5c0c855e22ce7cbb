"""
Stripe payment provider.

Implements PaymentProvider using the Stripe API.
Handles webhook signature verification and event parsing.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from charachat.core.config import settings
from charachat.features.billing.provider import (
    CheckoutResult,
    PaymentProviderError,
    PaymentWebhookError,
    WebhookAction,
    WebhookResult,
)
from charachat.models.plan import PaymentProviderName, Plan

logger = logging.getLogger("charachat.billing.stripe")


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    name = PaymentProviderName.STRIPE

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def _ensure_customer(self, account_id: str, email: Optional[str], customer_id: Optional[str]) -> str:
        if customer_id:
            try:
                return stripe.Customer.retrieve(customer_id).id
            except stripe.StripeError:
                logger.warning(
                    "[stripe] stored customer not retrievable, creating a new one",
                    extra={"account_id": account_id, "customer_id": customer_id},
                )

        customer_data: Dict[str, Any] = {"metadata": {"userId": account_id, "environment": settings.ENV}}
        if email:
            customer_data["email"] = email
        customer = stripe.Customer.create(**customer_data)
        logger.info("[stripe] customer created", extra={"account_id": account_id, "customer_id": customer.id})
        return customer.id

    def create_subscription(
        self,
        account_id: str,
        plan: Plan,
        email: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> CheckoutResult:
        """Create an incomplete subscription and a PaymentIntent the client confirms."""
        if not plan.stripe_price_id:
            raise PaymentProviderError(f"Plan {plan.plan_id} is not configured for Stripe")

        metadata = {"userId": account_id, "planId": plan.plan_id, "environment": settings.ENV}
        try:
            customer = self._ensure_customer(account_id, email, customer_id)
            subscription = stripe.Subscription.create(
                customer=customer,
                items=[{"price": plan.stripe_price_id}],
                payment_behavior="default_incomplete",
                payment_settings={"save_default_payment_method": "on_subscription"},
                expand=["latest_invoice"],
                metadata=metadata,
            )
            invoice = subscription.latest_invoice
            if not invoice:
                raise PaymentProviderError("Stripe created no invoice for the subscription")

            payment_intent = stripe.PaymentIntent.create(
                amount=invoice.amount_due,
                currency="usd",
                customer=customer,
                payment_method_types=["card"],
                setup_future_usage="off_session",
                metadata={**metadata, "subscriptionId": subscription.id, "invoiceId": invoice.id},
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe subscription creation failed: {e}")

        if not payment_intent.client_secret:
            raise PaymentProviderError("Stripe returned no client secret")

        logger.info(
            "[stripe] subscription created",
            extra={"account_id": account_id, "plan_id": plan.plan_id, "subscription_id": subscription.id},
        )
        return CheckoutResult(
            subscription_id=subscription.id,
            provider=self.name,
            client_secret=payment_intent.client_secret,
            customer_id=customer,
        )

    def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None) -> None:
        """Cancel at period end; the account keeps its plan until then."""
        params: Dict[str, Any] = {"cancel_at_period_end": True}
        if reason:
            params["cancellation_details"] = {"comment": reason}
        try:
            stripe.Subscription.modify(subscription_id, **params)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe cancellation failed: {e}")
        logger.info("[stripe] subscription canceled", extra={"subscription_id": subscription_id})

    def reactivate_subscription(self, subscription_id: str) -> None:
        try:
            stripe.Subscription.modify(subscription_id, cancel_at_period_end=False)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe reactivation failed: {e}")
        logger.info("[stripe] subscription reactivated", extra={"subscription_id": subscription_id})

    def change_plan(self, subscription_id: str, new_plan: Plan) -> None:
        if not new_plan.stripe_price_id:
            raise PaymentProviderError(f"Plan {new_plan.plan_id} is not configured for Stripe")
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
            item_id = subscription["items"]["data"][0]["id"]
            stripe.Subscription.modify(
                subscription_id,
                items=[{"id": item_id, "price": new_plan.stripe_price_id}],
                proration_behavior="always_invoice",
                metadata={"planId": new_plan.plan_id},
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe plan change failed: {e}")
        logger.info("[stripe] plan changed", extra={"subscription_id": subscription_id, "plan_id": new_plan.plan_id})

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise PaymentWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise PaymentWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
            event = json.loads(body)
        except ValueError as e:
            raise PaymentWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise PaymentWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> WebhookResult:
        """Parse Stripe event into normalized WebhookResult."""
        event_type = event["type"]
        data = event.get("data", {}).get("object", {})
        result = WebhookResult(
            event_id=event["id"],
            event_type=event_type,
            action=WebhookAction.NONE,
            provider=self.name,
        )

        if event_type.startswith("customer.subscription."):
            metadata = data.get("metadata") or {}
            items = (data.get("items") or {}).get("data") or []
            first_item = items[0] if items else {}

            result.subscription_id = data.get("id")
            result.customer_id = data.get("customer")
            result.account_id = metadata.get("userId")
            result.plan_id = metadata.get("planId")
            result.external_plan_id = (first_item.get("price") or {}).get("id")
            # Newer API versions carry the period on the subscription item
            result.next_billing_at = _timestamp(data.get("current_period_end") or first_item.get("current_period_end"))
            result.metadata = {"status": data.get("status"), "cancel_at_period_end": data.get("cancel_at_period_end", False)}

            if event_type == "customer.subscription.deleted":
                result.action = WebhookAction.CANCELLED
            elif data.get("status") == "active":
                result.action = WebhookAction.ACTIVATED

        elif event_type in ("invoice.payment_failed", "invoice.payment_succeeded"):
            subscription_id = data.get("subscription")
            if not subscription_id:
                details = (data.get("parent") or {}).get("subscription_details") or {}
                subscription_id = details.get("subscription")
            result.subscription_id = subscription_id
            result.customer_id = data.get("customer")
            result.metadata = {"billing_reason": data.get("billing_reason")}
            if subscription_id:
                result.action = (
                    WebhookAction.PAYMENT_FAILED
                    if event_type == "invoice.payment_failed"
                    else WebhookAction.PAYMENT_SUCCEEDED
                )

        logger.info(
            "[stripe] webhook parsed",
            extra={"event_id": result.event_id, "event_type": event_type, "action": result.action.value},
        )
        return result
