"""
PayPal payment provider.

Implements PaymentProvider against the PayPal REST API (v1 billing
subscriptions) with httpx. Access tokens come from the OAuth
client-credentials flow and are cached until shortly before expiry.
"""
import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from charachat.core.config import settings
from charachat.features.billing.provider import (
    CheckoutResult,
    PaymentProviderError,
    PaymentWebhookError,
    WebhookAction,
    WebhookResult,
)
from charachat.models.plan import PaymentProviderName, Plan

logger = logging.getLogger("charachat.billing.paypal")

_ACTIVATED_EVENTS = ("BILLING.SUBSCRIPTION.ACTIVATED", "BILLING.SUBSCRIPTION.UPDATED")
_CANCELLED_EVENTS = ("BILLING.SUBSCRIPTION.CANCELLED", "BILLING.SUBSCRIPTION.EXPIRED")
_FAILED_EVENTS = ("BILLING.SUBSCRIPTION.PAYMENT.FAILED", "BILLING.SUBSCRIPTION.SUSPENDED")
_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("[paypal] unparseable timestamp", extra={"value": value})
        return None


class PayPalProvider:
    """PayPal implementation of PaymentProvider protocol."""

    name = PaymentProviderName.PAYPAL

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        webhook_id: Optional[str] = None,
        api_base: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.client_id = client_id or settings.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or settings.PAYPAL_CLIENT_SECRET
        self.webhook_id = webhook_id or settings.PAYPAL_WEBHOOK_ID
        self.api_base = (api_base or settings.PAYPAL_API_BASE).rstrip("/")

        if not self.client_id or not self.client_secret:
            raise PaymentProviderError("PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET not configured")

        self._client = client or httpx.Client(timeout=15.0)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        if self._token and time.time() < self._token_expires_at:
            return self._token
        try:
            response = self._client.post(
                f"{self.api_base}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise PaymentProviderError(f"PayPal authentication failed: {e}")

        payload = response.json()
        self._token = payload["access_token"]
        self._token_expires_at = time.time() + int(payload.get("expires_in", 300)) - 60
        return self._token

    def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self._client.request(
                method,
                f"{self.api_base}{path}",
                json=json_body,
                headers={"Authorization": f"Bearer {self._access_token()}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise PaymentProviderError(f"PayPal {method} {path} failed: {e}")

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def create_subscription(
        self,
        account_id: str,
        plan: Plan,
        email: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> CheckoutResult:
        """Create a subscription and return the approval link the user must visit."""
        if not plan.paypal_plan_id:
            raise PaymentProviderError(f"Plan {plan.plan_id} is not configured for PayPal")

        body: Dict[str, Any] = {
            "plan_id": plan.paypal_plan_id,
            "custom_id": account_id,
            "application_context": {
                "brand_name": "CharaChat",
                "locale": "en-US",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "SUBSCRIBE_NOW",
                "return_url": f"{settings.FRONTEND_URL}/plans?success=true",
                "cancel_url": f"{settings.FRONTEND_URL}/plans?cancelled=true",
            },
        }
        if email:
            body["subscriber"] = {"email_address": email}

        subscription = self._request("POST", "/v1/billing/subscriptions", body)
        approval_url = next(
            (link.get("href") for link in subscription.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        if not approval_url:
            raise PaymentProviderError("PayPal approval URL not found")

        logger.info(
            "[paypal] subscription created",
            extra={"account_id": account_id, "plan_id": plan.plan_id, "subscription_id": subscription.get("id")},
        )
        return CheckoutResult(
            subscription_id=subscription.get("id", ""),
            provider=self.name,
            approval_url=approval_url,
        )

    def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None) -> None:
        self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/cancel",
            {"reason": reason or "Customer requested cancellation"},
        )
        logger.info("[paypal] subscription canceled", extra={"subscription_id": subscription_id})

    def reactivate_subscription(self, subscription_id: str) -> None:
        self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/activate",
            {"reason": "Reactivating on customer request"},
        )
        logger.info("[paypal] subscription reactivated", extra={"subscription_id": subscription_id})

    def change_plan(self, subscription_id: str, new_plan: Plan) -> None:
        if not new_plan.paypal_plan_id:
            raise PaymentProviderError(f"Plan {new_plan.plan_id} is not configured for PayPal")
        self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/revise",
            {"plan_id": new_plan.paypal_plan_id},
        )
        logger.info("[paypal] plan changed", extra={"subscription_id": subscription_id, "plan_id": new_plan.plan_id})

    def _verify_signature(self, headers: Dict[str, str], event: Dict[str, Any]) -> None:
        if not self.webhook_id:
            raise PaymentWebhookError("PAYPAL_WEBHOOK_ID not configured")

        lowered = {key.lower(): value for key, value in headers.items()}
        body: Dict[str, Any] = {"webhook_id": self.webhook_id, "webhook_event": event}
        for field_name, header in _SIGNATURE_HEADERS.items():
            if not lowered.get(header):
                raise PaymentWebhookError(f"Missing {header} header")
            body[field_name] = lowered[header]

        try:
            verification = self._request("POST", "/v1/notifications/verify-webhook-signature", body)
        except PaymentProviderError as e:
            raise PaymentWebhookError(f"Signature verification request failed: {e}")
        if verification.get("verification_status") != "SUCCESS":
            raise PaymentWebhookError("Invalid signature")

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookResult:
        """Verify PayPal webhook signature and parse event."""
        try:
            event = json.loads(body)
        except ValueError as e:
            raise PaymentWebhookError(f"Invalid payload: {e}")

        self._verify_signature(headers, event)
        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> WebhookResult:
        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}
        result = WebhookResult(
            event_id=event.get("id", ""),
            event_type=event_type,
            action=WebhookAction.NONE,
            provider=self.name,
        )

        if event_type.startswith("BILLING.SUBSCRIPTION."):
            result.subscription_id = resource.get("id")
            result.account_id = resource.get("custom_id")
            result.external_plan_id = resource.get("plan_id")
            billing_info = resource.get("billing_info") or {}
            result.next_billing_at = _parse_time(billing_info.get("next_billing_time"))
            result.metadata = {"status": resource.get("status"), "billing_info": billing_info}

            if event_type in _ACTIVATED_EVENTS:
                result.action = WebhookAction.ACTIVATED
            elif event_type in _CANCELLED_EVENTS:
                result.action = WebhookAction.CANCELLED
            elif event_type in _FAILED_EVENTS:
                result.action = WebhookAction.PAYMENT_FAILED

        elif event_type == "PAYMENT.SALE.COMPLETED":
            # Recurring payments reference the subscription as a billing agreement
            result.subscription_id = resource.get("billing_agreement_id")
            if result.subscription_id:
                result.action = WebhookAction.PAYMENT_SUCCEEDED

        logger.info(
            "[paypal] webhook parsed",
            extra={"event_id": result.event_id, "event_type": event_type, "action": result.action.value},
        )
        return result
