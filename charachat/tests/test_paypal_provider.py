"""
PayPal provider against a mocked REST API (httpx.MockTransport).
"""
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from charachat.core.config import settings
from charachat.features.billing.paypal_provider import PayPalProvider
from charachat.features.billing.provider import PaymentProviderError, PaymentWebhookError, WebhookAction
from charachat.models.plan import PaymentProviderName, Plan, PlanTier

API_BASE = "https://api.paypal.test"

SIGNATURE_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.paypal.test/cert",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2025-03-15T12:00:00Z",
}


class FakePayPal:
    """Records requests and answers like the PayPal REST API."""

    def __init__(self, verification_status="SUCCESS", fail_paths=()):
        self.requests = []
        self.verification_status = verification_status
        self.fail_paths = set(fail_paths)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.fail_paths:
            return httpx.Response(500, json={"name": "INTERNAL_SERVICE_ERROR"})
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "token-1", "expires_in": 3600})
        if path == "/v1/billing/subscriptions":
            return httpx.Response(
                201,
                json={
                    "id": "I-SUB1",
                    "links": [
                        {"rel": "self", "href": f"{API_BASE}/v1/billing/subscriptions/I-SUB1"},
                        {"rel": "approve", "href": "https://paypal.test/approve/I-SUB1"},
                    ],
                },
            )
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})
        return httpx.Response(204)

    def paths(self):
        return [request.url.path for request in self.requests]


def _provider(fake, webhook_id="WH-1"):
    return PayPalProvider(
        client_id="client",
        client_secret="secret",
        webhook_id=webhook_id,
        api_base=API_BASE,
        client=httpx.Client(transport=httpx.MockTransport(fake)),
    )


@pytest.fixture
def plus_plan():
    return Plan(
        plan_id="plus",
        tier=PlanTier.PLUS,
        name="Plus",
        price_monthly=Decimal("9.99"),
        credits_per_month=100,
        payment_provider=PaymentProviderName.PAYPAL,
        paypal_plan_id="P-PLUS",
    )


def _body(event_type, resource, event_id="WH-EVT-1"):
    return json.dumps({"id": event_id, "event_type": event_type, "resource": resource}).encode()


def test_missing_credentials_is_a_configuration_error(monkeypatch):
    monkeypatch.setattr(settings, "PAYPAL_CLIENT_ID", None)
    monkeypatch.setattr(settings, "PAYPAL_CLIENT_SECRET", None)
    with pytest.raises(PaymentProviderError, match="not configured"):
        PayPalProvider()


def test_create_subscription_returns_approval_url(plus_plan):
    fake = FakePayPal()
    provider = _provider(fake)

    result = provider.create_subscription("acct_1", plus_plan, email="a@example.com")

    assert result.subscription_id == "I-SUB1"
    assert result.approval_url == "https://paypal.test/approve/I-SUB1"
    create_request = fake.requests[-1]
    assert create_request.headers["Authorization"] == "Bearer token-1"
    payload = json.loads(create_request.content)
    assert payload["plan_id"] == "P-PLUS"
    assert payload["custom_id"] == "acct_1"
    assert payload["subscriber"] == {"email_address": "a@example.com"}


def test_access_token_is_cached():
    fake = FakePayPal()
    provider = _provider(fake)

    provider.cancel_subscription("I-SUB1")
    provider.reactivate_subscription("I-SUB1")

    assert fake.paths() == [
        "/v1/oauth2/token",
        "/v1/billing/subscriptions/I-SUB1/cancel",
        "/v1/billing/subscriptions/I-SUB1/activate",
    ]


def test_api_failure_becomes_provider_error():
    fake = FakePayPal(fail_paths={"/v1/billing/subscriptions/I-SUB1/cancel"})
    with pytest.raises(PaymentProviderError):
        _provider(fake).cancel_subscription("I-SUB1")


def test_change_plan_revises_subscription(plus_plan):
    fake = FakePayPal()
    _provider(fake).change_plan("I-SUB1", plus_plan)

    revise = fake.requests[-1]
    assert revise.url.path == "/v1/billing/subscriptions/I-SUB1/revise"
    assert json.loads(revise.content) == {"plan_id": "P-PLUS"}


def test_activated_event_is_parsed_after_verification():
    fake = FakePayPal()
    body = _body(
        "BILLING.SUBSCRIPTION.ACTIVATED",
        {
            "id": "I-SUB1",
            "custom_id": "acct_1",
            "plan_id": "P-PLUS",
            "status": "ACTIVE",
            "billing_info": {"next_billing_time": "2025-04-15T10:00:00Z"},
        },
    )

    result = _provider(fake).parse_webhook(SIGNATURE_HEADERS, body)

    assert result.action == WebhookAction.ACTIVATED
    assert result.provider == PaymentProviderName.PAYPAL
    assert result.account_id == "acct_1"
    assert result.subscription_id == "I-SUB1"
    assert result.external_plan_id == "P-PLUS"
    assert result.next_billing_at == datetime(2025, 4, 15, 10, 0, tzinfo=timezone.utc)

    verification = json.loads(fake.requests[-1].content)
    assert verification["webhook_id"] == "WH-1"
    assert verification["transmission_id"] == "tx-1"
    assert verification["webhook_event"]["id"] == "WH-EVT-1"


@pytest.mark.parametrize(
    "event_type,action",
    [
        ("BILLING.SUBSCRIPTION.UPDATED", WebhookAction.ACTIVATED),
        ("BILLING.SUBSCRIPTION.CANCELLED", WebhookAction.CANCELLED),
        ("BILLING.SUBSCRIPTION.EXPIRED", WebhookAction.CANCELLED),
        ("BILLING.SUBSCRIPTION.SUSPENDED", WebhookAction.PAYMENT_FAILED),
        ("BILLING.SUBSCRIPTION.PAYMENT.FAILED", WebhookAction.PAYMENT_FAILED),
        ("BILLING.SUBSCRIPTION.CREATED", WebhookAction.NONE),
    ],
)
def test_subscription_event_mapping(event_type, action):
    result = _provider(FakePayPal()).parse_webhook(SIGNATURE_HEADERS, _body(event_type, {"id": "I-SUB1"}))
    assert result.action == action


def test_sale_completed_is_renewal_payment():
    body = _body("PAYMENT.SALE.COMPLETED", {"id": "SALE-1", "billing_agreement_id": "I-SUB1"})
    result = _provider(FakePayPal()).parse_webhook(SIGNATURE_HEADERS, body)

    assert result.action == WebhookAction.PAYMENT_SUCCEEDED
    assert result.subscription_id == "I-SUB1"


def test_failed_verification_is_rejected():
    fake = FakePayPal(verification_status="FAILURE")
    with pytest.raises(PaymentWebhookError, match="Invalid signature"):
        _provider(fake).parse_webhook(SIGNATURE_HEADERS, _body("BILLING.SUBSCRIPTION.ACTIVATED", {}))


def test_missing_signature_header_is_rejected():
    headers = {k: v for k, v in SIGNATURE_HEADERS.items() if k != "PAYPAL-TRANSMISSION-SIG"}
    with pytest.raises(PaymentWebhookError, match="paypal-transmission-sig"):
        _provider(FakePayPal()).parse_webhook(headers, _body("BILLING.SUBSCRIPTION.ACTIVATED", {}))


def test_missing_webhook_id_is_rejected(monkeypatch):
    monkeypatch.setattr(settings, "PAYPAL_WEBHOOK_ID", None)
    provider = _provider(FakePayPal(), webhook_id=None)
    with pytest.raises(PaymentWebhookError, match="PAYPAL_WEBHOOK_ID"):
        provider.parse_webhook(SIGNATURE_HEADERS, _body("BILLING.SUBSCRIPTION.ACTIVATED", {}))


def test_malformed_body_is_rejected():
    with pytest.raises(PaymentWebhookError, match="Invalid payload"):
        _provider(FakePayPal()).parse_webhook(SIGNATURE_HEADERS, b"not json")
