"""
Payment provider webhooks.

- POST /webhooks/stripe
- POST /webhooks/paypal

Signature failures return 400 so the provider does not retry forged events;
processing failures return 500 so it does.
"""
import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from charachat.core.database import get_db
from charachat.features.billing.factory import get_payment_provider
from charachat.features.billing.provider import PaymentProvider, PaymentProviderError, PaymentWebhookError
from charachat.features.subscriptions.service import process_webhook_event
from charachat.models.plan import PaymentProviderName

logger = logging.getLogger("charachat.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_stripe_provider() -> PaymentProvider:
    try:
        return get_payment_provider(PaymentProviderName.STRIPE)
    except PaymentProviderError as e:
        raise HTTPException(status_code=503, detail=str(e))


def get_paypal_provider() -> PaymentProvider:
    try:
        return get_payment_provider(PaymentProviderName.PAYPAL)
    except PaymentProviderError as e:
        raise HTTPException(status_code=503, detail=str(e))


async def _handle(request: Request, provider: PaymentProvider, db: Session) -> Dict:
    body = await request.body()
    try:
        result = process_webhook_event(db, provider, dict(request.headers), body)
    except PaymentWebhookError as e:
        logger.warning("[webhooks] rejected webhook", extra={"provider": provider.name.value, "error_message": str(e)})
        raise HTTPException(status_code=400, detail=str(e))
    return {"received": True, "event_id": result.event_id, "action": result.action.value}


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    provider: PaymentProvider = Depends(get_stripe_provider),
    db: Session = Depends(get_db),
) -> Dict:
    return await _handle(request, provider, db)


@router.post("/paypal")
async def paypal_webhook(
    request: Request,
    provider: PaymentProvider = Depends(get_paypal_provider),
    db: Session = Depends(get_db),
) -> Dict:
    return await _handle(request, provider, db)
