# orderflow/api/webhooks.py
# Вебхук Stripe: проверка подписи и передача события в PaymentReconciliation.
import json
import logging

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from orderflow.api.deps import get_lifecycle
from orderflow.core.config import settings
from orderflow.core.errors import NotFound
from orderflow.services.lifecycle import OrderLifecycle

logger = logging.getLogger(__name__)

router = APIRouter()


def verify_event(payload: bytes, signature: str | None) -> dict:
    """Разбирает событие, только если подпись валидна."""
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured, rejecting webhook")
        raise HTTPException(status_code=500, detail="Missing Stripe webhook secret")
    if not signature:
        raise HTTPException(status_code=400, detail="No signature provided")
    try:
        event = stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        logger.warning(f"Invalid webhook payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")
    return json.loads(payload)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    payload = await request.body()
    event = verify_event(payload, stripe_signature)
    try:
        result = await run_in_threadpool(lifecycle.reconciliation.handle_event, event)
    except NotFound as e:
        # Заказ не наш: подтверждаем, чтобы Stripe не ретраил бесконечно
        logger.error(f"Webhook {event.get('type')} references an unknown order: {e.message}")
        return {"received": True, "ignored": "order not found"}
    except ValueError as e:
        logger.error(f"Webhook {event.get('type')} is malformed: {e}")
        return {"received": True, "ignored": str(e)}
    return {"received": True, "result": result}
