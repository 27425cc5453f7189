"""Webhook Routes - Stripe billing webhooks.

POST /api/webhook/stripe - Main Stripe webhook endpoint
POST /api/webhooks/stripe - Alias for Stripe webhook (for backward compatibility)

Response contract:
- 200 once the event is reconciled (or needs no write)
- 400 for an unverifiable payload (retrying cannot help)
- 500 when reconciliation was not persisted, so Stripe retries delivery
"""
from fastapi import APIRouter, Depends, HTTPException, Request, Header, status
from dependencies import get_webhook_service
from services.stripe_webhook_service import (
    StripeWebhookService,
    WebhookConfigurationError,
    WebhookVerificationError,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(
    request: Request,
    service: StripeWebhookService,
    stripe_signature: str = None,
):
    payload = await request.body()

    try:
        success, message, details = await service.process_webhook(
            payload=payload,
            signature=stripe_signature or ""
        )
    except WebhookVerificationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except WebhookConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    if not success:
        logger.error(f"Webhook processing failed: {message} details={details}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )
    return {"status": "received", "message": message, "details": details}


# Primary webhook endpoint
@router.post("/api/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    service: StripeWebhookService = Depends(get_webhook_service),
):
    """Handle Stripe webhooks at /api/webhook/stripe"""
    return await _handle_stripe_webhook(request, service, stripe_signature)


# Alias endpoint for backward compatibility (Stripe may be configured with this URL)
@router.post("/api/webhooks/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    service: StripeWebhookService = Depends(get_webhook_service),
):
    """Handle Stripe webhooks at /api/webhooks/stripe (alias)"""
    return await _handle_stripe_webhook(request, service, stripe_signature)
