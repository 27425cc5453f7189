"""Billing Routes - Subscription state for the signed-in user.

Endpoints:
- POST /api/billing/sync - Pull the current subscription from Stripe and reconcile it
- GET /api/billing/status - Get current subscription status
"""
from fastapi import APIRouter, Depends, HTTPException, status
from dependencies import get_identity_store, get_sync_service
from middleware import require_auth
from services.metadata_reconciler import OWNED_METADATA_KEYS
from services.subscription_sync_service import SubscriptionSyncService, SubscriptionSyncError
from services.user_stores import IdentityStore, IdentityStoreError
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/sync")
async def sync_subscription(
    user: dict = Depends(require_auth),
    service: SubscriptionSyncService = Depends(get_sync_service),
):
    """
    Refresh subscription state from Stripe ("sync now").

    Used after returning from checkout or the billing portal, before the
    webhook has necessarily arrived.
    """
    user_id = user["user_id"]
    try:
        metadata = await service.sync_user(user_id)
    except SubscriptionSyncError as e:
        logger.error(f"Subscription sync failed user_id={user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Unable to sync subscription"
        )

    return {
        "subscription": {key: metadata.get(key) for key in OWNED_METADATA_KEYS},
        "message": "Subscription synced",
    }


@router.get("/status")
async def get_billing_status(
    user: dict = Depends(require_auth),
    identity_store: IdentityStore = Depends(get_identity_store),
):
    """Current subscription state as recorded on the user."""
    try:
        identity_user = await identity_store.get_user(user["user_id"])
    except IdentityStoreError as e:
        logger.error(f"Billing status lookup failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Unable to load subscription status"
        )
    return identity_user.subscription.model_dump(mode="json")
