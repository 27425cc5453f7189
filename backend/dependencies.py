"""Service wiring. Services are built once at startup and kept on app.state."""
from fastapi import Request, HTTPException, status
from supabase import Client
from typing import Optional
from services.customer_resolver import CustomerResolver
from services.price_catalog import PriceCatalog
from services.profile_persister import ProfilePersister
from services.stripe_webhook_service import StripeWebhookService
from services.subscription_sync_service import SubscriptionSyncService
from services.user_stores import IdentityStore, ProfileStore


def build_services(
    client: Client,
    catalog: PriceCatalog,
    profile_table: Optional[str] = None,
    webhook_secret: Optional[str] = None,
) -> dict:
    identity_store = IdentityStore(client)
    persister = ProfilePersister(identity_store, ProfileStore(client, profile_table))
    sync_service = SubscriptionSyncService(
        catalog, identity_store, persister, CustomerResolver(persister)
    )
    return {
        "identity_store": identity_store,
        "subscription_sync_service": sync_service,
        "stripe_webhook_service": StripeWebhookService(sync_service, webhook_secret),
    }


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized"
        )
    return service


def get_identity_store(request: Request) -> IdentityStore:
    return _service(request, "identity_store")


def get_sync_service(request: Request) -> SubscriptionSyncService:
    return _service(request, "subscription_sync_service")


def get_webhook_service(request: Request) -> StripeWebhookService:
    return _service(request, "stripe_webhook_service")
