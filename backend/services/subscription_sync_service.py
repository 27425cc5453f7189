"""Subscription Sync Service - reconciles Stripe subscription state into user records.

Flow for one reconciliation:
    identity user -> (expand schedule) -> snapshot -> pending change
        -> merge into identity metadata -> persist (identity, then mirror)

Used by the webhook service (event-driven) and by the "sync now" billing
route (on demand). Each call is stateless; concurrent reconciliations for
the same user converge because every write is a fresh merge of the
provider's current state.
"""
import stripe
import os
from typing import Any, Dict, List, Optional
from models import IdentityUser
from services.customer_resolver import CustomerResolver, CustomerProvisioningError
from services.metadata_reconciler import reconcile_metadata
from services.price_catalog import PriceCatalog
from services.profile_persister import ProfilePersister
from services.subscription_snapshot import extract_snapshot
from services.user_stores import IdentityStore, IdentityStoreError
from utils.stripe_objects import to_plain, object_id
import logging

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

SUBSCRIPTION_EXPAND = [
    "items.data.price",
    "items.data.price.product",
    "latest_invoice",
    "customer",
    "schedule",
    "schedule.phases.items.price",
]
# Stripe caps expansion depth at four levels; list calls add "data."
SUBSCRIPTION_LIST_EXPAND = [
    "data.items.data.price",
    "data.latest_invoice",
    "data.schedule",
]
SCHEDULE_EXPAND = ["phases.items.price"]
SUBSCRIPTION_LIST_LIMIT = 20


class SubscriptionSyncError(Exception):
    """On-demand sync could not complete."""
    pass


def pick_subscription(subscriptions: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """First non-canceled subscription, else the most recently created one."""
    if not subscriptions:
        return None
    for subscription in subscriptions:
        if subscription.get("status") != "canceled":
            return subscription
    return max(subscriptions, key=lambda s: s.get("created") or 0)


class SubscriptionSyncService:
    def __init__(
        self,
        catalog: PriceCatalog,
        identity_store: IdentityStore,
        persister: ProfilePersister,
        customer_resolver: CustomerResolver,
    ):
        self.catalog = catalog
        self.identity_store = identity_store
        self.persister = persister
        self.customer_resolver = customer_resolver

    # =========================================================================
    # Stripe reads
    # =========================================================================

    async def fetch_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        """Retrieve a subscription with the expansions the extractor reads. None on failure."""
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, expand=SUBSCRIPTION_EXPAND)
        except stripe.StripeError as e:
            logger.warning("Subscription retrieve failed subscription_id=%s: %s", subscription_id, e)
            return None
        return to_plain(subscription)

    async def list_customer_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        """All subscriptions of a customer, any status. Raises stripe.StripeError."""
        result = stripe.Subscription.list(
            customer=customer_id,
            status="all",
            limit=SUBSCRIPTION_LIST_LIMIT,
            expand=SUBSCRIPTION_LIST_EXPAND,
        )
        return to_plain(result).get("data") or []

    async def expand_schedule(self, subscription: Dict[str, Any]) -> Dict[str, Any]:
        """Replace a bare schedule id with the schedule object; keep the id if retrieval fails."""
        schedule = subscription.get("schedule")
        if not isinstance(schedule, str) or not schedule:
            return subscription
        try:
            expanded = to_plain(stripe.SubscriptionSchedule.retrieve(schedule, expand=SCHEDULE_EXPAND))
        except stripe.StripeError as e:
            logger.warning(
                "Schedule retrieve failed schedule_id=%s subscription_id=%s: %s",
                schedule, subscription.get("id"), e,
            )
            return subscription
        return {**subscription, "schedule": expanded}

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(
        self,
        user_id: str,
        subscription: Optional[Dict[str, Any]],
        existing_metadata: Optional[Dict[str, Any]] = None,
        *,
        status_override: Optional[str] = None,
        current_period_end_override: Any = None,
        customer_id: Optional[str] = None,
        user: Optional[IdentityUser] = None,
    ) -> Optional[Dict[str, Any]]:
        """Reconcile one subscription into the user's records.

        Returns the merged metadata, or None when the identity store could not
        be read or written (nothing was persisted in that case).
        """
        if user is None:
            if existing_metadata is not None:
                user = IdentityUser(id=user_id, metadata=existing_metadata, partial=True)
            else:
                try:
                    user = await self.identity_store.get_user(user_id)
                except IdentityStoreError as e:
                    logger.error("RECONCILE_FAILED user_id=%s stage=fetch error=%s", user_id, e)
                    return None
        existing = user.metadata if existing_metadata is None else existing_metadata

        if subscription:
            subscription = await self.expand_schedule(to_plain(subscription))
        snapshot = extract_snapshot(
            subscription,
            self.catalog,
            status_override=status_override,
            current_period_end_override=current_period_end_override,
            customer_id=customer_id,
        )
        merged = reconcile_metadata(snapshot, existing)

        try:
            await self.persister.persist(user, merged)
        except IdentityStoreError as e:
            logger.error("RECONCILE_FAILED user_id=%s stage=persist error=%s", user_id, e)
            return None

        logger.info(
            "RECONCILE_OK user_id=%s subscription_id=%s plan=%s cycle=%s status=%s pending=%s",
            user_id,
            snapshot.stripe_subscription_id,
            merged.get("plan_slug"),
            merged.get("billing_cycle"),
            snapshot.status,
            merged.get("subscription_pending_plan_slug"),
        )
        return merged

    async def sync_user(self, user_id: str) -> Dict[str, Any]:
        """Sync now: pull the user's current subscription from Stripe and reconcile it.

        Raises SubscriptionSyncError when the user, customer or subscription
        list cannot be read, or when the result cannot be persisted.
        """
        try:
            user = await self.identity_store.get_user(user_id)
        except IdentityStoreError as e:
            logger.error("SYNC_FAILED user_id=%s stage=fetch_user error=%s", user_id, e)
            raise SubscriptionSyncError("Unable to load user") from e

        try:
            customer_id = await self.customer_resolver.ensure_customer_id(user)
        except CustomerProvisioningError as e:
            logger.error("SYNC_FAILED user_id=%s stage=customer error=%s", user_id, e)
            raise SubscriptionSyncError("Unable to resolve Stripe customer") from e

        subscription = await self._find_subscription(user, customer_id)
        if subscription is None:
            logger.info("SYNC user_id=%s customer_id=%s no subscription found", user_id, customer_id)
            result = await self.reconcile(
                user_id, None, user=user, status_override="canceled", customer_id=customer_id,
            )
        else:
            result = await self.reconcile(user_id, subscription, user=user, customer_id=customer_id)

        if result is None:
            raise SubscriptionSyncError("Unable to persist subscription state")
        return result

    async def _find_subscription(self, user: IdentityUser, customer_id: str) -> Optional[Dict[str, Any]]:
        stored_id = user.subscription.stripe_subscription_id
        if stored_id:
            subscription = await self.fetch_subscription(stored_id)
            if (
                subscription
                and subscription.get("status") != "canceled"
                and object_id(subscription.get("customer")) in (None, customer_id)
            ):
                return subscription

        try:
            subscriptions = await self.list_customer_subscriptions(customer_id)
        except stripe.StripeError as e:
            logger.error("SYNC_FAILED user_id=%s stage=list_subscriptions error=%s", user.id, e)
            raise SubscriptionSyncError("Unable to list subscriptions") from e
        return pick_subscription(subscriptions)
