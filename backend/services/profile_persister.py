"""Dual-Store Persister - identity metadata first, relational mirror second.

The identity write is authoritative: if it fails nothing else is written
and the error propagates. The relational mirror is best-effort: a failure is
logged and the next reconciliation repairs it.
"""
from typing import Any, Dict
from models import IdentityUser, SubscriptionMetadata, NOTIFICATION_PREFERENCE_KEYS
from services.metadata_reconciler import merge_owned
from services.user_stores import IdentityStore, ProfileStore
from utils.timestamps import to_iso
import logging

logger = logging.getLogger(__name__)

MIRRORED_SUBSCRIPTION_COLUMNS = (
    "plan_slug",
    "subscription_tier",
    "subscription_status",
    "billing_cycle",
    "current_period_end",
    "plan_started_at",
    "stripe_customer_id",
    "stripe_subscription_id",
    "subscription_cancel_at_period_end",
    "subscription_pending_plan_slug",
    "subscription_pending_billing_cycle",
    "subscription_pending_effective_date",
    "subscription_pending_schedule_id",
)


def build_profile_row(user: IdentityUser, metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Relational payload for the users table.

    Identity columns (email, login, verification) are omitted when the user
    was not loaded from the identity store, so a partial write never nulls them.
    """
    view = SubscriptionMetadata.from_bag(metadata)
    row: Dict[str, Any] = {"user_id": user.id}
    for column in MIRRORED_SUBSCRIPTION_COLUMNS:
        value = getattr(view, column)
        row[column] = to_iso(value) if column in (
            "current_period_end", "plan_started_at", "subscription_pending_effective_date"
        ) else value
    for key in NOTIFICATION_PREFERENCE_KEYS:
        # Unknown preferences are left to whatever the row already holds
        flag = getattr(view, key)
        if flag is not None:
            row[key] = flag

    if not user.partial:
        row["email"] = user.email or metadata.get("email")
        row["email_verified"] = user.email_confirmed_at is not None
        row["last_login_at"] = to_iso(user.last_sign_in_at)
        row["created_at"] = to_iso(user.created_at)
    return row


class ProfilePersister:
    def __init__(self, identity_store: IdentityStore, profile_store: ProfileStore):
        self.identity_store = identity_store
        self.profile_store = profile_store

    async def persist(self, user: IdentityUser, merged: Dict[str, Any]) -> Dict[str, Any]:
        """Write merged metadata to both stores. Raises IdentityStoreError."""
        await self.identity_store.update_metadata(user.id, merged)

        try:
            await self.profile_store.upsert(build_profile_row(user, merged))
        except Exception as e:
            logger.warning(
                "PROFILE_MIRROR_FAILED user_id=%s table=%s error=%s",
                user.id, self.profile_store.table, e,
            )
        return merged

    async def persist_customer_id(self, user: IdentityUser, customer_id: str) -> Dict[str, Any]:
        """Record a newly resolved Stripe customer id. No-op when unchanged."""
        if user.subscription.stripe_customer_id == customer_id:
            return user.metadata
        merged = merge_owned(user.metadata, {"stripe_customer_id": customer_id})
        return await self.persist(user, merged)
