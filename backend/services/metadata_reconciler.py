"""Metadata Reconciler - merges a snapshot into the identity metadata bag.

Only the subscription keys below are owned here. Every other key in the bag
(display name, notification preferences, onboarding flags...) is preserved
as-is. Legacy camelCase spellings of owned keys are dropped so the bag
converges on one spelling.
"""
from typing import Any, Dict, Optional
from models import SubscriptionSnapshot, SubscriptionMetadata, METADATA_KEY_ALIASES
from utils.timestamps import to_iso

OWNED_METADATA_KEYS = (
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

# Owned keys where a None in the snapshot means "unknown", not "clear"
KEEP_EXISTING_WHEN_UNKNOWN = (
    "plan_slug",
    "subscription_tier",
    "billing_cycle",
    "stripe_customer_id",
)


def build_metadata_patch(snapshot: SubscriptionSnapshot) -> Dict[str, Any]:
    """Outbound vocabulary: owned keys with JSON-safe values."""
    pending = snapshot.pending_change
    return {
        "plan_slug": snapshot.plan_slug,
        "subscription_tier": snapshot.tier,
        "subscription_status": snapshot.status,
        "billing_cycle": snapshot.billing_cycle,
        "current_period_end": to_iso(snapshot.current_period_end),
        "plan_started_at": to_iso(snapshot.plan_started_at),
        "stripe_customer_id": snapshot.stripe_customer_id,
        "stripe_subscription_id": snapshot.stripe_subscription_id,
        "subscription_cancel_at_period_end": snapshot.cancel_at_period_end,
        "subscription_pending_plan_slug": pending.plan_slug if pending else None,
        "subscription_pending_billing_cycle": pending.billing_cycle if pending else None,
        "subscription_pending_effective_date": to_iso(pending.effective_date) if pending else None,
        "subscription_pending_schedule_id": pending.schedule_id if pending else None,
    }


def merge_owned(existing: Optional[Dict[str, Any]], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow merge of owned keys, dropping alias spellings of every patched key."""
    dropped = set()
    for key in patch:
        dropped.update(METADATA_KEY_ALIASES.get(key, ()))
    merged = {k: v for k, v in (existing or {}).items() if k not in dropped}
    merged.update(patch)
    return merged


def reconcile_metadata(
    snapshot: SubscriptionSnapshot,
    existing: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    """Merged metadata bag. Applying the same snapshot twice yields the same bag."""
    patch = build_metadata_patch(snapshot)
    current = SubscriptionMetadata.from_bag(existing)
    for key in KEEP_EXISTING_WHEN_UNKNOWN:
        if patch[key] is None:
            patch[key] = getattr(current, key)
    return merge_owned(existing, patch)
