"""Snapshot Extractor - Stripe subscription -> SubscriptionSnapshot.

Pure function over a subscription dict (already converted from the SDK
object). No I/O: a schedule given as a bare id must be expanded by the
caller before extraction; an unexpanded id yields no pending change.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from models import (
    SubscriptionSnapshot,
    PendingChange,
    PlanSlug,
    BillingCycle,
    NO_SUBSCRIPTION_STATUS,
    normalize_plan_slug,
    normalize_billing_cycle,
    tier_for_plan,
)
from services.plan_resolution import PlanHint, PLAN_STRATEGIES, primary_item, resolve_plan
from services.price_catalog import PriceCatalog
from services.schedule_resolver import current_phase_end, resolve_pending_change
from utils.stripe_objects import metadata_of, first_metadata_value, object_id
from utils.timestamps import to_datetime
import logging

logger = logging.getLogger(__name__)

# latest_invoice statuses that mean the first payment is settled
SETTLED_INVOICE_STATUSES = frozenset({"paid", "void", "uncollectible"})


def free_snapshot(
    status_override: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> SubscriptionSnapshot:
    """Implicit snapshot for a user with no subscription."""
    return SubscriptionSnapshot(
        plan_slug=PlanSlug.FREE.value,
        billing_cycle=BillingCycle.MONTHLY.value,
        tier=tier_for_plan(PlanSlug.FREE.value),
        status=(status_override or NO_SUBSCRIPTION_STATUS).strip().lower(),
        stripe_customer_id=customer_id,
    )


def normalize_status(subscription: Dict[str, Any]) -> str:
    status = str(subscription.get("status") or "incomplete").strip().lower()
    if status == "incomplete":
        invoice = subscription.get("latest_invoice")
        invoice_status = invoice.get("status") if isinstance(invoice, dict) else None
        if isinstance(invoice_status, str) and invoice_status.lower() in SETTLED_INVOICE_STATUSES:
            return "active"
    return status


def period_marker(subscription: Dict[str, Any], field: str) -> Optional[datetime]:
    """Period marker from the subscription, falling back to its first item."""
    value = to_datetime(subscription.get(field))
    if value is not None:
        return value
    item = primary_item(subscription)
    return to_datetime(item.get(field)) if item else None


def pending_from_metadata(
    subscription: Dict[str, Any],
    current_plan: PlanHint,
) -> Optional[PendingChange]:
    meta = metadata_of(subscription)
    pending_plan = normalize_plan_slug(meta.get("pending_plan_slug"))
    pending_cycle = normalize_billing_cycle(meta.get("pending_billing_cycle"))
    if pending_plan is None and pending_cycle is None:
        return None
    current_slug, current_cycle = current_plan
    target = (pending_plan or current_slug, pending_cycle or current_cycle)
    if target == (current_slug, current_cycle):
        return None
    return PendingChange(
        plan_slug=target[0],
        billing_cycle=target[1],
        effective_date=to_datetime(meta.get("pending_effective_date")),
        schedule_id=first_metadata_value(meta, "pending_schedule_id"),
    )


def extract_snapshot(
    subscription: Optional[Dict[str, Any]],
    catalog: PriceCatalog,
    *,
    status_override: Optional[str] = None,
    current_period_end_override: Any = None,
    customer_id: Optional[str] = None,
) -> SubscriptionSnapshot:
    """Build the normalized snapshot for one subscription.

    Args:
        subscription: Stripe subscription as a dict, or None for "no subscription".
        status_override: status to report instead of the subscription's own
            (invoice events, "sync now" with nothing found).
        current_period_end_override: used when the subscription carries no
            period end of its own.
        customer_id: customer id to report when the subscription has none.
    """
    if not subscription:
        return free_snapshot(status_override, customer_id)

    plan_slug, billing_cycle = resolve_plan(subscription, catalog, PLAN_STRATEGIES)
    if plan_slug is None:
        logger.warning(
            "Subscription %s: no plan resolved from metadata, catalog or price",
            subscription.get("id"),
        )

    status = (status_override or "").strip().lower() or normalize_status(subscription)
    period_end = period_marker(subscription, "current_period_end") or to_datetime(current_period_end_override)

    schedule = subscription.get("schedule")
    if isinstance(schedule, dict):
        marker = current_phase_end(schedule, period_end)
        pending = resolve_pending_change(schedule, marker, (plan_slug, billing_cycle), catalog)
    elif schedule:
        # Schedule exists but could not be expanded: its phases are unknown
        pending = None
    else:
        pending = pending_from_metadata(subscription, (plan_slug, billing_cycle))

    return SubscriptionSnapshot(
        plan_slug=plan_slug,
        billing_cycle=billing_cycle,
        tier=tier_for_plan(plan_slug),
        status=status,
        current_period_end=period_end,
        plan_started_at=period_marker(subscription, "current_period_start"),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        pending_change=pending,
        stripe_subscription_id=subscription.get("id"),
        stripe_customer_id=object_id(subscription.get("customer")) or customer_id,
    )
