"""Plan/cycle resolution strategies for subscriptions and schedule phases.

Each strategy takes a source object (a subscription or a schedule phase) and
the price catalog and returns a (plan_slug, billing_cycle) hint where either
side may be None. resolve_plan() walks an ordered strategy list and fills each
field from the first strategy that yields it.
"""
from typing import Any, Callable, Dict, Optional, Sequence, Tuple
from models import BillingCycle, normalize_plan_slug, normalize_billing_cycle
from services.price_catalog import PriceCatalog
from utils.stripe_objects import metadata_of, first_metadata_value
import logging

logger = logging.getLogger(__name__)

PlanHint = Tuple[Optional[str], Optional[str]]
PlanStrategy = Callable[[Dict[str, Any], PriceCatalog], PlanHint]


def primary_item(source: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """First line item. Subscriptions wrap items in a list object, phases use a bare list."""
    if not isinstance(source, dict):
        return None
    items = source.get("items")
    if isinstance(items, dict):
        items = items.get("data")
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


def primary_price(source: Optional[Dict[str, Any]]) -> Any:
    """Price of the first line item: an expanded dict, a bare id string, or None."""
    item = primary_item(source)
    if item is None:
        return None
    return item.get("price") or item.get("plan")


def primary_price_id(source: Optional[Dict[str, Any]]) -> Optional[str]:
    price = primary_price(source)
    if isinstance(price, str):
        return price or None
    if isinstance(price, dict):
        return price.get("id")
    return None


# =========================================================================
# Strategies
# =========================================================================

def plan_from_own_metadata(source: Dict[str, Any], catalog: PriceCatalog) -> PlanHint:
    meta = metadata_of(source)
    return (
        normalize_plan_slug(meta.get("plan_slug")),
        normalize_billing_cycle(meta.get("billing_cycle")),
    )


def plan_from_phase_metadata(source: Dict[str, Any], catalog: PriceCatalog) -> PlanHint:
    meta = metadata_of(source)
    return (
        normalize_plan_slug(first_metadata_value(meta, "plan_slug", "pending_plan_slug")),
        normalize_billing_cycle(first_metadata_value(meta, "billing_cycle", "pending_billing_cycle")),
    )


def plan_from_catalog(source: Dict[str, Any], catalog: PriceCatalog) -> PlanHint:
    binding = catalog.lookup_by_price_id(primary_price_id(source))
    if binding is None:
        return None, None
    return binding.plan_slug, binding.billing_cycle


def plan_from_price_metadata(source: Dict[str, Any], catalog: PriceCatalog) -> PlanHint:
    price = primary_price(source)
    meta = metadata_of(price)
    return (
        normalize_plan_slug(meta.get("plan_slug")),
        normalize_billing_cycle(meta.get("billing_cycle")),
    )


def cycle_from_recurring_interval(source: Dict[str, Any], catalog: PriceCatalog) -> PlanHint:
    price = primary_price(source)
    if not isinstance(price, dict):
        return None, None
    recurring = price.get("recurring") or {}
    interval = recurring.get("interval") if isinstance(recurring, dict) else None
    if not interval:
        return None, None
    if interval == "month":
        return None, BillingCycle.MONTHLY.value
    return None, BillingCycle.ANNUAL.value


PLAN_STRATEGIES: Tuple[PlanStrategy, ...] = (
    plan_from_own_metadata,
    plan_from_catalog,
    plan_from_price_metadata,
    cycle_from_recurring_interval,
)

PHASE_PLAN_STRATEGIES: Tuple[PlanStrategy, ...] = (
    plan_from_phase_metadata,
    plan_from_catalog,
    plan_from_price_metadata,
    cycle_from_recurring_interval,
)


def resolve_plan(
    source: Optional[Dict[str, Any]],
    catalog: PriceCatalog,
    strategies: Sequence[PlanStrategy] = PLAN_STRATEGIES,
) -> PlanHint:
    plan_slug: Optional[str] = None
    billing_cycle: Optional[str] = None
    if not isinstance(source, dict):
        return plan_slug, billing_cycle
    for strategy in strategies:
        hint_plan, hint_cycle = strategy(source, catalog)
        plan_slug = plan_slug or hint_plan
        billing_cycle = billing_cycle or hint_cycle
        if plan_slug and billing_cycle:
            break
    return plan_slug, billing_cycle
