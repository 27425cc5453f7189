"""Price Catalog - bidirectional mapping between Stripe price ids and plans.

Built once at startup from STRIPE_PRICE_SIGNALS_* environment variables and
immutable afterwards. Every price id binds to exactly one (plan_slug,
billing_cycle) pair and every pair to exactly one price id; a conflicting
registration is a configuration error, not a silent override.

Env vars:
- STRIPE_PRICE_SIGNALS_LITE_MONTHLY / STRIPE_PRICE_SIGNALS_LITE_ANNUAL
- STRIPE_PRICE_SIGNALS_PRO_MONTHLY  / STRIPE_PRICE_SIGNALS_PRO_ANNUAL
- STRIPE_PRICE_SIGNALS_API_MONTHLY  / STRIPE_PRICE_SIGNALS_API_ANNUAL
"""
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple
from pydantic import BaseModel, ConfigDict
from models import PlanSlug, BillingCycle, normalize_plan_slug, normalize_billing_cycle
import os
import logging

logger = logging.getLogger(__name__)


class PriceCatalogConfigError(Exception):
    """Conflicting or missing price configuration. Fatal at startup."""
    pass


class PlanBinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_slug: str
    billing_cycle: str


class PriceCatalogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    price_id: str
    plan_slug: str
    billing_cycle: str

    @property
    def binding(self) -> PlanBinding:
        return PlanBinding(plan_slug=self.plan_slug, billing_cycle=self.billing_cycle)


# (env var, plan, cycle) for every sellable price
PRICE_ENV_BINDINGS: Tuple[Tuple[str, PlanSlug, BillingCycle], ...] = (
    ("STRIPE_PRICE_SIGNALS_LITE_MONTHLY", PlanSlug.SIGNALS_LITE, BillingCycle.MONTHLY),
    ("STRIPE_PRICE_SIGNALS_LITE_ANNUAL", PlanSlug.SIGNALS_LITE, BillingCycle.ANNUAL),
    ("STRIPE_PRICE_SIGNALS_PRO_MONTHLY", PlanSlug.SIGNALS_PRO, BillingCycle.MONTHLY),
    ("STRIPE_PRICE_SIGNALS_PRO_ANNUAL", PlanSlug.SIGNALS_PRO, BillingCycle.ANNUAL),
    ("STRIPE_PRICE_SIGNALS_API_MONTHLY", PlanSlug.SIGNALS_API, BillingCycle.MONTHLY),
    ("STRIPE_PRICE_SIGNALS_API_ANNUAL", PlanSlug.SIGNALS_API, BillingCycle.ANNUAL),
)


def _value(member) -> str:
    return member.value if hasattr(member, "value") else str(member)


def _plan_key(plan_slug, billing_cycle) -> Tuple[str, str]:
    """Case- and whitespace-insensitive (plan, cycle) key."""
    plan, cycle = _value(plan_slug), _value(billing_cycle)
    return normalize_plan_slug(plan) or plan, normalize_billing_cycle(cycle) or cycle


class PriceCatalog:
    """Read-only price id <-> plan lookup."""

    def __init__(
        self,
        by_price: Mapping[str, PriceCatalogEntry],
        by_plan: Mapping[Tuple[str, str], str],
    ):
        self._by_price = MappingProxyType(dict(by_price))
        self._by_plan = MappingProxyType(dict(by_plan))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PriceCatalog":
        """Build the catalog from STRIPE_PRICE_SIGNALS_* variables.

        Missing variables are logged and skipped; partial catalogs are normal
        outside production. A catalog with no prices at all is refused.
        """
        env = os.environ if environ is None else environ
        builder = PriceCatalogBuilder()
        for env_var, plan_slug, billing_cycle in PRICE_ENV_BINDINGS:
            builder.register(env.get(env_var), plan_slug, billing_cycle, source=env_var)
        catalog = builder.build()
        if not len(catalog):
            raise PriceCatalogConfigError(
                "No Stripe prices configured. Set STRIPE_PRICE_SIGNALS_* env vars."
            )
        return catalog

    def lookup_by_price_id(self, price_id: Optional[str]) -> Optional[PlanBinding]:
        if not price_id:
            return None
        entry = self._by_price.get(price_id.strip())
        return entry.binding if entry else None

    def lookup_by_plan(self, plan_slug, billing_cycle) -> Optional[str]:
        if plan_slug is None or billing_cycle is None:
            return None
        return self._by_plan.get(_plan_key(plan_slug, billing_cycle))

    def tracked_price_ids(self) -> List[str]:
        return list(self._by_price.keys())

    def entries(self) -> List[PriceCatalogEntry]:
        return list(self._by_price.values())

    def __contains__(self, price_id) -> bool:
        return price_id in self._by_price

    def __len__(self) -> int:
        return len(self._by_price)


class PriceCatalogBuilder:
    """Collects price registrations and freezes them into a PriceCatalog."""

    def __init__(self):
        self._by_price: Dict[str, PriceCatalogEntry] = {}
        self._by_plan: Dict[Tuple[str, str], str] = {}

    def register(
        self,
        price_id: Optional[str],
        plan_slug,
        billing_cycle,
        source: Optional[str] = None,
    ) -> "PriceCatalogBuilder":
        plan, cycle = _plan_key(plan_slug, billing_cycle)
        price_id = (price_id or "").strip()
        if not price_id:
            logger.info("Price catalog: %s not configured - skipping", source or f"{plan}/{cycle}")
            return self

        existing = self._by_price.get(price_id)
        if existing is not None:
            if (existing.plan_slug, existing.billing_cycle) == (plan, cycle):
                return self
            raise PriceCatalogConfigError(
                f"Price {price_id} bound to both {existing.plan_slug}/{existing.billing_cycle} and {plan}/{cycle}"
            )

        bound_price = self._by_plan.get((plan, cycle))
        if bound_price is not None and bound_price != price_id:
            raise PriceCatalogConfigError(
                f"Plan {plan}/{cycle} bound to both {bound_price} and {price_id}"
            )

        self._by_price[price_id] = PriceCatalogEntry(
            price_id=price_id, plan_slug=plan, billing_cycle=cycle
        )
        self._by_plan[(plan, cycle)] = price_id
        logger.info("Price catalog: %s -> %s/%s", price_id, plan, cycle)
        return self

    def build(self) -> PriceCatalog:
        return PriceCatalog(self._by_price, self._by_plan)
