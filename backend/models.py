from pydantic import BaseModel, Field, ConfigDict, AliasChoices, field_validator
from typing import Optional, Dict, Any, Tuple
from datetime import datetime
from enum import Enum
import logging

from utils.timestamps import to_datetime

logger = logging.getLogger(__name__)

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanSlug(str, Enum):
    FREE = "free"
    SIGNALS_LITE = "signals_lite"
    SIGNALS_PRO = "signals_pro"
    SIGNALS_API = "signals_api"

class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"

class SubscriptionTier(str, Enum):
    FREE = "free"
    LITE = "lite"
    PRO = "pro"
    API = "api"


PLAN_TIER_MAP: Dict[str, str] = {
    PlanSlug.FREE.value: SubscriptionTier.FREE.value,
    PlanSlug.SIGNALS_LITE.value: SubscriptionTier.LITE.value,
    PlanSlug.SIGNALS_PRO.value: SubscriptionTier.PRO.value,
    PlanSlug.SIGNALS_API.value: SubscriptionTier.API.value,
}

# Status written when there is no subscription at all
NO_SUBSCRIPTION_STATUS = "inactive"

_MONTHLY_SPELLINGS = {"monthly", "month", "mo"}
_ANNUAL_SPELLINGS = {"annual", "annually", "yearly", "year", "yr"}


def normalize_plan_slug(value: Any) -> Optional[str]:
    """Lowercased, stripped plan slug; None when empty. Unknown slugs pass through."""
    if not isinstance(value, str):
        return None
    slug = value.strip().lower()
    return slug or None


def normalize_billing_cycle(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    cycle = value.strip().lower()
    if cycle in _MONTHLY_SPELLINGS:
        return BillingCycle.MONTHLY.value
    if cycle in _ANNUAL_SPELLINGS:
        return BillingCycle.ANNUAL.value
    if cycle:
        logger.warning("Unrecognized billing cycle %r - ignoring", value)
    return None


def tier_for_plan(plan_slug: Optional[str]) -> Optional[str]:
    """Tier for a plan slug. Unknown slugs map to themselves (logged)."""
    if plan_slug is None:
        return None
    tier = PLAN_TIER_MAP.get(plan_slug)
    if tier is None:
        logger.warning("Unknown plan slug %s - passing through as tier", plan_slug)
        return plan_slug
    return tier


# ============================================================================
# SUBSCRIPTION SNAPSHOT
# ============================================================================

class PendingChange(BaseModel):
    """A scheduled plan/cycle change that has not taken effect yet."""
    model_config = ConfigDict(frozen=True)

    plan_slug: Optional[str] = None
    billing_cycle: Optional[str] = None
    effective_date: Optional[datetime] = None
    schedule_id: Optional[str] = None


class SubscriptionSnapshot(BaseModel):
    """Normalized, provider-independent view of one subscription."""
    model_config = ConfigDict(frozen=True)

    plan_slug: Optional[str] = None
    billing_cycle: Optional[str] = None
    tier: Optional[str] = None
    status: str = NO_SUBSCRIPTION_STATUS
    current_period_end: Optional[datetime] = None
    plan_started_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    pending_change: Optional[PendingChange] = None
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None

    @property
    def plan(self) -> Tuple[Optional[str], Optional[str]]:
        return self.plan_slug, self.billing_cycle


# ============================================================================
# IDENTITY METADATA
# ============================================================================

# Canonical key -> legacy/camelCase spellings still found in older user records
METADATA_KEY_ALIASES: Dict[str, Tuple[str, ...]] = {
    "plan_slug": ("planSlug",),
    "subscription_tier": ("subscriptionTier",),
    "subscription_status": ("subscriptionStatus",),
    "billing_cycle": ("billingCycle",),
    "current_period_end": ("currentPeriodEnd",),
    "plan_started_at": ("planStartedAt",),
    "stripe_customer_id": ("stripeCustomerId",),
    "stripe_subscription_id": ("stripeSubscriptionId",),
    "subscription_cancel_at_period_end": ("subscriptionCancelAtPeriodEnd", "cancelAtPeriodEnd"),
    "subscription_pending_plan_slug": ("subscriptionPendingPlanSlug", "pendingPlanSlug"),
    "subscription_pending_billing_cycle": ("subscriptionPendingBillingCycle", "pendingBillingCycle"),
    "subscription_pending_effective_date": ("subscriptionPendingEffectiveDate", "pendingEffectiveDate"),
    "subscription_pending_schedule_id": ("subscriptionPendingScheduleId", "pendingScheduleId"),
    "marketing_opt_in": ("marketingOptIn",),
    "weekly_summary": ("weeklySummary",),
    "product_updates": ("productUpdates",),
}

NOTIFICATION_PREFERENCE_KEYS = ("marketing_opt_in", "weekly_summary", "product_updates")


def _aliases(name: str) -> AliasChoices:
    return AliasChoices(name, *METADATA_KEY_ALIASES[name])


def _coerce_bool(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
    return None


class SubscriptionMetadata(BaseModel):
    """Typed read view over the loosely-typed identity metadata bag.

    Both snake_case and camelCase spellings are accepted on input; values
    that cannot be parsed read as None instead of failing the whole record.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    plan_slug: Optional[str] = Field(None, validation_alias=_aliases("plan_slug"))
    subscription_tier: Optional[str] = Field(None, validation_alias=_aliases("subscription_tier"))
    subscription_status: Optional[str] = Field(None, validation_alias=_aliases("subscription_status"))
    billing_cycle: Optional[str] = Field(None, validation_alias=_aliases("billing_cycle"))
    current_period_end: Optional[datetime] = Field(None, validation_alias=_aliases("current_period_end"))
    plan_started_at: Optional[datetime] = Field(None, validation_alias=_aliases("plan_started_at"))
    stripe_customer_id: Optional[str] = Field(None, validation_alias=_aliases("stripe_customer_id"))
    stripe_subscription_id: Optional[str] = Field(None, validation_alias=_aliases("stripe_subscription_id"))
    subscription_cancel_at_period_end: Optional[bool] = Field(
        None, validation_alias=_aliases("subscription_cancel_at_period_end")
    )
    subscription_pending_plan_slug: Optional[str] = Field(
        None, validation_alias=_aliases("subscription_pending_plan_slug")
    )
    subscription_pending_billing_cycle: Optional[str] = Field(
        None, validation_alias=_aliases("subscription_pending_billing_cycle")
    )
    subscription_pending_effective_date: Optional[datetime] = Field(
        None, validation_alias=_aliases("subscription_pending_effective_date")
    )
    subscription_pending_schedule_id: Optional[str] = Field(
        None, validation_alias=_aliases("subscription_pending_schedule_id")
    )

    # Notification preferences (owned by the account settings page, mirrored only)
    marketing_opt_in: Optional[bool] = Field(None, validation_alias=_aliases("marketing_opt_in"))
    weekly_summary: Optional[bool] = Field(None, validation_alias=_aliases("weekly_summary"))
    product_updates: Optional[bool] = Field(None, validation_alias=_aliases("product_updates"))

    @field_validator(
        "plan_slug", "subscription_tier", "subscription_status", "billing_cycle",
        "stripe_customer_id", "stripe_subscription_id",
        "subscription_pending_plan_slug", "subscription_pending_billing_cycle",
        "subscription_pending_schedule_id",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator(
        "current_period_end", "plan_started_at", "subscription_pending_effective_date",
        mode="before",
    )
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Optional[datetime]:
        return to_datetime(value)

    @field_validator(
        "subscription_cancel_at_period_end", "marketing_opt_in", "weekly_summary", "product_updates",
        mode="before",
    )
    @classmethod
    def _coerce_flag(cls, value: Any) -> Optional[bool]:
        return _coerce_bool(value)

    @classmethod
    def from_bag(cls, bag: Optional[Dict[str, Any]]) -> "SubscriptionMetadata":
        return cls.model_validate(bag or {})


class IdentityUser(BaseModel):
    """A user as loaded from the identity store."""
    model_config = ConfigDict(extra="ignore")

    id: str
    email: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    email_confirmed_at: Optional[datetime] = None
    last_sign_in_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    # True when built from caller-supplied metadata without an identity fetch
    partial: bool = False

    @property
    def subscription(self) -> SubscriptionMetadata:
        return SubscriptionMetadata.from_bag(self.metadata)

    def with_metadata(self, metadata: Dict[str, Any]) -> "IdentityUser":
        return self.model_copy(update={"metadata": dict(metadata)})
