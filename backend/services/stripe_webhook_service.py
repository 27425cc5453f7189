"""Stripe Webhook Service - turns Stripe billing events into reconciliations.

Key Principles:
1. Signature verification: every event must be signed with STRIPE_WEBHOOK_SECRET
2. Re-fetch: subscription state is read back from Stripe (with expansions),
   the event payload is only a fallback
3. Convergent: replaying an event reconciles to the same state, so no
   per-event ledger is kept
4. Acknowledge only after the identity write: a failed reconciliation is
   reported as a failure so Stripe retries delivery

Events Handled:
- checkout.session.completed
- customer.subscription.created / updated / deleted / trial_will_end
- invoice.payment_succeeded / invoice.paid
- invoice.payment_failed
"""
import stripe
import os
import logging
from typing import Dict, Any, Optional, Tuple
from services.subscription_sync_service import (
    SubscriptionSyncService,
    SubscriptionSyncError,
    pick_subscription,
)
from utils.stripe_objects import to_plain, object_id, metadata_of, first_metadata_value

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
_stripe_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
stripe.api_key = _stripe_key

# Invoice billing reasons where a failed payment blocks access
PAYMENT_REQUIRED_BILLING_REASONS = frozenset({"subscription_cycle", "subscription_create"})
PAYMENT_REQUIRED_STATUS = "payment_required"


class WebhookVerificationError(Exception):
    """Payload could not be verified or parsed. Not retryable."""
    pass


class WebhookConfigurationError(Exception):
    """Webhook secret is not configured; events are refused."""
    pass


def _get_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Safe fields for structured logging (event_id, event_type, livemode, customer_id, subscription_id, user_id)."""
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = metadata_of(obj)
    subscription_id = (
        obj.get("id") if obj.get("object") == "subscription" else object_id(obj.get("subscription"))
    )
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "customer_id": object_id(obj.get("customer")),
        "subscription_id": subscription_id,
        "user_id": first_metadata_value(metadata, "user_id", "supabase_user_id") or obj.get("client_reference_id"),
    }


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription id from invoice.subscription or the newer parent.subscription_details."""
    found = object_id(invoice.get("subscription"))
    if found:
        return found
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") if isinstance(parent, dict) else None
    if isinstance(details, dict):
        return object_id(details.get("subscription"))
    return None


def invoice_period_end(invoice: Dict[str, Any]) -> Any:
    if invoice.get("period_end"):
        return invoice["period_end"]
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines and isinstance(lines[0], dict):
        return (lines[0].get("period") or {}).get("end")
    return None


def invoice_status_override(event_type: str, invoice: Dict[str, Any]) -> Optional[str]:
    if event_type == "invoice.payment_failed":
        if invoice.get("billing_reason") in PAYMENT_REQUIRED_BILLING_REASONS:
            return PAYMENT_REQUIRED_STATUS
        return None
    if event_type in ("invoice.payment_succeeded", "invoice.paid"):
        return "active"
    return None


class StripeWebhookService:
    """Verifies Stripe webhooks and routes them to subscription reconciliation."""

    def __init__(self, sync_service: SubscriptionSyncService, webhook_secret: Optional[str] = None):
        self.sync_service = sync_service
        self.webhook_secret = webhook_secret if webhook_secret is not None else _get_webhook_secret()

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(
        self,
        payload: bytes,
        signature: str
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Raises:
            WebhookConfigurationError: no webhook secret configured
            WebhookVerificationError: bad signature or unparseable payload

        Returns:
            (success, message, details); success is False when the
            reconciliation could not be persisted and delivery should be retried.
        """
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not set - refusing webhook")
            raise WebhookConfigurationError("Webhook secret not configured")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s (check STRIPE_WEBHOOK_SECRET vs Stripe key mode)", e)
            raise WebhookVerificationError("Invalid signature") from e
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            raise WebhookVerificationError("Invalid payload") from e

        event = to_plain(event)
        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s customer_id=%s subscription_id=%s user_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("customer_id"), ctx.get("subscription_id"), ctx.get("user_id"),
        )

        try:
            result = await self.handle_event(event)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )
            return False, "Processing failed", {"event_id": event_id, "error": str(e)}

        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s handled=%s user_id=%s",
            event_id, event_type, result.get("handled"), result.get("user_id"),
        )
        return True, "Processed", result

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {}) or {}

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_change,
            "customer.subscription.updated": self._handle_subscription_change,
            "customer.subscription.deleted": self._handle_subscription_change,
            "customer.subscription.trial_will_end": self._handle_subscription_change,
            "invoice.payment_succeeded": self._handle_invoice,
            "invoice.paid": self._handle_invoice,
            "invoice.payment_failed": self._handle_invoice,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _handle_checkout_completed(self, session: Dict, event: Dict) -> Dict:
        """Checkout finished: record the plan the user just bought."""
        metadata = metadata_of(session)
        customer_id = object_id(session.get("customer"))
        subscription_id = object_id(session.get("subscription"))
        if session.get("mode") not in (None, "subscription"):
            logger.info(
                "Ignoring checkout mode: %s checkout_session_id=%s", session.get("mode"), session.get("id"),
            )
            return {"handled": False, "mode": session.get("mode")}

        user_id = (
            first_metadata_value(metadata, "user_id", "supabase_user_id")
            or (session.get("client_reference_id") or "").strip()
            or await self._user_id_from_customer(session.get("customer"))
        )
        logger.info(
            "HANDLER_START event.type=checkout.session.completed stripe_customer_id=%s subscription_id=%s checkout_session_id=%s mode=%s user_id=%s",
            customer_id, subscription_id, session.get("id"), session.get("mode"), user_id,
        )

        if not user_id:
            logger.warning("Checkout session %s completed without a resolvable user", session.get("id"))
            return {"handled": False, "reason": "user_unresolved"}

        subscription = await self.sync_service.fetch_subscription(subscription_id) if subscription_id else None
        if subscription is None:
            # Subscription not retrievable yet: record what the session says was bought
            subscription = {
                "id": subscription_id,
                "status": "incomplete",
                "customer": customer_id,
                "metadata": metadata,
            }

        merged = await self._reconcile(user_id, subscription)
        logger.info(
            "HANDLER_END event.type=checkout.session.completed user_id=%s subscription_status=%s plan_slug=%s",
            user_id, merged.get("subscription_status"), merged.get("plan_slug"),
        )
        return {"handled": True, "user_id": user_id, "subscription_id": subscription_id}

    async def _handle_subscription_change(self, subscription: Dict, event: Dict) -> Dict:
        """customer.subscription.* - reconcile the subscription as Stripe has it now."""
        event_type = event.get("type")
        subscription_id = subscription.get("id")
        logger.info(
            "HANDLER_START event.type=%s stripe_customer_id=%s subscription_id=%s status=%s",
            event_type, object_id(subscription.get("customer")), subscription_id, subscription.get("status"),
        )

        current = None
        if subscription_id:
            current = await self.sync_service.fetch_subscription(subscription_id)
        current = current or subscription

        user_id = await self._user_id_from_subscription(current)
        if not user_id:
            logger.warning("Subscription event missing user_id subscription_id=%s", subscription_id)
            return {"handled": False, "reason": "user_unresolved", "subscription_id": subscription_id}

        merged = await self._reconcile(user_id, current)
        logger.info(
            "HANDLER_END event.type=%s user_id=%s subscription_status=%s plan_slug=%s pending_plan_slug=%s",
            event_type, user_id, merged.get("subscription_status"), merged.get("plan_slug"),
            merged.get("subscription_pending_plan_slug"),
        )
        return {"handled": True, "user_id": user_id, "subscription_id": subscription_id}

    async def _handle_invoice(self, invoice: Dict, event: Dict) -> Dict:
        """invoice.* - payment outcome drives the status override."""
        event_type = event.get("type")
        customer_id = object_id(invoice.get("customer"))
        subscription_id = invoice_subscription_id(invoice)
        logger.info(
            "HANDLER_START event.type=%s stripe_customer_id=%s subscription_id=%s billing_reason=%s",
            event_type, customer_id, subscription_id, invoice.get("billing_reason"),
        )

        subscription = None
        if subscription_id:
            subscription = await self.sync_service.fetch_subscription(subscription_id)
        if subscription is None and customer_id:
            try:
                subscription = pick_subscription(
                    await self.sync_service.list_customer_subscriptions(customer_id)
                )
            except stripe.StripeError as e:
                logger.warning("Subscription list failed customer_id=%s: %s", customer_id, e)
        if subscription is None:
            logger.warning("Invoice %s has no resolvable subscription", invoice.get("id"))
            return {"handled": False, "reason": "subscription_unresolved"}

        user_id = (
            first_metadata_value(metadata_of(invoice), "user_id", "supabase_user_id")
            or await self._user_id_from_subscription(subscription)
            or await self._user_id_from_customer(invoice.get("customer"))
        )
        if not user_id:
            logger.warning("Invoice event missing user_id invoice_id=%s", invoice.get("id"))
            return {"handled": False, "reason": "user_unresolved", "subscription_id": subscription.get("id")}

        status_override = invoice_status_override(event_type, invoice)
        merged = await self._reconcile(
            user_id,
            subscription,
            status_override=status_override,
            current_period_end_override=invoice_period_end(invoice),
        )
        logger.info(
            "HANDLER_END event.type=%s user_id=%s subscription_status=%s status_override=%s",
            event_type, user_id, merged.get("subscription_status"), status_override,
        )
        return {"handled": True, "user_id": user_id, "subscription_id": subscription.get("id")}

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _reconcile(self, user_id: str, subscription: Dict, **overrides) -> Dict:
        merged = await self.sync_service.reconcile(user_id, subscription, **overrides)
        if merged is None:
            raise SubscriptionSyncError(f"Reconciliation not persisted for user {user_id}")
        return merged

    async def _user_id_from_subscription(self, subscription: Dict) -> Optional[str]:
        found = first_metadata_value(metadata_of(subscription), "user_id", "supabase_user_id")
        if found:
            return found
        return await self._user_id_from_customer(subscription.get("customer"))

    async def _user_id_from_customer(self, customer: Any) -> Optional[str]:
        """User id tagged on the Stripe customer; fetches the customer when only its id is known."""
        if isinstance(customer, str) and customer:
            try:
                customer = to_plain(stripe.Customer.retrieve(customer))
            except stripe.StripeError as e:
                logger.warning("Customer retrieve failed customer_id=%s: %s", customer, e)
                return None
        if not isinstance(customer, dict):
            return None
        return first_metadata_value(metadata_of(customer), "supabase_user_id", "user_id")
