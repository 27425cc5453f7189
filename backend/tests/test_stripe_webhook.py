"""
Stripe webhook service tests: verification, event routing, user resolution,
invoice status overrides and the acknowledge-only-after-write contract.
"""
import pytest
import stripe
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import USER_ID
from services.customer_resolver import CustomerResolver
from services.stripe_webhook_service import (
    StripeWebhookService,
    WebhookConfigurationError,
    WebhookVerificationError,
    invoice_period_end,
    invoice_status_override,
    invoice_subscription_id,
)
from services.subscription_sync_service import SubscriptionSyncService

SECRET = "whsec_test_secret"
SUB_ID = "sub_test_001"
CUS_ID = "cus_test_001"


def _event(event_type, obj, event_id="evt_test_001"):
    return {"id": event_id, "type": event_type, "livemode": False, "data": {"object": obj}}


def _subscription(**overrides):
    sub = {
        "id": SUB_ID,
        "object": "subscription",
        "status": "active",
        "customer": CUS_ID,
        "current_period_start": 1735689600,
        "current_period_end": 1738368000,
        "cancel_at_period_end": False,
        "metadata": {"user_id": USER_ID},
        "items": {"data": [{"price": {"id": "price_pro_monthly"}}]},
    }
    sub.update(overrides)
    return sub


@pytest.fixture
def stub_sync():
    sync = MagicMock()
    sync.fetch_subscription = AsyncMock(return_value=None)
    sync.list_customer_subscriptions = AsyncMock(return_value=[])
    sync.reconcile = AsyncMock(return_value={"subscription_status": "active", "plan_slug": "signals_pro"})
    return sync


@pytest.fixture
def stub_service(stub_sync):
    return StripeWebhookService(stub_sync, webhook_secret=SECRET)


async def _process(service, event):
    with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", return_value=event):
        return await service.process_webhook(b"{}", "t=1,v1=sig")


class TestVerification:

    @pytest.mark.asyncio
    async def test_missing_secret_refused(self, stub_sync):
        service = StripeWebhookService(stub_sync, webhook_secret="")
        with pytest.raises(WebhookConfigurationError):
            await service.process_webhook(b"{}", "sig")
        stub_sync.reconcile.assert_not_called()

    @pytest.mark.asyncio
    async def test_bad_signature(self, stub_service, stub_sync):
        error = stripe.SignatureVerificationError("No signatures found", "bad")
        with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", side_effect=error):
            with pytest.raises(WebhookVerificationError):
                await stub_service.process_webhook(b"{}", "bad")
        stub_sync.reconcile.assert_not_called()

    @pytest.mark.asyncio
    async def test_bad_payload(self, stub_service):
        with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", side_effect=ValueError("bad json")):
            with pytest.raises(WebhookVerificationError):
                await stub_service.process_webhook(b"not json", "sig")

    @pytest.mark.asyncio
    async def test_secret_passed_to_construct_event(self, stub_service):
        event = _event("ping", {})
        with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", return_value=event) as construct:
            await stub_service.process_webhook(b"payload", "t=1,v1=sig")
        construct.assert_called_once_with(b"payload", "t=1,v1=sig", SECRET)


class TestSubscriptionEvents:

    @pytest.mark.asyncio
    async def test_updated_reconciles_fetched_subscription(self, stub_service, stub_sync):
        fresh = _subscription(status="past_due")
        stub_sync.fetch_subscription.return_value = fresh

        success, message, details = await _process(
            stub_service, _event("customer.subscription.updated", _subscription())
        )

        assert success is True
        assert details["handled"] is True
        assert details["user_id"] == USER_ID
        stub_sync.fetch_subscription.assert_awaited_once_with(SUB_ID)
        stub_sync.reconcile.assert_awaited_once_with(USER_ID, fresh)

    @pytest.mark.asyncio
    async def test_falls_back_to_event_object(self, stub_service, stub_sync):
        raw = _subscription(status="canceled")
        await _process(stub_service, _event("customer.subscription.deleted", raw))
        stub_sync.reconcile.assert_awaited_once_with(USER_ID, raw)

    @pytest.mark.asyncio
    async def test_user_from_customer_metadata(self, stub_service, stub_sync):
        raw = _subscription(metadata={})
        customer = {"id": CUS_ID, "metadata": {"supabase_user_id": USER_ID}}
        with patch("services.stripe_webhook_service.stripe.Customer.retrieve", return_value=customer) as retrieve:
            success, _, details = await _process(stub_service, _event("customer.subscription.created", raw))
        retrieve.assert_called_once_with(CUS_ID)
        assert success is True
        assert details["user_id"] == USER_ID

    @pytest.mark.asyncio
    async def test_unresolvable_user_acknowledged(self, stub_service, stub_sync):
        raw = _subscription(metadata={}, customer={"id": CUS_ID, "metadata": {}})
        success, _, details = await _process(stub_service, _event("customer.subscription.updated", raw))
        assert success is True
        assert details == {"handled": False, "reason": "user_unresolved", "subscription_id": SUB_ID}
        stub_sync.reconcile.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_reconcile_is_not_acknowledged(self, stub_service, stub_sync):
        stub_sync.reconcile.return_value = None
        success, message, details = await _process(
            stub_service, _event("customer.subscription.updated", _subscription())
        )
        assert success is False
        assert details["event_id"] == "evt_test_001"

    @pytest.mark.asyncio
    async def test_unhandled_event_type_ignored(self, stub_service, stub_sync):
        success, _, details = await _process(stub_service, _event("customer.created", {"id": CUS_ID}))
        assert success is True
        assert details == {"handled": False, "event_type": "customer.created"}
        stub_sync.reconcile.assert_not_called()


class TestCheckoutCompleted:

    @pytest.mark.asyncio
    async def test_reconciles_checkout_subscription(self, stub_service, stub_sync):
        fresh = _subscription()
        stub_sync.fetch_subscription.return_value = fresh
        session = {
            "id": "cs_test_001",
            "mode": "subscription",
            "customer": CUS_ID,
            "subscription": SUB_ID,
            "client_reference_id": USER_ID,
            "metadata": {},
        }
        success, _, details = await _process(stub_service, _event("checkout.session.completed", session))
        assert success is True
        stub_sync.reconcile.assert_awaited_once_with(USER_ID, fresh)

    @pytest.mark.asyncio
    async def test_without_subscription_uses_session_plan(self, stub_service, stub_sync):
        session = {
            "id": "cs_test_002",
            "mode": "subscription",
            "customer": CUS_ID,
            "subscription": None,
            "metadata": {"user_id": USER_ID, "plan_slug": "signals_lite", "billing_cycle": "annual"},
        }
        await _process(stub_service, _event("checkout.session.completed", session))

        (user_id, provisional), _ = stub_sync.reconcile.call_args
        assert user_id == USER_ID
        assert provisional["status"] == "incomplete"
        assert provisional["customer"] == CUS_ID
        assert provisional["metadata"]["plan_slug"] == "signals_lite"

    @pytest.mark.asyncio
    async def test_payment_mode_ignored(self, stub_service, stub_sync):
        session = {"id": "cs_test_003", "mode": "payment", "metadata": {"user_id": USER_ID}}
        success, _, details = await _process(stub_service, _event("checkout.session.completed", session))
        assert success is True
        assert details["handled"] is False
        stub_sync.reconcile.assert_not_called()

    @pytest.mark.asyncio
    async def test_payment_mode_skips_customer_lookup(self, stub_service, stub_sync):
        session = {"id": "cs_test_004", "mode": "payment", "customer": CUS_ID, "metadata": {}}
        with patch("services.stripe_webhook_service.stripe.Customer.retrieve") as retrieve:
            success, _, details = await _process(stub_service, _event("checkout.session.completed", session))
        assert success is True
        assert details == {"handled": False, "mode": "payment"}
        retrieve.assert_not_called()
        stub_sync.fetch_subscription.assert_not_called()


class TestInvoiceEvents:

    @pytest.mark.asyncio
    async def test_payment_failed_on_cycle_requires_payment(self, stub_service, stub_sync):
        fresh = _subscription(status="past_due")
        stub_sync.fetch_subscription.return_value = fresh
        invoice = {
            "id": "in_001",
            "customer": CUS_ID,
            "subscription": SUB_ID,
            "billing_reason": "subscription_cycle",
            "period_end": 1740787200,
        }
        await _process(stub_service, _event("invoice.payment_failed", invoice))
        stub_sync.reconcile.assert_awaited_once_with(
            USER_ID, fresh, status_override="payment_required", current_period_end_override=1740787200,
        )

    @pytest.mark.asyncio
    async def test_subscription_from_parent_details_and_customer_list(self, stub_service, stub_sync):
        listed = _subscription()
        stub_sync.list_customer_subscriptions.return_value = [listed]
        invoice = {
            "id": "in_002",
            "customer": CUS_ID,
            "parent": {"subscription_details": {"subscription": SUB_ID}},
            "billing_reason": "subscription_create",
            "lines": {"data": [{"period": {"start": 1, "end": 1740787200}}]},
        }
        await _process(stub_service, _event("invoice.payment_succeeded", invoice))
        stub_sync.fetch_subscription.assert_awaited_once_with(SUB_ID)
        stub_sync.list_customer_subscriptions.assert_awaited_once_with(CUS_ID)
        _, kwargs = stub_sync.reconcile.call_args
        assert kwargs == {"status_override": "active", "current_period_end_override": 1740787200}

    @pytest.mark.asyncio
    async def test_invoice_without_subscription_acknowledged(self, stub_service, stub_sync):
        invoice = {"id": "in_003", "customer": None, "billing_reason": "manual"}
        success, _, details = await _process(stub_service, _event("invoice.paid", invoice))
        assert success is True
        assert details["reason"] == "subscription_unresolved"
        stub_sync.reconcile.assert_not_called()

    def test_status_override_rules(self):
        assert invoice_status_override("invoice.payment_failed", {"billing_reason": "subscription_cycle"}) == "payment_required"
        assert invoice_status_override("invoice.payment_failed", {"billing_reason": "subscription_create"}) == "payment_required"
        assert invoice_status_override("invoice.payment_failed", {"billing_reason": "manual"}) is None
        assert invoice_status_override("invoice.paid", {}) == "active"
        assert invoice_status_override("invoice.payment_succeeded", {}) == "active"

    def test_invoice_field_helpers(self):
        assert invoice_subscription_id({"subscription": {"id": "sub_x"}}) == "sub_x"
        assert invoice_subscription_id({"parent": {"subscription_details": {"subscription": "sub_y"}}}) == "sub_y"
        assert invoice_subscription_id({"parent": None}) is None
        assert invoice_period_end({"period_end": 5, "lines": {"data": [{"period": {"end": 9}}]}}) == 5
        assert invoice_period_end({"lines": {"data": [{"period": {"end": 9}}]}}) == 9
        assert invoice_period_end({}) is None


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_subscription_event_updates_user(self, catalog, identity_store, profile_store, persister):
        sync = SubscriptionSyncService(catalog, identity_store, persister, CustomerResolver(persister))
        service = StripeWebhookService(sync, webhook_secret=SECRET)
        fresh = _subscription(status="incomplete", latest_invoice={"id": "in_1", "status": "paid"})

        with patch("services.subscription_sync_service.stripe.Subscription.retrieve", return_value=fresh):
            success, _, _ = await _process(service, _event("customer.subscription.created", _subscription()))

        assert success is True
        metadata = identity_store.users[USER_ID].metadata
        assert metadata["subscription_status"] == "active"
        assert metadata["plan_slug"] == "signals_pro"
        assert metadata["display_name"] == "Satoshi"
        assert profile_store.rows[USER_ID]["subscription_tier"] == "pro"

    @pytest.mark.asyncio
    async def test_identity_outage_is_not_acknowledged(self, catalog, identity_store, persister):
        identity_store.fail_update = True
        sync = SubscriptionSyncService(catalog, identity_store, persister, CustomerResolver(persister))
        service = StripeWebhookService(sync, webhook_secret=SECRET)

        with patch("services.subscription_sync_service.stripe.Subscription.retrieve", return_value=_subscription()):
            success, _, _ = await _process(service, _event("customer.subscription.updated", _subscription()))
        assert success is False
