"""Customer Resolver - finds or creates the Stripe customer for a user.

Lookup order:
1. stripe_customer_id already recorded in identity metadata
2. Customer search on the supabase_user_id tag
3. Customer list by email (exact, case-insensitive); backfills a missing tag,
   skips customers tagged to another user
4. Create a tagged customer (idempotency key derived from the user id)

Lookup and create failures raise CustomerProvisioningError; a customer id is
never invented locally.
"""
import stripe
from typing import Any, Dict, Optional
from models import IdentityUser, SubscriptionMetadata
from services.metadata_reconciler import merge_owned
from services.profile_persister import ProfilePersister
from services.user_stores import IdentityStoreError
from utils.stripe_objects import to_plain, metadata_of
import logging

logger = logging.getLogger(__name__)

CUSTOMER_USER_TAG = "supabase_user_id"
EMAIL_LOOKUP_LIMIT = 20


class CustomerProvisioningError(Exception):
    """Stripe customer lookup or creation failed."""
    pass


def customer_idempotency_key(user_id: str) -> str:
    return f"customer-create-{user_id}"


class CustomerResolver:
    def __init__(self, persister: ProfilePersister):
        self.persister = persister

    async def ensure_customer_id(
        self,
        user: IdentityUser,
        metadata: Optional[Dict[str, Any]] = None,
        persist: bool = False,
    ) -> str:
        """Return the user's Stripe customer id, provisioning one if needed.

        Args:
            user: identity user (id and email are used for lookup/creation).
            metadata: metadata bag to read the stored id from; defaults to user.metadata.
            persist: re-persist an already stored id (repairs a stale mirror row).
        """
        bag = user.metadata if metadata is None else metadata
        stored = SubscriptionMetadata.from_bag(bag).stripe_customer_id
        if stored:
            if persist:
                await self._record(user.with_metadata(bag), stored, force=True)
            return stored

        customer_id = await self._find_by_tag(user.id)
        if customer_id is None and user.email:
            customer_id = await self._find_by_email(user.id, user.email)
        if customer_id is None:
            customer_id = await self._create(user)

        await self._record(user.with_metadata(bag), customer_id)
        return customer_id

    # =========================================================================
    # Stripe lookups
    # =========================================================================

    async def _find_by_tag(self, user_id: str) -> Optional[str]:
        query = f"metadata['{CUSTOMER_USER_TAG}']:'{user_id}'"
        try:
            result = stripe.Customer.search(query=query, limit=1)
        except stripe.StripeError as e:
            logger.error("Customer search failed user_id=%s: %s", user_id, e)
            raise CustomerProvisioningError(f"Customer search failed: {e}") from e
        customers = to_plain(result).get("data") or []
        if customers:
            logger.info("Customer found by tag user_id=%s customer_id=%s", user_id, customers[0].get("id"))
            return customers[0].get("id")
        return None

    async def _find_by_email(self, user_id: str, email: str) -> Optional[str]:
        wanted = email.strip().lower()
        try:
            result = stripe.Customer.list(email=email, limit=EMAIL_LOOKUP_LIMIT)
        except stripe.StripeError as e:
            logger.error("Customer email lookup failed user_id=%s: %s", user_id, e)
            raise CustomerProvisioningError(f"Customer email lookup failed: {e}") from e

        for customer in to_plain(result).get("data") or []:
            if (customer.get("email") or "").strip().lower() != wanted:
                continue
            customer_id = customer.get("id")
            owner = metadata_of(customer).get(CUSTOMER_USER_TAG)
            if owner and owner != user_id:
                logger.info(
                    "Skipping email match tagged to another user customer_id=%s user_id=%s",
                    customer_id, user_id,
                )
                continue
            if not owner:
                self._backfill_tag(customer_id, user_id)
            logger.info("Customer found by email user_id=%s customer_id=%s", user_id, customer_id)
            return customer_id
        return None

    def _backfill_tag(self, customer_id: str, user_id: str) -> None:
        try:
            stripe.Customer.modify(customer_id, metadata={CUSTOMER_USER_TAG: user_id})
        except stripe.StripeError as e:
            logger.warning("Customer tag backfill failed customer_id=%s: %s", customer_id, e)

    async def _create(self, user: IdentityUser) -> str:
        params: Dict[str, Any] = {"metadata": {CUSTOMER_USER_TAG: user.id}}
        if user.email:
            params["email"] = user.email
        try:
            customer = stripe.Customer.create(
                idempotency_key=customer_idempotency_key(user.id),
                **params,
            )
        except stripe.StripeError as e:
            logger.error("Customer create failed user_id=%s: %s", user.id, e)
            raise CustomerProvisioningError(f"Customer create failed: {e}") from e
        customer_id = to_plain(customer).get("id")
        if not customer_id:
            raise CustomerProvisioningError("Customer create returned no id")
        logger.info("Customer created user_id=%s customer_id=%s", user.id, customer_id)
        return customer_id

    async def _record(self, user: IdentityUser, customer_id: str, force: bool = False) -> None:
        try:
            if force:
                await self.persister.persist(
                    user, merge_owned(user.metadata, {"stripe_customer_id": customer_id})
                )
            else:
                await self.persister.persist_customer_id(user, customer_id)
        except IdentityStoreError as e:
            # The tag on the Stripe customer makes the next lookup find it again
            logger.warning("Customer id not persisted user_id=%s customer_id=%s: %s", user.id, customer_id, e)
