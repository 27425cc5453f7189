"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip Supabase/Stripe startup wiring when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

import pytest
from typing import Any, Dict, Optional

from models import IdentityUser
from services.price_catalog import PriceCatalogBuilder
from services.profile_persister import ProfilePersister
from services.user_stores import IdentityStoreError

PRICE_LITE_MONTHLY = "price_lite_monthly"
PRICE_LITE_ANNUAL = "price_lite_annual"
PRICE_PRO_MONTHLY = "price_pro_monthly"
PRICE_PRO_ANNUAL = "price_pro_annual"
PRICE_API_MONTHLY = "price_api_monthly"
PRICE_API_ANNUAL = "price_api_annual"

USER_ID = "3f6c2a1e-7a7e-4a55-9d7b-0f2f6f1c1a01"
USER_EMAIL = "trader@example.com"


class InMemoryIdentityStore:
    """Stands in for Supabase auth.admin; records every metadata write."""

    def __init__(self, users=None):
        self.users: Dict[str, IdentityUser] = {u.id: u for u in (users or [])}
        self.updates = []
        self.fail_get = False
        self.fail_update = False

    async def get_user(self, user_id: str) -> IdentityUser:
        if self.fail_get or user_id not in self.users:
            raise IdentityStoreError(f"User {user_id} not found")
        return self.users[user_id]

    async def update_metadata(self, user_id: str, metadata: Dict[str, Any]) -> None:
        if self.fail_update:
            raise IdentityStoreError("auth admin unavailable")
        self.updates.append((user_id, dict(metadata)))
        user = self.users.get(user_id) or IdentityUser(id=user_id)
        self.users[user_id] = user.with_metadata(metadata)


class InMemoryProfileStore:
    """Stands in for the users table; upsert keyed on user_id."""

    def __init__(self):
        self.table = "users"
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.fail = False

    async def upsert(self, row: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError('relation "users" does not exist')
        self.rows[row["user_id"]] = {**self.rows.get(row["user_id"], {}), **row}


def make_user(metadata: Optional[Dict[str, Any]] = None, **overrides) -> IdentityUser:
    fields = {
        "id": USER_ID,
        "email": USER_EMAIL,
        "metadata": metadata or {},
        "email_confirmed_at": "2025-01-02T10:00:00Z",
        "last_sign_in_at": "2025-03-01T08:30:00Z",
        "created_at": "2025-01-02T09:55:00Z",
    }
    fields.update(overrides)
    return IdentityUser(**fields)


@pytest.fixture
def catalog():
    builder = PriceCatalogBuilder()
    builder.register(PRICE_LITE_MONTHLY, "signals_lite", "monthly")
    builder.register(PRICE_LITE_ANNUAL, "signals_lite", "annual")
    builder.register(PRICE_PRO_MONTHLY, "signals_pro", "monthly")
    builder.register(PRICE_PRO_ANNUAL, "signals_pro", "annual")
    builder.register(PRICE_API_MONTHLY, "signals_api", "monthly")
    builder.register(PRICE_API_ANNUAL, "signals_api", "annual")
    return builder.build()


@pytest.fixture
def user():
    return make_user({"display_name": "Satoshi", "marketing_opt_in": True})


@pytest.fixture
def identity_store(user):
    return InMemoryIdentityStore([user])


@pytest.fixture
def profile_store():
    return InMemoryProfileStore()


@pytest.fixture
def persister(identity_store, profile_store):
    return ProfilePersister(identity_store, profile_store)
