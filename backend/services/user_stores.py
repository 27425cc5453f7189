"""Store adapters over Supabase.

IdentityStore wraps auth.admin (user_metadata is the authoritative copy of
subscription state). ProfileStore wraps the relational `users` table, a
read-optimized mirror keyed by user_id.

The supabase client is synchronous; methods are async so services can call
them the same way they call the Stripe SDK.
"""
from typing import Any, Dict, Optional
from supabase import Client
from models import IdentityUser
import logging

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_TABLE = "users"


class IdentityStoreError(Exception):
    """Identity store read or write failed. Fatal for the current reconciliation."""
    pass


def identity_user_from_supabase(user: Any) -> IdentityUser:
    """Normalize a gotrue User (model or dict) into an IdentityUser."""
    def field(name):
        if isinstance(user, dict):
            return user.get(name)
        return getattr(user, name, None)

    metadata = field("user_metadata")
    if metadata is None:
        metadata = field("raw_user_meta_data")
    return IdentityUser(
        id=str(field("id")),
        email=field("email"),
        metadata=dict(metadata or {}),
        email_confirmed_at=field("email_confirmed_at"),
        last_sign_in_at=field("last_sign_in_at"),
        created_at=field("created_at"),
    )


class IdentityStore:
    def __init__(self, client: Client):
        self._client = client

    async def get_user(self, user_id: str) -> IdentityUser:
        try:
            response = self._client.auth.admin.get_user_by_id(user_id)
        except Exception as e:
            raise IdentityStoreError(f"Unable to fetch user {user_id}: {e}") from e
        user = getattr(response, "user", None)
        if user is None:
            raise IdentityStoreError(f"User {user_id} not found")
        return identity_user_from_supabase(user)

    async def update_metadata(self, user_id: str, metadata: Dict[str, Any]) -> None:
        """Replace the user's metadata bag with a freshly merged one."""
        try:
            self._client.auth.admin.update_user_by_id(user_id, {"user_metadata": metadata})
        except Exception as e:
            raise IdentityStoreError(f"Unable to update metadata for user {user_id}: {e}") from e


class ProfileStore:
    def __init__(self, client: Client, table: Optional[str] = None):
        self._client = client
        self.table = table or DEFAULT_PROFILE_TABLE

    async def upsert(self, row: Dict[str, Any]) -> None:
        self._client.table(self.table).upsert(row, on_conflict="user_id").execute()
