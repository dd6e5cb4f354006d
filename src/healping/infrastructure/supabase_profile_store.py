"""Supabase `profiles` table as the profile store"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import httpx

from ..core.errors import BackendError, ProfileStoreError
from ..core.models import Profile, Role
from ..core.profile_store import IProfileStore
from .supabase_client import SupabaseRestClient, eq

logger = logging.getLogger(__name__)

PROFILE_FIELDS = (
    "role",
    "email",
    "full_name",
    "first_name",
    "last_name",
    "phone",
    "avatar_url",
    "clinic_id",
    "preferences",
)


class SupabaseProfileStore(IProfileStore):
    """Reads, creates and updates rows in the `profiles` table"""

    def __init__(self, client: SupabaseRestClient, table: str = "profiles"):
        self.client = client
        self.table = table

    async def get_profile_by_id(self, user_id: str) -> Optional[Profile]:
        try:
            row = await self.client.select(self.table, {"id": eq(user_id)}, single=True)
        except BackendError as e:
            if e.is_not_found:
                return None
            raise ProfileStoreError(e.message) from e
        except httpx.HTTPError as e:
            raise ProfileStoreError(f"Failed to reach profile store: {e}") from e

        try:
            return Profile.from_row(row)
        except ValueError as e:
            raise ProfileStoreError(f"Malformed profile row for {user_id}: {e}") from e

    async def create_profile(self, user_id: str, fields: Dict[str, Any]) -> Profile:
        """
        Insert the profile created by role selection.

        Args:
            user_id: Session user id (becomes the profile id)
            fields: Subset of PROFILE_FIELDS; `role` is required

        Raises:
            ProfileStoreError: On an unknown role or a failed insert
        """
        try:
            role = Role(fields.get("role"))
        except ValueError as e:
            raise ProfileStoreError(f"Unknown role: {fields.get('role')!r}") from e

        now = datetime.now(timezone.utc).isoformat()
        row = {key: fields[key] for key in PROFILE_FIELDS if fields.get(key) is not None}
        row.update(
            {
                "id": user_id,
                "role": role.value,
                "preferences": fields.get("preferences") or {},
                "created_at": now,
                "updated_at": now,
            }
        )

        try:
            inserted = await self.client.insert(self.table, row)
        except BackendError as e:
            raise ProfileStoreError(e.message) from e
        except httpx.HTTPError as e:
            raise ProfileStoreError(f"Failed to reach profile store: {e}") from e

        logger.info(f"Created {role.value} profile for user {user_id}")

        if isinstance(inserted, list) and inserted:
            return Profile.from_row(inserted[0])
        return Profile.from_row(row)

    async def update_profile(self, user_id: str, values: Dict[str, Any]) -> Optional[Profile]:
        unknown = set(values) - set(PROFILE_FIELDS)
        if unknown:
            raise ProfileStoreError(f"Unknown profile fields: {sorted(unknown)}")

        changes = {**values, "updated_at": datetime.now(timezone.utc).isoformat()}
        try:
            rows = await self.client.update(self.table, changes, {"id": eq(user_id)})
        except BackendError as e:
            raise ProfileStoreError(e.message) from e
        except httpx.HTTPError as e:
            raise ProfileStoreError(f"Failed to reach profile store: {e}") from e

        if not rows:
            logger.warning(f"Profile update for {user_id} matched no rows")
            return None

        logger.info(f"Updated profile {user_id}: {', '.join(sorted(values))}")
        return Profile.from_row(rows[0])
