"""Profile store interface"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .models import Profile


class IProfileStore(ABC):
    """Keyed store returning at most one profile per user id"""

    @abstractmethod
    async def get_profile_by_id(self, user_id: str) -> Optional[Profile]:
        """
        Fetch the profile for a user.

        Returns:
            The Profile, or None if the user has not completed onboarding

        Raises:
            ProfileStoreError: For any failure other than "not found"
        """
        pass

    @abstractmethod
    async def create_profile(self, user_id: str, fields: Dict[str, Any]) -> Profile:
        """
        Create the profile row at the end of role selection.

        Raises:
            ProfileStoreError: If the row could not be created
        """
        pass

    @abstractmethod
    async def update_profile(self, user_id: str, values: Dict[str, Any]) -> Optional[Profile]:
        """
        Update columns of an existing profile.

        Returns:
            The updated Profile, or None if no row matched

        Raises:
            ProfileStoreError: If the update failed
        """
        pass
