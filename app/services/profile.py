"""Profile lookup against the account service's read-only projection."""

import logging
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user_profile import UserProfile

logger = logging.getLogger(__name__)


class ProfileProvider(Protocol):
    async def get_profile(self, db: AsyncSession, user_id: str) -> Optional[UserProfile]:
        ...

    async def get_profiles(self, db: AsyncSession, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        ...


class DatabaseProfileProvider:
    """Reads profiles from the `user_profiles` table."""

    @staticmethod
    async def get_profile(db: AsyncSession, user_id: str) -> Optional[UserProfile]:
        result = await db.execute(select(UserProfile).where(UserProfile.id == user_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_profiles(db: AsyncSession, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        result = await db.execute(select(UserProfile).where(UserProfile.id.in_(ids)))
        profiles = {profile.id: profile for profile in result.scalars().all()}
        missing = set(ids) - set(profiles)
        if missing:
            logger.debug(f"No profile for users: {sorted(missing)}")
        return profiles


profile_provider: ProfileProvider = DatabaseProfileProvider()
