"""
User profile refresh.

A user's profile is a short AI summary of their recent memory summaries.
It is refreshed in the background after enrichment when the last refresh is
older than the applicable window.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from memory_mesh.core.config import settings
from memory_mesh.core.cooldown import UserCooldown
from memory_mesh.core.database import SessionFactory, SessionLocal, session_scope
from memory_mesh.memory.provider import AIProvider
from memory_mesh.models.memory import Memory, UserProfile

logger = logging.getLogger(__name__)

PROFILE_CONTENT_TYPE = "user_profile"


class ProfileRefreshService:
    """
    Maintains one UserProfile row per user.

    Example:
        >>> service = ProfileRefreshService(provider)
        >>> if service.should_refresh("user123", window_days=7):
        ...     await service.refresh("user123")
    """

    def __init__(
        self,
        provider: AIProvider,
        session_factory: SessionFactory = SessionLocal,
        cooldown: Optional[UserCooldown] = None
    ):
        self.provider = provider
        self.session_factory = session_factory
        self.cooldown = cooldown or UserCooldown(settings.profile_cooldown_minutes * 60)

    def should_refresh(self, user_id: str, window_days: float) -> bool:
        """
        Whether the profile is missing or older than window_days.

        Users on cooldown are never due.
        """
        if self.cooldown.is_cooling(user_id):
            return False

        with session_scope(self.session_factory) as db:
            profile = db.get(UserProfile, user_id)
            if profile is None or profile.last_updated is None:
                return True
            return datetime.utcnow() - profile.last_updated >= timedelta(days=window_days)

    async def refresh(self, user_id: str) -> Optional[UserProfile]:
        """
        Rebuild a user's profile from their most important recent memories.

        Args:
            user_id: User to refresh

        Returns:
            Optional[UserProfile]: Updated profile, or None if the user has no memories
        """
        with session_scope(self.session_factory) as db:
            memories = db.query(Memory).filter(
                Memory.user_id == user_id,
                Memory.summary.isnot(None)
            ).order_by(
                Memory.importance_score.desc(), Memory.created_at.desc()
            ).limit(settings.profile_max_memories).all()

            memory_count = db.query(Memory).filter(Memory.user_id == user_id).count()
            lines = [
                f"- {m.title or 'Untitled'}: {m.summary}" for m in memories if m.summary
            ]

        if not lines:
            logger.info(f"No summarized memories for user {user_id}; profile refresh paused")
            self.cooldown.mark(user_id)
            return None

        profile_text = await self.provider.summarize(
            "\n".join(lines),
            {"content_type": PROFILE_CONTENT_TYPE}
        )

        with session_scope(self.session_factory) as db:
            profile = db.get(UserProfile, user_id)
            if profile is None:
                profile = UserProfile(user_id=user_id, version=0)
                db.add(profile)
            profile.profile_text = profile_text.strip()
            profile.memory_count = memory_count
            profile.version = (profile.version or 0) + 1
            profile.last_updated = datetime.utcnow()

        logger.info(f"Refreshed profile for user {user_id} from {len(lines)} memories")
        return profile

    async def refresh_if_due(self, user_id: str, window_days: float) -> Optional[UserProfile]:
        """Refresh when should_refresh says so."""
        if not self.should_refresh(user_id, window_days):
            logger.debug(f"Profile for user {user_id} is fresh")
            return None
        return await self.refresh(user_id)
