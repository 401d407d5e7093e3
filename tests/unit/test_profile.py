"""
Unit tests for the user profile refresh service.
"""

from datetime import datetime, timedelta

import pytest

from memory_mesh.core.config import settings
from memory_mesh.core.cooldown import UserCooldown
from memory_mesh.core.database import session_scope
from memory_mesh.models.memory import UserProfile
from memory_mesh.services.profile_service import ProfileRefreshService


@pytest.fixture
def profiles(provider, session_factory):
    return ProfileRefreshService(provider, session_factory, UserCooldown(600))


def age_profile(session_factory, user_id: str, days: float) -> None:
    with session_scope(session_factory) as db:
        db.get(UserProfile, user_id).last_updated = datetime.utcnow() - timedelta(days=days)


class TestProfileRefresh:

    async def test_refresh_summarizes_top_memories(self, profiles, provider, memory_factory):
        memory_factory(content="a", title="Low", summary="minor note", importance_score=0.2)
        memory_factory(content="b", title="High", summary="major note", importance_score=0.9)
        memory_factory(content="c", title="Unsummarized")

        profile = await profiles.refresh("user123")

        assert profile.version == 1
        assert profile.memory_count == 3
        assert profile.profile_text == "Summary of: - High: major note\n- Low: minor note"
        assert provider.summary_calls == 1

    async def test_version_increments(self, profiles, memory_factory):
        memory_factory(content="a", summary="note")

        await profiles.refresh("user123")
        profile = await profiles.refresh("user123")

        assert profile.version == 2

    def test_missing_profile_is_due(self, profiles):
        assert profiles.should_refresh("user123", window_days=7) is True

    async def test_window(self, profiles, session_factory, memory_factory):
        memory_factory(content="a", summary="note")
        await profiles.refresh("user123")

        assert profiles.should_refresh("user123", window_days=3) is False

        age_profile(session_factory, "user123", days=4)
        assert profiles.should_refresh("user123", window_days=3) is True
        assert profiles.should_refresh("user123", window_days=7) is False

    async def test_users_without_memories_cool_down(self, profiles, provider):
        assert await profiles.refresh("user123") is None
        assert provider.summary_calls == 0
        assert profiles.should_refresh("user123", window_days=7) is False
        assert await profiles.refresh_if_due("user123", window_days=7) is None

    def test_default_cooldown_uses_profile_setting(self, provider, session_factory, monkeypatch):
        monkeypatch.setattr(settings, "profile_cooldown_minutes", 45)

        service = ProfileRefreshService(provider, session_factory)

        assert service.cooldown.window_seconds == 45 * 60
