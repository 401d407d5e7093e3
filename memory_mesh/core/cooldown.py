"""
Per-user cooldown for expensive recomputation.

Process-local and ephemeral: entries expire after the configured window
and are lost on restart.
"""

import time
from typing import Callable, Dict, Optional


class UserCooldown:
    """Time-boxed set of users whose recomputation is paused."""

    def __init__(self, window_seconds: float, clock: Optional[Callable[[], float]] = None):
        self.window_seconds = window_seconds
        self.clock = clock or time.monotonic
        self._until: Dict[str, float] = {}

    def mark(self, user_id: str) -> None:
        """Start a cooldown for a user."""
        self._until[user_id] = self.clock() + self.window_seconds

    def is_cooling(self, user_id: str) -> bool:
        """Whether the user is still within a cooldown window."""
        until = self._until.get(user_id)
        if until is None:
            return False
        if self.clock() >= until:
            del self._until[user_id]
            return False
        return True

    def clear(self, user_id: str) -> None:
        """End a user's cooldown early."""
        self._until.pop(user_id, None)
