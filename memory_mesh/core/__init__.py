"""Core application components."""

from .config import settings, get_settings, create_directories

__all__ = ["settings", "get_settings", "create_directories"]
