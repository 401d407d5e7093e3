"""
Input validation for identifiers, captured content and search queries.

Validators raise InvalidInputError (a ValueError) so the API layer maps
them to 400 responses.
"""

import re

from memory_mesh.core.config import settings
from memory_mesh.core.errors import InvalidInputError

CONTROL_CHARACTERS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')
USER_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.@-]+$')


def validate_user_id(user_id: str) -> str:
    """
    Validate and sanitize user ID to ensure it's safe for database operations.

    Args:
        user_id: User identifier

    Returns:
        Sanitized user ID

    Raises:
        InvalidInputError: If user_id is invalid
    """
    if not user_id or not isinstance(user_id, str):
        raise InvalidInputError("User ID is required")

    user_id = user_id.strip()

    if len(user_id) > 100:
        raise InvalidInputError("User ID too long. Maximum 100 characters allowed.")

    # Letters, numbers, hyphens, underscores, dots and @
    if not USER_ID_PATTERN.match(user_id):
        raise InvalidInputError(
            "User ID can only contain letters, numbers, hyphens, underscores, dots and @"
        )

    return user_id


def validate_content(content: str, max_length: int = None) -> str:
    """
    Validate captured content.

    Control characters are removed; newlines and tabs are kept.

    Raises:
        InvalidInputError: If content is empty or too long
    """
    if not content or not isinstance(content, str):
        raise InvalidInputError("Content is required")

    max_length = max_length or settings.max_text_length
    if len(content) > max_length:
        raise InvalidInputError(f"Content too long. Maximum {max_length} characters allowed.")

    content = CONTROL_CHARACTERS.sub("", content).strip()
    if not content:
        raise InvalidInputError("Content cannot be empty")

    return content


def validate_search_query(query: str) -> str:
    """
    Validate and sanitize search query.

    Args:
        query: Search query string

    Returns:
        Sanitized search query

    Raises:
        InvalidInputError: If query is invalid
    """
    if not query or not isinstance(query, str):
        raise InvalidInputError("Search query is required")

    query = CONTROL_CHARACTERS.sub("", query).strip()

    if not query:
        raise InvalidInputError("Search query is required")

    if len(query) > 1000:
        raise InvalidInputError("Search query too long. Maximum 1000 characters allowed.")

    return query
