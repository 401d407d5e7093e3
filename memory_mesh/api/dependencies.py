"""
FastAPI dependencies for dependency injection.

Provides the shared MemoryService instance used by the endpoints.
"""

import logging
from typing import Optional

from memory_mesh.services.memory_service import MemoryService

logger = logging.getLogger(__name__)

# Global service instance (singleton pattern)
_memory_service: Optional[MemoryService] = None


def get_memory_service() -> MemoryService:
    """
    Get memory service instance.

    Returns:
        MemoryService: Singleton memory service instance

    Example:
        >>> @app.get("/test")
        >>> def test(service: MemoryService = Depends(get_memory_service)):
        ...     return service.health()
    """
    global _memory_service
    if _memory_service is None:
        logger.info("Initializing memory service")
        _memory_service = MemoryService()
    return _memory_service


def reset_memory_service() -> None:
    """Drop the singleton so the next request builds a fresh service."""
    global _memory_service
    _memory_service = None
