"""
Memory API endpoints.

Provides REST API endpoints for content submission, job tracking, hybrid
search, cited answers, the memory mesh graph and graph export/import.
"""

import logging
from datetime import datetime
from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from memory_mesh.api.dependencies import get_memory_service
from memory_mesh.core.errors import NotFoundError
from memory_mesh.models.schemas import (
    APIResponse, AnswerRequest, ContentSubmission, ContextRequest, ExportBundle, SearchRequest
)
from memory_mesh.services.memory_service import MemoryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/memory", tags=["memory"])


def create_api_response(success: bool, data=None, error: str = None) -> APIResponse:
    """
    Create standardized API response.

    Args:
        success: Whether operation was successful
        data: Response data
        error: Error message if failed

    Returns:
        APIResponse: Standardized response
    """
    return APIResponse(
        success=success,
        data=data,
        error=error,
        timestamp=datetime.utcnow()
    )


def raise_http_error(error: Exception, action: str) -> NoReturn:
    """
    Map a service error onto an HTTPException.

    NotFoundError -> 404, ValueError (including InvalidInputError) -> 400,
    anything else -> 500 with a generic message.
    """
    if isinstance(error, HTTPException):
        raise error
    if isinstance(error, NotFoundError):
        logger.info(f"{action}: {error}")
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ValueError):
        logger.warning(f"Invalid request ({action}): {error}")
        raise HTTPException(status_code=400, detail=str(error))
    logger.error(f"{action} failed: {error}", exc_info=True)
    raise HTTPException(status_code=500, detail=f"{action} failed")


# ================================
# Submission & Jobs
# ================================

@router.post("/submit", response_model=APIResponse)
async def submit_content(
    submission: ContentSubmission,
    service: MemoryService = Depends(get_memory_service)
):
    """
    Submit captured content for enrichment.

    Duplicates of stored memories are merged and answered immediately;
    everything else is queued.

    Example:
        POST /api/v1/memory/submit
        {
            "user_id": "user123",
            "content": "PostgreSQL 16 adds logical replication from standbys...",
            "url": "https://www.postgresql.org/about/news/postgresql-16-released"
        }

        Response:
        {
            "success": true,
            "data": {"job_id": "6f1c...", "memory_id": null, "is_duplicate": false, "reason": null}
        }
    """
    try:
        logger.info(f"Processing submission for user {submission.user_id}")
        response = service.submit_content(submission)
        return create_api_response(success=True, data=response.model_dump())
    except Exception as e:
        raise_http_error(e, "Content submission")


@router.get("/jobs/{job_id}", response_model=APIResponse)
async def get_job_status(job_id: str, service: MemoryService = Depends(get_memory_service)):
    """Get the status (and result, once done) of a job."""
    try:
        status = service.get_job_status(job_id)
        return create_api_response(success=True, data=status.model_dump(mode="json"))
    except Exception as e:
        raise_http_error(e, "Job lookup")


@router.post("/jobs/{job_id}/cancel", response_model=APIResponse)
async def cancel_job(job_id: str, service: MemoryService = Depends(get_memory_service)):
    """
    Request cooperative cancellation of a job.

    The worker observes the request at its next checkpoint.
    """
    try:
        status = service.cancel_job(job_id)
        return create_api_response(success=True, data=status.model_dump(mode="json"))
    except Exception as e:
        raise_http_error(e, "Job cancellation")


# ================================
# Search & Answer
# ================================

@router.post("/search", response_model=APIResponse)
async def search_memories(request: SearchRequest, service: MemoryService = Depends(get_memory_service)):
    """
    Hybrid keyword + semantic search.

    Example:
        POST /api/v1/memory/search
        {"user_id": "user123", "query": "postgres replication", "limit": 5}

        Response:
        {
            "success": true,
            "data": {
                "results": [{"memory_id": "...", "blended_score": 0.74, ...}],
                "total_found": 3,
                "semantic_available": true,
                "search_time_ms": 45.2
            }
        }
    """
    try:
        logger.info(f"Processing search request for user {request.user_id}")
        response = await service.search(request)
        return create_api_response(success=True, data=response.model_dump(mode="json"))
    except Exception as e:
        raise_http_error(e, "Memory search")


@router.post("/answer", response_model=APIResponse)
async def request_answer(request: AnswerRequest, service: MemoryService = Depends(get_memory_service)):
    """Queue a cited-answer job and return its id."""
    try:
        response = service.request_answer(request)
        return create_api_response(success=True, data=response.model_dump())
    except Exception as e:
        raise_http_error(e, "Answer request")


@router.get("/answer/{job_id}", response_model=APIResponse)
async def get_answer(job_id: str, service: MemoryService = Depends(get_memory_service)):
    """Poll an answer job; the result holds answer, citations and results."""
    try:
        status = service.get_answer_status(job_id)
        return create_api_response(success=True, data=status.model_dump(mode="json"))
    except Exception as e:
        raise_http_error(e, "Answer lookup")


@router.post("/context", response_model=APIResponse)
async def get_context(request: ContextRequest, service: MemoryService = Depends(get_memory_service)):
    """Numbered context blocks for an external answer generator."""
    try:
        response = await service.get_context(request.user_id, request.query, request.limit)
        return create_api_response(success=True, data=response.model_dump())
    except Exception as e:
        raise_http_error(e, "Context retrieval")


# ================================
# Memory Mesh
# ================================

@router.get("/mesh/{user_id}", response_model=APIResponse)
async def get_memory_mesh(
    user_id: str,
    limit: int = Query(default=200, ge=1, le=1000, description="Maximum number of nodes"),
    service: MemoryService = Depends(get_memory_service)
):
    """Nodes and edges of a user's memory graph."""
    try:
        mesh = service.get_memory_mesh(user_id, limit)
        return create_api_response(success=True, data=mesh.model_dump(mode="json"))
    except Exception as e:
        raise_http_error(e, "Memory mesh retrieval")


@router.get("/memories/{memory_id}/relations", response_model=APIResponse)
async def get_memory_relations(memory_id: str, service: MemoryService = Depends(get_memory_service)):
    """A memory and its outgoing edges, strongest first."""
    try:
        result = service.get_memory_relations(memory_id)
        return create_api_response(success=True, data=result.model_dump(mode="json"))
    except Exception as e:
        raise_http_error(e, "Relation lookup")


@router.post("/mesh/{user_id}/rebuild", response_model=APIResponse)
async def rebuild_memory_mesh(
    user_id: str,
    min_score: Optional[float] = Query(default=None, ge=0.0, le=1.0, description="Prune edges below this score"),
    service: MemoryService = Depends(get_memory_service)
):
    """Recompute relations for every embedded memory of a user."""
    try:
        result = await service.rebuild_relations(user_id, min_score)
        return create_api_response(success=True, data=result.model_dump())
    except Exception as e:
        raise_http_error(e, "Relation rebuild")


# ================================
# Export / Import
# ================================

@router.get("/export/{user_id}", response_model=APIResponse)
async def export_user_graph(user_id: str, service: MemoryService = Depends(get_memory_service)):
    """Export a user's memories and relations as a versioned bundle."""
    try:
        bundle = service.export_user_graph(user_id)
        return create_api_response(success=True, data=bundle.model_dump(mode="json"))
    except Exception as e:
        raise_http_error(e, "Export")


@router.post("/import/{user_id}", response_model=APIResponse)
async def import_user_graph(
    user_id: str,
    bundle: ExportBundle,
    service: MemoryService = Depends(get_memory_service)
):
    """Import an export bundle into a user's graph without overwriting."""
    try:
        result = await service.import_user_graph(user_id, bundle)
        return create_api_response(success=True, data=result.model_dump())
    except Exception as e:
        raise_http_error(e, "Import")


# ================================
# Health
# ================================

@router.get("/health", response_model=APIResponse)
async def health_check(service: MemoryService = Depends(get_memory_service)):
    """Database connectivity, worker count and queue depth."""
    try:
        health = service.health()
        return create_api_response(success=True, data=health.model_dump(mode="json"))
    except Exception as e:
        raise_http_error(e, "Health check")
