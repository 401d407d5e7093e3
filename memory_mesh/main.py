"""
Main FastAPI application.

Entry point for the Memory Mesh API with database initialization, worker
startup, middleware, error handling, and logging configuration.
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from memory_mesh.core.config import settings, create_directories
from memory_mesh.core.database import init_database, close_all_connections
from memory_mesh.core.errors import InvalidInputError, NotFoundError
from memory_mesh.api.dependencies import get_memory_service
from memory_mesh.api.endpoints import memory

create_directories()

handlers = [logging.StreamHandler(sys.stdout)]
if settings.log_file:
    handlers.append(logging.FileHandler(settings.log_file))

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=handlers
)

logger = logging.getLogger(__name__)

MAX_REQUEST_SIZE = 10 * 1024 * 1024  # 10MB


def error_response(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "error": error,
            "timestamp": datetime.utcnow().isoformat()
        }
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Creates tables, requeues jobs left behind by a previous process and
    starts the worker pool; stops workers and closes connections on shutdown.

    Args:
        app: FastAPI application instance
    """
    logger.info("Starting Memory Mesh API")

    if not init_database():
        raise RuntimeError("Database initialization failed")

    service = get_memory_service()
    recovered = await service.start(start_workers=settings.start_workers)
    logger.info(
        f"Memory Mesh API {settings.api_version} started "
        f"({len(recovered)} jobs recovered, workers={'on' if settings.start_workers else 'off'})"
    )

    yield

    logger.info("Shutting down Memory Mesh API")
    try:
        await service.stop()
        close_all_connections()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Create FastAPI application
app = FastAPI(
    title=settings.api_title,
    description=settings.api_description,
    version=settings.api_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

    return response


@app.middleware("http")
async def request_size_limit_middleware(request: Request, call_next):
    """Reject request bodies larger than MAX_REQUEST_SIZE."""
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > MAX_REQUEST_SIZE:
        return error_response(413, "Request too large")

    return await call_next(request)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Request logging middleware.

    Logs all incoming requests with timing information.
    """
    start_time = time.time()

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        f"{request.method} {request.url.path} - "
        f"Status: {response.status_code} - "
        f"Time: {process_time:.3f}s"
    )
    response.headers["X-Process-Time"] = str(process_time)

    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Wrap HTTP errors in the standard response envelope."""
    logger.warning(f"HTTP {exc.status_code}: {exc.detail} - {request.url}")
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return error_response(404, str(exc))


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError):
    return error_response(400, str(exc))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """
    General exception handler.

    Handles unexpected errors with proper logging.
    """
    logger.error(f"Unhandled exception: {exc} - {request.url}", exc_info=True)
    return error_response(500, "Internal server error")


# Include routers
app.include_router(memory.router, prefix="/api/v1")


@app.get("/")
async def root():
    """
    Root endpoint with API information.

    Returns:
        Dict: API information and status
    """
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "description": settings.api_description,
        "status": "running",
        "endpoints": {
            "docs": "/docs",
            "health": "/api/v1/memory/health",
            "submit": "/api/v1/memory/submit",
            "search": "/api/v1/memory/search",
            "answer": "/api/v1/memory/answer"
        }
    }


if __name__ == "__main__":
    import uvicorn

    logger.info("Starting Memory Mesh API server")

    uvicorn.run(
        "memory_mesh.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
