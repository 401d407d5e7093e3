"""
Configuration management using Pydantic Settings.

Handles environment variables, validation, and application settings
for the enrichment pipeline, relation builder, and hybrid search.
"""

import os
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    All settings can be overridden via environment variables
    (case-insensitive) or a local .env file.
    """

    # ================================
    # AI Provider Configuration
    # ================================
    gemini_api_key: Optional[str] = Field(default=None, description="Google Gemini API key")
    gemini_model: str = Field(default="gemini-1.5-flash", description="Gemini generation model name")
    gemini_embedding_model: str = Field(
        default="models/text-embedding-004",
        description="Gemini embedding model name"
    )
    gemini_timeout: int = Field(default=30, description="Gemini API timeout in seconds")
    provider_rate_limit_per_minute: int = Field(
        default=60,
        description="Maximum AI provider requests per minute"
    )
    max_text_length: int = Field(
        default=20000,
        description="Maximum characters of raw text sent to the AI provider"
    )

    # ================================
    # Database Configuration
    # ================================
    database_url: str = Field(
        default="sqlite:///./memory_mesh.db",
        description="SQLAlchemy database connection URL"
    )

    # Connection pool settings (ignored for SQLite)
    db_pool_size: int = Field(default=20, description="Database connection pool size")
    db_max_overflow: int = Field(default=40, description="Database max overflow connections")
    db_pool_timeout: int = Field(default=30, description="Database pool timeout")
    db_pool_recycle: int = Field(default=3600, description="Database pool recycle time")

    # ================================
    # Vector Store Configuration
    # ================================
    vector_backend: str = Field(
        default="sql",
        description="Embedding store backend: 'sql' or 'chroma'"
    )
    chroma_persist_directory: Optional[str] = Field(
        default=None,
        description="ChromaDB persistence directory (in-memory when unset)"
    )
    chroma_collection_name: str = Field(default="memory_embeddings", description="ChromaDB collection name")

    # ================================
    # Deduplication
    # ================================
    fingerprint_include_url: bool = Field(
        default=False,
        description="Salt the canonical fingerprint with a hash of the normalized URL"
    )
    duplicate_url_window_minutes: int = Field(
        default=60,
        description="Recency window for URL-based duplicate detection"
    )
    duplicate_similarity_threshold: float = Field(
        default=0.9,
        description="Minimum text similarity for URL-based duplicates"
    )
    merge_list_cap: int = Field(default=50, description="Maximum items kept in merged metadata lists")

    # ================================
    # Worker / Queue Configuration
    # ================================
    worker_concurrency: int = Field(default=4, description="Number of concurrent enrichment workers")
    queue_rate_limit_per_minute: int = Field(
        default=60,
        description="Maximum jobs started per minute across the worker pool"
    )
    retry_max_attempts: int = Field(default=3, description="Maximum attempts for retryable AI calls")
    retry_base_delay: float = Field(default=2.0, description="Base backoff delay in seconds")
    retry_max_delay: float = Field(default=60.0, description="Backoff delay cap in seconds")
    retry_jitter: float = Field(default=0.5, description="Maximum random jitter added to each delay")

    # ================================
    # Relation Builder
    # ================================
    semantic_relation_threshold: float = Field(default=0.3, description="Minimum cosine for semantic edges")
    semantic_relation_limit: int = Field(default=8, description="Maximum semantic edges per memory")
    topical_relation_threshold: float = Field(default=0.25, description="Minimum overlap for topical edges")
    topical_relation_limit: int = Field(default=5, description="Maximum topical edges per memory")
    topic_weight: float = Field(default=0.7, description="Weight of topic overlap in topical score")
    category_weight: float = Field(default=0.3, description="Weight of category overlap in topical score")
    temporal_window_days: float = Field(default=7.0, description="Temporal relation window in days")
    temporal_relation_threshold: float = Field(default=0.1, description="Minimum temporal decay score")
    temporal_relation_limit: int = Field(default=3, description="Maximum temporal edges per memory")
    relation_cooldown_minutes: int = Field(
        default=10,
        description="Cooldown for users with no eligible memories"
    )

    # ================================
    # Hybrid Search
    # ================================
    keyword_weight: float = Field(default=0.4, description="Blend weight of the keyword score")
    semantic_weight: float = Field(default=0.6, description="Blend weight of the semantic score")
    search_default_limit: int = Field(default=10, description="Default number of search results")
    answer_top_k: int = Field(default=5, description="Results passed as context to answer generation")

    # ================================
    # Profile Refresh
    # ================================
    profile_importance_threshold: float = Field(
        default=0.7,
        description="Importance score that triggers an eager profile refresh check"
    )
    profile_refresh_days_important: int = Field(
        default=3,
        description="Profile freshness window after an important memory"
    )
    profile_refresh_days: int = Field(default=7, description="Default profile freshness window")
    profile_max_memories: int = Field(default=50, description="Memories summarized into a profile")
    profile_cooldown_minutes: int = Field(
        default=30,
        description="Cooldown before retrying a profile for a user with no summarized memories"
    )

    # ================================
    # Application Configuration
    # ================================
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")
    api_version: str = Field(default="1.0.0", description="API version")
    api_title: str = Field(default="Memory Mesh API", description="FastAPI application title")
    api_description: str = Field(
        default="Memory enrichment, relation graph and hybrid search pipeline",
        description="API description"
    )
    debug: bool = Field(default=False, description="Debug mode")
    start_workers: bool = Field(default=True, description="Start the worker pool with the API")

    # CORS settings
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:8080",
        description="Comma-separated list of allowed CORS origins"
    )

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


def get_settings() -> Settings:
    """
    Get application settings.

    Returns:
        Settings: Validated application settings

    Example:
        >>> settings = get_settings()
        >>> settings.keyword_weight
        0.4
    """
    return Settings()


# Global settings instance
settings = get_settings()


def create_directories() -> None:
    """Create local directories used for logs and the ChromaDB store."""
    if settings.log_file:
        log_dir = os.path.dirname(settings.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

    if settings.chroma_persist_directory:
        os.makedirs(settings.chroma_persist_directory, exist_ok=True)
