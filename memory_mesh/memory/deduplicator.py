"""
Memory deduplication and merge logic.

Finds an existing memory for a submission by canonical fingerprint or by
URL within a recency window, and merges new metadata into it instead of
creating a second row.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from memory_mesh.core.config import settings
from memory_mesh.memory.canonicalizer import normalize_url, text_similarity
from memory_mesh.models.memory import Memory

logger = logging.getLogger(__name__)

URL_CANDIDATE_LIMIT = 50


@dataclass
class DuplicateMatch:
    """An existing memory matching a submission, and how it matched."""
    memory: Memory
    reason: str  # "canonical" or "url"


def _is_absent(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


class MemoryDeduplicator:
    """
    Handles duplicate lookup and non-destructive merges.

    Used on the synchronous submission path and again inside the
    enrichment worker, where two queued submissions may race.
    """

    def __init__(
        self,
        url_window_minutes: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        list_cap: Optional[int] = None
    ):
        self.url_window = timedelta(
            minutes=url_window_minutes or settings.duplicate_url_window_minutes
        )
        self.similarity_threshold = (
            similarity_threshold if similarity_threshold is not None
            else settings.duplicate_similarity_threshold
        )
        self.list_cap = list_cap or settings.merge_list_cap

    def find_duplicate(
        self,
        db: Session,
        user_id: str,
        fingerprint: str,
        normalized_text: str,
        url: Optional[str] = None
    ) -> Optional[DuplicateMatch]:
        """
        Look up an existing memory for a submission.

        Args:
            db: Database session
            user_id: Owning user
            fingerprint: Canonical fingerprint of the submission
            normalized_text: Canonical text of the submission
            url: Source URL of the submission

        Returns:
            Optional[DuplicateMatch]: Match by fingerprint first, then by URL
            within the recency window; None when the content is new

        Example:
            >>> match = dedup.find_duplicate(db, "user123", content.fingerprint, content.text, url)
            >>> if match:
            ...     dedup.merge(match.memory, metadata)
        """
        existing = db.query(Memory).filter(
            Memory.user_id == user_id,
            Memory.canonical_hash == fingerprint
        ).first()
        if existing is not None:
            logger.debug(f"Canonical duplicate for user {user_id}: {existing.memory_id}")
            return DuplicateMatch(memory=existing, reason="canonical")

        normalized = normalize_url(url)
        if not normalized or normalized == "unknown":
            return None

        since = datetime.utcnow() - self.url_window
        candidates = db.query(Memory).filter(
            Memory.user_id == user_id,
            Memory.url.isnot(None),
            Memory.created_at >= since
        ).order_by(Memory.created_at.desc()).limit(URL_CANDIDATE_LIMIT).all()

        for candidate in candidates:
            if normalize_url(candidate.url) != normalized:
                continue
            similarity = text_similarity(candidate.canonical_text or "", normalized_text)
            if similarity >= self.similarity_threshold:
                logger.debug(
                    f"URL duplicate for user {user_id}: {candidate.memory_id} "
                    f"(similarity {similarity:.2f})"
                )
                return DuplicateMatch(memory=candidate, reason="url")

        return None

    def merge_metadata(self, existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
        """
        Union list fields and fill absent scalars.

        Args:
            existing: Stored metadata
            incoming: Newly extracted or submitted metadata

        Returns:
            Dict: Merged metadata; existing scalar values are never overwritten
        """
        merged = dict(existing or {})

        for key, value in (incoming or {}).items():
            current = merged.get(key)

            if isinstance(value, list) or isinstance(current, list):
                merged[key] = self._union(
                    current if isinstance(current, list) else ([] if _is_absent(current) else [current]),
                    value if isinstance(value, list) else ([] if _is_absent(value) else [value])
                )
            elif isinstance(value, dict) and isinstance(current, dict):
                merged[key] = self.merge_metadata(current, value)
            elif _is_absent(current) and not _is_absent(value):
                merged[key] = value

        return merged

    def _union(self, first: List[Any], second: List[Any]) -> List[Any]:
        result: List[Any] = []
        seen = set()
        for item in list(first) + list(second):
            marker = repr(item)
            if marker in seen:
                continue
            seen.add(marker)
            result.append(item)
        return result[:self.list_cap]

    def merge(self, existing: Memory, new_metadata: Optional[Dict[str, Any]] = None) -> Memory:
        """
        Merge a duplicate submission into the stored memory.

        Args:
            existing: Stored memory (attached to a session)
            new_metadata: Metadata carried by the duplicate submission

        Returns:
            Memory: The updated memory
        """
        existing.set_metadata(self.merge_metadata(existing.get_metadata(), new_metadata or {}))
        existing.access_count = (existing.access_count or 0) + 1
        existing.last_accessed = datetime.utcnow()

        logger.info(
            f"Merged duplicate into memory {existing.memory_id} "
            f"(access_count={existing.access_count})"
        )
        return existing
