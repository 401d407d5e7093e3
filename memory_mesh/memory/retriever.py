"""
Hybrid memory retrieval.

Ranks a user's memories by blending a keyword score over title, summary and
canonical text with the cosine similarity of content embeddings, and builds
cited answers or plain context blocks from the ranked results.
"""

import logging
import re
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from memory_mesh.core.config import settings
from memory_mesh.core.database import SessionFactory, SessionLocal, session_scope
from memory_mesh.core.errors import InvalidInputError, JobCancelledError, ShapeMismatchError
from memory_mesh.memory.citations import dedupe_citations
from memory_mesh.memory.embedder import EmbeddingService, cosine_similarity
from memory_mesh.memory.provider import AIProvider, ContextItem
from memory_mesh.models.memory import Job, Memory, MemoryRelation
from memory_mesh.models.schemas import (
    AnswerResult, ContextResponse, EmbeddingFacet, SearchFilters, SearchResponse, SearchResult
)
from memory_mesh.services.vector_service import EmbeddingStore

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset([
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "has", "he",
    "in", "is", "it", "its", "of", "on", "that", "the", "to", "was", "will", "with",
    "this", "but", "they", "have", "had", "what", "when", "where", "who", "which",
    "why", "how",
])

TITLE_WEIGHT = 0.5
SUMMARY_WEIGHT = 0.3
CANONICAL_WEIGHT = 0.2

FALLBACK_TITLE_COUNT = 3
RELATED_IDS_PER_RESULT = 5


def tokenize_query(query: str) -> List[str]:
    """
    Lowercase query words longer than two characters, minus stop words.

    Example:
        >>> tokenize_query("What is the PostgreSQL replication story?")
        ['postgresql', 'replication', 'story']
    """
    cleaned = re.sub(r'[^\w\s]', ' ', (query or "").lower())
    return [token for token in cleaned.split() if len(token) > 2 and token not in STOP_WORDS]


def keyword_score(tokens: List[str], title: Optional[str], summary: Optional[str], canonical_text: Optional[str]) -> float:
    """
    Weighted share of query tokens found in a memory's text fields.

    Each token contributes 0.5 for a title match, 0.3 for a summary match
    and 0.2 for a canonical text match, on word boundaries.

    Returns:
        float: Score in [0, 1]
    """
    if not tokens:
        return 0.0

    fields = (
        ((title or "").lower(), TITLE_WEIGHT),
        ((summary or "").lower(), SUMMARY_WEIGHT),
        ((canonical_text or "").lower(), CANONICAL_WEIGHT),
    )

    total = 0.0
    for token in tokens:
        pattern = re.compile(rf'\b{re.escape(token)}\b')
        for text, weight in fields:
            if text and pattern.search(text):
                total += weight

    return max(0.0, min(1.0, total / len(tokens)))


def blend_scores(keyword: float, semantic: float, keyword_weight: Optional[float] = None, semantic_weight: Optional[float] = None) -> float:
    """
    Weighted blend of keyword and semantic scores.

    Example:
        >>> blend_scores(0.5, 0.9, 0.4, 0.6)
        0.74
    """
    kw = settings.keyword_weight if keyword_weight is None else keyword_weight
    sw = settings.semantic_weight if semantic_weight is None else semantic_weight
    return max(0.0, min(1.0, round(kw * keyword + sw * semantic, 10)))


def build_fallback_answer(query: str, results: List[SearchResult]) -> str:
    """Plain answer listing the top titles when generation is unavailable."""
    titles = ", ".join(
        f"[{index}] {result.title or 'Untitled'}"
        for index, result in enumerate(results[:FALLBACK_TITLE_COUNT], start=1)
    )
    ending = " and more." if len(results) > FALLBACK_TITLE_COUNT else "."
    return f'Found {len(results)} relevant memories about "{query}". {titles}{ending}'


class HybridSearchEngine:
    """
    Keyword + vector search over a user's memories.

    Example:
        >>> engine = HybridSearchEngine(provider, embedding_service, store)
        >>> response = await engine.search("user123", "postgres replication")
        >>> response.results[0].blended_score
    """

    def __init__(
        self,
        provider: AIProvider,
        embedding_service: EmbeddingService,
        store: EmbeddingStore,
        session_factory: SessionFactory = SessionLocal
    ):
        self.provider = provider
        self.embedding_service = embedding_service
        self.store = store
        self.session_factory = session_factory

    # ================================
    # Search
    # ================================

    async def search(
        self,
        user_id: str,
        query: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None
    ) -> SearchResponse:
        """
        Rank a user's memories against a query.

        Args:
            user_id: Owning user
            query: Search query
            filters: Optional category/sentiment/source/date pre-filters
            limit: Maximum number of results

        Returns:
            SearchResponse: Results sorted by blended score, then recency

        Raises:
            InvalidInputError: If the query is blank
        """
        if not query or not query.strip():
            raise InvalidInputError("Query cannot be empty")

        start_time = time.time()
        filters = filters or SearchFilters()
        limit = limit or settings.search_default_limit
        tokens = tokenize_query(query)

        candidates = self._load_candidates(user_id, filters)

        query_vector = None
        try:
            query_vector = await self.embedding_service.get_embedding(query.strip())
        except JobCancelledError:
            raise
        except Exception as e:
            logger.warning(f"Query embedding failed, using keyword-only ranking: {e}")

        vectors = self.store.get_user_vectors(user_id, EmbeddingFacet.CONTENT.value) if query_vector else {}

        scored: List[Tuple[float, datetime, Dict[str, Any], float, float]] = []
        for row in candidates:
            k_score = keyword_score(tokens, row["title"], row["summary"], row["canonical_text"])
            if query_vector is not None:
                s_score = self._semantic_score(query_vector, vectors.get(row["memory_id"]))
                blended = blend_scores(k_score, s_score)
            else:
                s_score = 0.0
                blended = k_score
            if blended <= 0.0:
                continue
            scored.append((blended, row["created_at"], row, k_score, s_score))

        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        top = scored[:limit]

        related = self._related_ids([item[2]["memory_id"] for item in top])
        results = [
            SearchResult(
                memory_id=row["memory_id"],
                title=row["title"],
                url=row["url"],
                summary=row["summary"],
                source=row["source"],
                created_at=created_at,
                keyword_score=k_score,
                semantic_score=s_score,
                blended_score=blended,
                related_memory_ids=related.get(row["memory_id"], [])
            )
            for blended, created_at, row, k_score, s_score in top
        ]

        search_time = (time.time() - start_time) * 1000
        logger.info(
            f"Search for user {user_id}: {len(results)}/{len(candidates)} results "
            f"in {search_time:.1f}ms (semantic={'on' if query_vector else 'off'})"
        )

        return SearchResponse(
            query=query,
            results=results,
            total_found=len(scored),
            semantic_available=query_vector is not None,
            search_time_ms=search_time
        )

    def _load_candidates(self, user_id: str, filters: SearchFilters) -> List[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            q = db.query(Memory).filter(Memory.user_id == user_id)
            if filters.source:
                q = q.filter(Memory.source == filters.source)
            if filters.date_from:
                q = q.filter(Memory.created_at >= filters.date_from)
            if filters.date_to:
                q = q.filter(Memory.created_at <= filters.date_to)
            memories = q.all()

            rows = []
            for memory in memories:
                metadata = memory.get_metadata()
                if filters.category:
                    categories = [str(c).lower() for c in metadata.get("categories") or []]
                    if filters.category.lower() not in categories:
                        continue
                if filters.sentiment:
                    if str(metadata.get("sentiment") or "").lower() != filters.sentiment.lower():
                        continue
                rows.append({
                    "memory_id": memory.memory_id,
                    "title": memory.title,
                    "url": memory.url,
                    "summary": memory.summary,
                    "source": memory.source,
                    "canonical_text": memory.canonical_text,
                    "created_at": memory.created_at,
                })
        return rows

    @staticmethod
    def _semantic_score(query_vector: List[float], vector: Optional[List[float]]) -> float:
        if vector is None:
            return 0.0
        try:
            return max(0.0, cosine_similarity(query_vector, vector))
        except ShapeMismatchError as e:
            logger.debug(f"Skipping semantic score: {e}")
            return 0.0

    def _related_ids(self, memory_ids: List[str]) -> Dict[str, List[str]]:
        if not memory_ids:
            return {}
        with session_scope(self.session_factory) as db:
            relations = db.query(MemoryRelation).filter(
                MemoryRelation.memory_id.in_(memory_ids)
            ).order_by(MemoryRelation.similarity_score.desc()).all()

        related: Dict[str, List[str]] = {}
        for relation in relations:
            ids = related.setdefault(relation.memory_id, [])
            if relation.related_memory_id not in ids and len(ids) < RELATED_IDS_PER_RESULT:
                ids.append(relation.related_memory_id)
        return related

    # ================================
    # Answer & context
    # ================================

    @staticmethod
    def _context_items(results: List[SearchResult]) -> List[ContextItem]:
        return [
            ContextItem(
                label=index,
                memory_id=result.memory_id,
                title=result.title,
                url=result.url,
                summary=result.summary,
                created_at=result.created_at
            )
            for index, result in enumerate(results, start=1)
        ]

    async def answer(self, user_id: str, query: str, top_k: Optional[int] = None) -> AnswerResult:
        """
        Search, then generate a cited answer from the top results.

        Falls back to a title listing when generation fails. Citations are
        deduplicated and the bracket references rewritten to match.

        Args:
            user_id: Owning user
            query: User query
            top_k: Number of results used as context

        Returns:
            AnswerResult: Answer text, unique citations and the context results
        """
        top_k = top_k or settings.answer_top_k
        response = await self.search(user_id, query, limit=top_k)
        results = response.results

        if not results:
            return AnswerResult(query=query, answer=None, citations=[], results=[])

        items = self._context_items(results)
        try:
            draft = await self.provider.answer_with_citations(query, items)
            text, citations = draft.text, draft.citations
        except JobCancelledError:
            raise
        except Exception as e:
            logger.warning(f"Answer generation failed, using fallback answer: {e}")
            text = build_fallback_answer(query, results)
            citations = [item.to_citation() for item in items[:FALLBACK_TITLE_COUNT]]

        text, citations = dedupe_citations(text, citations)
        return AnswerResult(query=query, answer=text, citations=citations, results=results)

    async def build_context(self, user_id: str, query: str, limit: int = 5) -> ContextResponse:
        """
        Numbered context blocks for an external answer generator.

        Each block carries the title, capture date, summary and URL.
        """
        response = await self.search(user_id, query, limit=limit)

        blocks = []
        for index, result in enumerate(response.results, start=1):
            lines = [
                f"[{index}] {result.title or 'Untitled'}",
                f"Date: {result.created_at.strftime('%Y-%m-%d')}",
            ]
            if result.summary:
                lines.append(f"Summary: {result.summary}")
            if result.url:
                lines.append(f"URL: {result.url}")
            blocks.append("\n".join(lines))

        return ContextResponse(
            query=query,
            context="\n\n".join(blocks),
            memory_ids=[result.memory_id for result in response.results]
        )

    async def run_answer_job(self, job: Job, token) -> Dict[str, Any]:
        """Worker handler for answer jobs."""
        payload = job.payload or {}
        query = payload.get("query") or ""
        if not query.strip():
            raise InvalidInputError(f"Job {job.job_id} has no query")

        token.check()
        result = await self.answer(job.user_id, query, payload.get("top_k"))
        token.check()

        return result.model_dump(mode="json")
