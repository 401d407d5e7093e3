"""
Memory mesh: the relation graph between a user's memories.

Generates per-facet embeddings for a memory and links it to the user's
other memories through three independent candidate searches:

- semantic: cosine similarity of content embeddings
- topical: weighted Jaccard overlap of extracted topics and categories
- temporal: linear decay of capture-time distance within a window

Edges are upserted per (memory, related memory, type) with "highest score
wins", using a conditional UPDATE so a lower score never overwrites a
higher stored one.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from memory_mesh.core.config import settings
from memory_mesh.core.cooldown import UserCooldown
from memory_mesh.core.database import SessionFactory, SessionLocal, session_scope
from memory_mesh.core.errors import NotFoundError, ShapeMismatchError
from memory_mesh.memory.embedder import EmbeddingService, cosine_similarity
from memory_mesh.models.memory import Memory, MemoryRelation
from memory_mesh.models.schemas import (
    EmbeddingFacet, MemoryMesh, MemoryResponse, MemoryWithRelations, MeshEdge,
    MeshNode, RebuildResult, RelatedMemory, RelationType
)
from memory_mesh.services.vector_service import EmbeddingStore

logger = logging.getLogger(__name__)

EVALUATION_ORDER = (RelationType.SEMANTIC, RelationType.TOPICAL, RelationType.TEMPORAL)


@dataclass
class RelationCandidate:
    """A scored candidate edge from the memory being processed."""
    related_memory_id: str
    relation_type: RelationType
    score: float


@dataclass
class _MemoryFeatures:
    memory_id: str
    topics: Set[str]
    categories: Set[str]
    created_at: datetime


def jaccard(first: Iterable[str], second: Iterable[str]) -> float:
    """|intersection| / |union| of two sets; 0.0 when both are empty."""
    a, b = set(first), set(second)
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def temporal_score(delta: timedelta, window: timedelta) -> float:
    """
    Linear decay of a time distance over a window.

    Example:
        >>> temporal_score(timedelta(days=3.5), timedelta(days=7))
        0.5
    """
    if window.total_seconds() <= 0:
        return 0.0
    return max(0.0, 1.0 - abs(delta.total_seconds()) / window.total_seconds())


def rank_candidates(
    scores: Dict[str, float],
    relation_type: RelationType,
    threshold: float,
    limit: int
) -> List[RelationCandidate]:
    """
    Keep scores at or above the threshold, best first, up to limit.

    Args:
        scores: Related memory id -> score
        relation_type: Type assigned to the kept candidates
        threshold: Inclusive minimum score
        limit: Maximum candidates kept

    Returns:
        List[RelationCandidate]: Ranked candidates
    """
    kept = [
        RelationCandidate(memory_id, relation_type, min(1.0, score))
        for memory_id, score in scores.items()
        if score >= threshold
    ]
    kept.sort(key=lambda c: c.score, reverse=True)
    return kept[:limit]


def merge_candidates(groups: List[List[RelationCandidate]]) -> List[RelationCandidate]:
    """
    Merge candidate lists given in evaluation order.

    A related memory found by several relation types keeps its highest
    score; on an exact tie the type evaluated first is kept.
    """
    best: Dict[str, RelationCandidate] = {}
    for group in groups:
        for candidate in group:
            current = best.get(candidate.related_memory_id)
            if current is None or candidate.score > current.score:
                best[candidate.related_memory_id] = candidate
    return list(best.values())


def _label_set(values) -> Set[str]:
    if not isinstance(values, list):
        return set()
    return {str(v).strip().lower() for v in values if str(v).strip()}


class RelationBuilder:
    """
    Builds and maintains the memory mesh for each user.

    Example:
        >>> builder = RelationBuilder(embedding_service, embedding_store)
        >>> await builder.process_memory(memory_id, "user123")
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        store: EmbeddingStore,
        session_factory: SessionFactory = SessionLocal,
        cooldown: Optional[UserCooldown] = None
    ):
        self.embedding_service = embedding_service
        self.store = store
        self.session_factory = session_factory
        self.cooldown = cooldown or UserCooldown(settings.relation_cooldown_minutes * 60)

    # ================================
    # Embeddings
    # ================================

    async def generate_embeddings(self, memory_id: str) -> List[str]:
        """
        Embed each available text facet of a memory.

        Facets are embedded independently; a failed facet is logged and
        the others are still stored.

        Args:
            memory_id: Memory to embed

        Returns:
            List[str]: Facets stored successfully

        Raises:
            NotFoundError: If the memory does not exist
        """
        with session_scope(self.session_factory) as db:
            memory = db.get(Memory, memory_id)
            if memory is None:
                raise NotFoundError(f"Memory {memory_id} not found")
            user_id = memory.user_id
            texts = {
                EmbeddingFacet.CONTENT.value: memory.content,
                EmbeddingFacet.SUMMARY.value: memory.summary,
                EmbeddingFacet.TITLE.value: memory.title,
            }

        facets = [facet for facet, text in texts.items() if text and text.strip()]
        results = await asyncio.gather(
            *(self.embedding_service.get_embedding(texts[facet], use_cache=False) for facet in facets),
            return_exceptions=True
        )

        model = getattr(self.embedding_service.provider, "embedding_model", None)
        stored: List[str] = []
        for facet, result in zip(facets, results):
            if isinstance(result, BaseException):
                logger.warning(f"Embedding {facet} facet of memory {memory_id} failed: {result}")
                continue
            try:
                self.store.upsert(memory_id, user_id, facet, result, model=model)
                stored.append(facet)
            except Exception as e:
                logger.warning(f"Storing {facet} embedding of memory {memory_id} failed: {e}")

        logger.info(f"Stored {len(stored)}/{len(facets)} embeddings for memory {memory_id}")
        return stored

    # ================================
    # Candidate searches
    # ================================

    async def _semantic_candidates(self, memory_id: str, user_id: str) -> List[RelationCandidate]:
        vectors = self.store.get_user_vectors(user_id, EmbeddingFacet.CONTENT.value)
        source = vectors.pop(memory_id, None)
        if source is None:
            logger.debug(f"No content embedding for memory {memory_id}; skipping semantic search")
            return []

        scores: Dict[str, float] = {}
        for other_id, vector in vectors.items():
            try:
                scores[other_id] = cosine_similarity(source, vector)
            except ShapeMismatchError as e:
                logger.debug(f"Skipping semantic candidate {other_id}: {e}")

        return rank_candidates(
            scores, RelationType.SEMANTIC,
            settings.semantic_relation_threshold, settings.semantic_relation_limit
        )

    async def _topical_candidates(
        self,
        source: _MemoryFeatures,
        others: List[_MemoryFeatures]
    ) -> List[RelationCandidate]:
        if not source.topics and not source.categories:
            return []

        scores = {
            other.memory_id: (
                settings.topic_weight * jaccard(source.topics, other.topics)
                + settings.category_weight * jaccard(source.categories, other.categories)
            )
            for other in others
        }
        return rank_candidates(
            scores, RelationType.TOPICAL,
            settings.topical_relation_threshold, settings.topical_relation_limit
        )

    async def _temporal_candidates(
        self,
        source: _MemoryFeatures,
        others: List[_MemoryFeatures]
    ) -> List[RelationCandidate]:
        window = timedelta(days=settings.temporal_window_days)
        scores = {
            other.memory_id: temporal_score(other.created_at - source.created_at, window)
            for other in others
            if abs(other.created_at - source.created_at) <= window
        }
        return rank_candidates(
            scores, RelationType.TEMPORAL,
            settings.temporal_relation_threshold, settings.temporal_relation_limit
        )

    def _load_features(self, memory_id: str, user_id: str):
        with session_scope(self.session_factory) as db:
            memory = db.get(Memory, memory_id)
            if memory is None or memory.user_id != user_id:
                raise NotFoundError(f"Memory {memory_id} not found for user {user_id}")

            rows = db.query(Memory.memory_id, Memory.metadata_, Memory.created_at).filter(
                Memory.user_id == user_id
            ).all()

        features = [
            _MemoryFeatures(
                memory_id=row_id,
                topics=_label_set((metadata or {}).get("topics")),
                categories=_label_set((metadata or {}).get("categories")),
                created_at=created_at
            )
            for row_id, metadata, created_at in rows
        ]
        source = next(f for f in features if f.memory_id == memory_id)
        others = [f for f in features if f.memory_id != memory_id]
        return source, others

    # ================================
    # Edge writes
    # ================================

    def upsert_relation(
        self,
        memory_id: str,
        related_memory_id: str,
        relation_type: RelationType,
        score: float
    ) -> bool:
        """
        Insert an edge, or raise its stored score if the new one is higher.

        Args:
            memory_id: Source memory
            related_memory_id: Target memory
            relation_type: Edge type
            score: Similarity score in [0, 1]

        Returns:
            bool: True if a row was inserted or updated
        """
        relation_type = RelationType(relation_type).value
        score = max(0.0, min(1.0, float(score)))
        raise_score = update(MemoryRelation).where(
            MemoryRelation.memory_id == memory_id,
            MemoryRelation.related_memory_id == related_memory_id,
            MemoryRelation.relation_type == relation_type,
            MemoryRelation.similarity_score < score
        ).values(similarity_score=score, updated_at=datetime.utcnow())

        try:
            with session_scope(self.session_factory) as db:
                if db.execute(raise_score).rowcount:
                    return True

                exists = db.query(MemoryRelation.id).filter(
                    MemoryRelation.memory_id == memory_id,
                    MemoryRelation.related_memory_id == related_memory_id,
                    MemoryRelation.relation_type == relation_type
                ).first()
                if exists:
                    return False

                db.add(MemoryRelation(
                    memory_id=memory_id,
                    related_memory_id=related_memory_id,
                    relation_type=relation_type,
                    similarity_score=score
                ))
                return True

        except IntegrityError:
            logger.debug(
                f"Concurrent insert of {memory_id} -> {related_memory_id} ({relation_type}); "
                f"retrying as conditional update"
            )
            with session_scope(self.session_factory) as db:
                return bool(db.execute(raise_score).rowcount)

    # ================================
    # Public operations
    # ================================

    async def build_relations(self, memory_id: str, user_id: str) -> List[RelationCandidate]:
        """
        Link a memory to the user's other memories.

        Runs the semantic, topical and temporal searches concurrently,
        merges their candidates and upserts one edge per candidate. Safe to
        re-run at any time.

        Args:
            memory_id: Memory to link
            user_id: Owning user

        Returns:
            List[RelationCandidate]: Candidates that changed a stored edge

        Raises:
            NotFoundError: If the memory does not exist for the user
        """
        source, others = self._load_features(memory_id, user_id)

        groups = await asyncio.gather(
            self._semantic_candidates(memory_id, user_id),
            self._topical_candidates(source, others),
            self._temporal_candidates(source, others),
        )
        candidates = merge_candidates(list(groups))

        written = [
            candidate for candidate in candidates
            if self.upsert_relation(
                memory_id, candidate.related_memory_id,
                candidate.relation_type, candidate.score
            )
        ]

        logger.info(
            f"Relations for memory {memory_id}: {len(candidates)} candidates "
            f"(semantic={len(groups[0])}, topical={len(groups[1])}, temporal={len(groups[2])}), "
            f"{len(written)} written"
        )
        return written

    async def process_memory(self, memory_id: str, user_id: str) -> List[RelationCandidate]:
        """Background entry point: embeddings, then relations."""
        await self.generate_embeddings(memory_id)
        return await self.build_relations(memory_id, user_id)

    async def rebuild_user_relations(self, user_id: str) -> RebuildResult:
        """
        Re-run relation building for every embedded memory of a user.

        Users with no eligible memories are put on cooldown and skipped
        until it expires.
        """
        if self.cooldown.is_cooling(user_id):
            logger.debug(f"Relation rebuild for user {user_id} skipped (cooldown)")
            return RebuildResult(user_id=user_id, skipped_cooldown=True)

        embedded = set(self.store.get_user_vectors(user_id, EmbeddingFacet.CONTENT.value))
        with session_scope(self.session_factory) as db:
            memory_ids = [
                row[0] for row in db.query(Memory.memory_id).filter(
                    Memory.user_id == user_id
                ).order_by(Memory.created_at.asc()).all()
                if row[0] in embedded
            ]

        if not memory_ids:
            logger.info(f"No eligible memories for user {user_id}; cooling down")
            self.cooldown.mark(user_id)
            return RebuildResult(user_id=user_id)

        written = 0
        for memory_id in memory_ids:
            try:
                written += len(await self.build_relations(memory_id, user_id))
            except NotFoundError as e:
                logger.warning(f"Skipping memory during rebuild: {e}")

        return RebuildResult(
            user_id=user_id,
            memories_processed=len(memory_ids),
            relations_written=written
        )

    def cleanup_low_quality_relations(self, user_id: str, min_score: float = 0.3) -> int:
        """
        Delete a user's edges scoring below min_score.

        Returns:
            int: Number of deleted edges
        """
        with session_scope(self.session_factory) as db:
            user_memory_ids = db.query(Memory.memory_id).filter(Memory.user_id == user_id)
            deleted = db.query(MemoryRelation).filter(
                MemoryRelation.memory_id.in_(user_memory_ids.scalar_subquery()),
                MemoryRelation.similarity_score < min_score
            ).delete(synchronize_session=False)

        logger.info(f"Removed {deleted} low quality relations for user {user_id}")
        return deleted

    def get_memory_mesh(self, user_id: str, limit: int = 200) -> MemoryMesh:
        """
        Nodes and edges of a user's graph, newest memories first.

        Args:
            user_id: Owning user
            limit: Maximum number of nodes

        Returns:
            MemoryMesh: Graph view restricted to edges between returned nodes
        """
        with session_scope(self.session_factory) as db:
            memories = db.query(Memory).filter(
                Memory.user_id == user_id
            ).order_by(Memory.created_at.desc()).limit(limit).all()

            node_ids = [m.memory_id for m in memories]
            relations = db.query(MemoryRelation).filter(
                MemoryRelation.memory_id.in_(node_ids),
                MemoryRelation.related_memory_id.in_(node_ids)
            ).all() if node_ids else []

            nodes = [
                MeshNode(
                    memory_id=m.memory_id,
                    title=m.title,
                    source=m.source,
                    importance_score=m.importance_score,
                    created_at=m.created_at
                )
                for m in memories
            ]
            edges = [
                MeshEdge(
                    source=r.memory_id,
                    target=r.related_memory_id,
                    relation_type=RelationType(r.relation_type),
                    similarity_score=r.similarity_score
                )
                for r in relations
            ]

        return MemoryMesh(user_id=user_id, nodes=nodes, edges=edges)

    def get_memory_with_relations(self, memory_id: str) -> MemoryWithRelations:
        """
        A memory and its outgoing edges, strongest first.

        Raises:
            NotFoundError: If the memory does not exist
        """
        with session_scope(self.session_factory) as db:
            memory = db.get(Memory, memory_id)
            if memory is None:
                raise NotFoundError(f"Memory {memory_id} not found")

            rows = db.query(MemoryRelation, Memory.title).join(
                Memory, Memory.memory_id == MemoryRelation.related_memory_id
            ).filter(
                MemoryRelation.memory_id == memory_id
            ).order_by(MemoryRelation.similarity_score.desc()).all()

            return MemoryWithRelations(
                memory=MemoryResponse.from_model(memory),
                relations=[
                    RelatedMemory(
                        related_memory_id=relation.related_memory_id,
                        relation_type=RelationType(relation.relation_type),
                        similarity_score=relation.similarity_score,
                        title=title
                    )
                    for relation, title in rows
                ]
            )
