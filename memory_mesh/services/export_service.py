"""
Export and import of a user's memory graph.

Bundles are versioned JSON documents holding memories and their relations.
Importing never overwrites: memories already known to the target user are
mapped onto the existing rows and relations are remapped through that map.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from memory_mesh.core.database import SessionFactory, SessionLocal, session_scope
from memory_mesh.core.errors import InvalidInputError, NotFoundError
from memory_mesh.memory.canonicalizer import canonicalize, normalize_url
from memory_mesh.memory.relations import RelationBuilder
from memory_mesh.models.memory import Memory, MemoryRelation, User
from memory_mesh.models.schemas import (
    EXPORT_BUNDLE_VERSION, ExportBundle, ExportedMemory, ExportedRelation,
    ImportResult, RelationType
)

logger = logging.getLogger(__name__)

SUPPORTED_BUNDLE_VERSIONS = (EXPORT_BUNDLE_VERSION,)


class GraphExportService:
    """Builds export bundles and imports them into another user's graph."""

    def __init__(self, relation_builder: RelationBuilder, session_factory: SessionFactory = SessionLocal):
        self.relation_builder = relation_builder
        self.session_factory = session_factory

    def export_user_graph(self, user_id: str) -> ExportBundle:
        """
        Export every memory of a user and the edges between them.

        Raises:
            NotFoundError: If the user has never stored anything
        """
        with session_scope(self.session_factory) as db:
            if db.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")

            memories = db.query(Memory).filter(
                Memory.user_id == user_id
            ).order_by(Memory.created_at.asc()).all()
            memory_ids = [m.memory_id for m in memories]

            relations = db.query(MemoryRelation).filter(
                MemoryRelation.memory_id.in_(memory_ids)
            ).order_by(MemoryRelation.id.asc()).all() if memory_ids else []

            bundle = ExportBundle(
                version=EXPORT_BUNDLE_VERSION,
                exported_at=datetime.utcnow(),
                user_id=user_id,
                memories=[
                    ExportedMemory(
                        memory_id=m.memory_id,
                        source=m.source,
                        url=m.url,
                        title=m.title,
                        content=m.content,
                        summary=m.summary,
                        canonical_hash=m.canonical_hash,
                        metadata=m.get_metadata(),
                        importance_score=m.importance_score,
                        created_at=m.created_at
                    )
                    for m in memories
                ],
                relations=[
                    ExportedRelation(
                        memory_id=r.memory_id,
                        related_memory_id=r.related_memory_id,
                        relation_type=RelationType(r.relation_type),
                        similarity_score=r.similarity_score
                    )
                    for r in relations
                ]
            )

        logger.info(
            f"Exported {len(bundle.memories)} memories and {len(bundle.relations)} "
            f"relations for user {user_id}"
        )
        return bundle

    def import_user_graph(self, user_id: str, bundle: ExportBundle) -> ImportResult:
        """
        Import a bundle into a user's graph.

        Args:
            user_id: Target user (may differ from bundle.user_id)
            bundle: Export bundle

        Returns:
            ImportResult: Counts of imported and skipped memories and imported relations,
            plus the ids of the newly created memories

        Raises:
            InvalidInputError: If the bundle version is not supported
        """
        if bundle.version not in SUPPORTED_BUNDLE_VERSIONS:
            raise InvalidInputError(f"Unsupported export bundle version: {bundle.version}")

        id_map: Dict[str, str] = {}
        imported_ids: List[str] = []
        skipped = 0

        with session_scope(self.session_factory) as db:
            user = db.get(User, user_id)
            if user is None:
                user = User(user_id=user_id)
                db.add(user)
                db.flush()

            existing = db.query(Memory.memory_id, Memory.canonical_hash, Memory.url).filter(
                Memory.user_id == user_id
            ).all()
            by_hash = {row.canonical_hash: row.memory_id for row in existing}
            by_url = {normalize_url(row.url): row.memory_id for row in existing if row.url}

            for item in bundle.memories:
                canonical = canonicalize(item.content, item.url)
                match = self._find_existing(by_hash, by_url, canonical.fingerprint, item.canonical_hash, canonical.url)
                if match is not None:
                    id_map[item.memory_id] = match
                    skipped += 1
                    continue

                memory = Memory(
                    user_id=user_id,
                    source=item.source,
                    url=item.url,
                    title=item.title,
                    content=item.content,
                    summary=item.summary,
                    canonical_text=canonical.text,
                    canonical_hash=canonical.fingerprint,
                    metadata_=dict(item.metadata),
                    importance_score=item.importance_score,
                    created_at=item.created_at
                )
                db.add(memory)
                db.flush()

                id_map[item.memory_id] = memory.memory_id
                imported_ids.append(memory.memory_id)
                by_hash[canonical.fingerprint] = memory.memory_id
                if canonical.url:
                    by_url[canonical.url] = memory.memory_id

            user.total_memories = (user.total_memories or 0) + len(imported_ids)
            user.last_activity = datetime.utcnow()

        relations_imported = 0
        for relation in bundle.relations:
            source = id_map.get(relation.memory_id)
            target = id_map.get(relation.related_memory_id)
            if source is None or target is None or source == target:
                continue
            if self.relation_builder.upsert_relation(
                source, target, relation.relation_type, relation.similarity_score
            ):
                relations_imported += 1

        logger.info(
            f"Imported {len(imported_ids)} memories ({skipped} skipped) and "
            f"{relations_imported} relations into user {user_id}"
        )
        return ImportResult(
            imported=len(imported_ids),
            skipped=skipped,
            relations_imported=relations_imported,
            memory_ids=imported_ids
        )

    @staticmethod
    def _find_existing(
        by_hash: Dict[str, str],
        by_url: Dict[str, str],
        fingerprint: str,
        bundle_hash: Optional[str],
        url: Optional[str]
    ) -> Optional[str]:
        if fingerprint in by_hash:
            return by_hash[fingerprint]
        if bundle_hash and bundle_hash in by_hash:
            return by_hash[bundle_hash]
        if url and url in by_url:
            return by_url[url]
        return None
