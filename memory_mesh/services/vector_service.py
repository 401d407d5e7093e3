"""
Embedding storage backends.

Stores one vector per (memory, facet) and returns them for in-process
similarity ranking. Vectors live either in the relational store (default)
or in per-user ChromaDB collections.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import chromadb
from sqlalchemy.exc import IntegrityError

from memory_mesh.core.config import settings
from memory_mesh.core.database import SessionFactory, SessionLocal, session_scope
from memory_mesh.models.memory import Embedding

logger = logging.getLogger(__name__)


class EmbeddingStore(ABC):
    """Per-facet vector storage keyed by memory id."""

    @abstractmethod
    def upsert(
        self,
        memory_id: str,
        user_id: str,
        facet: str,
        vector: List[float],
        model: Optional[str] = None
    ) -> None:
        """Store or replace the vector for one facet of a memory."""

    @abstractmethod
    def get(self, memory_id: str, user_id: str, facet: str) -> Optional[List[float]]:
        """Vector for one facet of a memory, or None."""

    @abstractmethod
    def get_user_vectors(self, user_id: str, facet: str) -> Dict[str, List[float]]:
        """All vectors of a facet for a user, keyed by memory id."""

    @abstractmethod
    def delete_memory(self, memory_id: str, user_id: str) -> None:
        """Remove every facet vector of a memory."""


class SqlEmbeddingStore(EmbeddingStore):
    """Embeddings stored as JSON rows in the relational store."""

    def __init__(self, session_factory: SessionFactory = SessionLocal):
        self.session_factory = session_factory

    def upsert(self, memory_id, user_id, facet, vector, model=None) -> None:
        values = [float(v) for v in vector]

        for _ in range(2):
            try:
                with session_scope(self.session_factory) as db:
                    row = db.query(Embedding).filter(
                        Embedding.memory_id == memory_id,
                        Embedding.facet == facet
                    ).first()
                    if row is None:
                        db.add(Embedding(
                            memory_id=memory_id,
                            user_id=user_id,
                            facet=facet,
                            vector=values,
                            dimension=len(values),
                            model=model
                        ))
                    else:
                        row.vector = values
                        row.dimension = len(values)
                        row.model = model
                return
            except IntegrityError:
                # Another writer inserted the same facet first; update it instead
                logger.debug(f"Concurrent embedding insert for {memory_id}/{facet}, retrying")

        raise RuntimeError(f"Could not store embedding for {memory_id}/{facet}")

    def get(self, memory_id, user_id, facet) -> Optional[List[float]]:
        with session_scope(self.session_factory) as db:
            row = db.query(Embedding.vector).filter(
                Embedding.memory_id == memory_id,
                Embedding.facet == facet
            ).first()
            return list(row[0]) if row else None

    def get_user_vectors(self, user_id, facet) -> Dict[str, List[float]]:
        with session_scope(self.session_factory) as db:
            rows = db.query(Embedding.memory_id, Embedding.vector).filter(
                Embedding.user_id == user_id,
                Embedding.facet == facet
            ).all()
            return {memory_id: list(vector) for memory_id, vector in rows}

    def delete_memory(self, memory_id, user_id) -> None:
        with session_scope(self.session_factory) as db:
            db.query(Embedding).filter(Embedding.memory_id == memory_id).delete()


class ChromaEmbeddingStore(EmbeddingStore):
    """
    Embeddings stored in per-user ChromaDB collections.

    Vector ids are "{memory_id}:{facet}" so regeneration replaces the
    existing entry instead of adding another.
    """

    def __init__(self, client=None, collection_name: Optional[str] = None):
        if client is None:
            if settings.chroma_persist_directory:
                client = chromadb.PersistentClient(path=settings.chroma_persist_directory)
            else:
                client = chromadb.EphemeralClient()
        self.client = client
        self.collection_name = collection_name or settings.chroma_collection_name
        self.collections: Dict[str, object] = {}

    def _collection(self, user_id: str):
        name = f"{self.collection_name}_{user_id}"
        if name not in self.collections:
            self.collections[name] = self.client.get_or_create_collection(
                name=name,
                embedding_function=None,
                metadata={"user_id": user_id}
            )
        return self.collections[name]

    @staticmethod
    def _vector_id(memory_id: str, facet: str) -> str:
        return f"{memory_id}:{facet}"

    def upsert(self, memory_id, user_id, facet, vector, model=None) -> None:
        self._collection(user_id).upsert(
            ids=[self._vector_id(memory_id, facet)],
            embeddings=[[float(v) for v in vector]],
            metadatas=[{
                "memory_id": memory_id,
                "facet": facet,
                "model": model or "",
            }]
        )

    def get(self, memory_id, user_id, facet) -> Optional[List[float]]:
        result = self._collection(user_id).get(
            ids=[self._vector_id(memory_id, facet)],
            include=["embeddings"]
        )
        embeddings = result.get("embeddings")
        if embeddings is None or len(embeddings) == 0:
            return None
        return [float(v) for v in embeddings[0]]

    def get_user_vectors(self, user_id, facet) -> Dict[str, List[float]]:
        result = self._collection(user_id).get(
            where={"facet": facet},
            include=["embeddings", "metadatas"]
        )
        embeddings = result.get("embeddings")
        metadatas = result.get("metadatas")
        if embeddings is None or metadatas is None:
            return {}

        vectors: Dict[str, List[float]] = {}
        for metadata, embedding in zip(metadatas, embeddings):
            vectors[metadata["memory_id"]] = [float(v) for v in embedding]
        return vectors

    def delete_memory(self, memory_id, user_id) -> None:
        self._collection(user_id).delete(where={"memory_id": memory_id})


def create_embedding_store(session_factory: SessionFactory = SessionLocal) -> EmbeddingStore:
    """
    Build the configured embedding store.

    Returns:
        EmbeddingStore: ChromaDB store when vector_backend is "chroma",
        otherwise the relational store
    """
    backend = settings.vector_backend.lower()
    if backend == "chroma":
        logger.info("Using ChromaDB embedding store")
        return ChromaEmbeddingStore()
    if backend != "sql":
        raise ValueError(f"Unknown vector backend: {settings.vector_backend}")
    return SqlEmbeddingStore(session_factory)
