"""
Vector index clients.

The index stores one vector per chunk under its composite ID together with a
small metadata dict. Two implementations:
- PgVectorIndexClient: PostgreSQL + pgvector table, cosine similarity
  (score = 1 - cosine distance)
- InMemoryVectorIndexClient: process-local dict with cosine similarity
  computed in Python, used for development without pgvector and in tests

Metadata values are normalized before storage: None values are dropped and
strings are truncated to MAX_METADATA_STRING_BYTES UTF-8 bytes without
splitting a character.
"""

import math
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from worknote_rag.core.config import settings
from worknote_rag.models.db_models import utc_now
from worknote_rag.models.vector_entry import DBVectorEntry
from worknote_rag.services.chunking import work_id_from_chunk_id

logger = logging.getLogger(__name__)

MAX_METADATA_STRING_BYTES = 60


def truncate_utf8(value: str, max_bytes: int = MAX_METADATA_STRING_BYTES) -> str:
    """Truncate a string to max_bytes UTF-8 bytes on a character boundary."""
    encoded = value.encode("utf-8")
    if len(encoded) <= max_bytes:
        return value
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def encode_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Normalize metadata for storage in the index."""
    encoded: Dict[str, Any] = {}
    for key, value in (metadata or {}).items():
        if value is None:
            continue
        if isinstance(value, str):
            encoded[key] = truncate_utf8(value)
        elif isinstance(value, (bool, int, float)):
            encoded[key] = value
        else:
            encoded[key] = truncate_utf8(str(value))
    return encoded


def cosine_similarity(a: List[float], b: List[float]) -> float:
    """Compute cosine similarity between two vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot_product = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot_product / (norm_a * norm_b)


@dataclass
class VectorRecord:
    """A vector to write under a composite ID."""
    id: str
    values: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorMatch:
    """A query hit. Higher score means more similar."""
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorIndexClient(ABC):
    """Vector index operations used by the embedding pipeline and search."""

    @abstractmethod
    async def upsert(self, vectors: List[VectorRecord]) -> None:
        """Insert or overwrite vectors by ID. Visible to queries once this returns."""

    @abstractmethod
    async def query(
        self,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[VectorMatch]:
        """Nearest neighbours by cosine similarity, best first."""

    @abstractmethod
    async def delete_by_ids(self, ids: List[str]) -> None:
        """Delete vectors by ID. Unknown IDs are ignored."""


class PgVectorIndexClient(VectorIndexClient):
    """pgvector-backed index. Each call runs and commits in its own session."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def upsert(self, vectors: List[VectorRecord]) -> None:
        if not vectors:
            return

        table = DBVectorEntry.__table__
        now = utc_now()
        rows = [
            {
                "id": v.id,
                "work_id": work_id_from_chunk_id(v.id),
                "embedding": v.values,
                "metadata": encode_metadata(v.metadata),
                "updated_at": now,
            }
            for v in vectors
        ]
        stmt = pg_insert(table).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={
                "work_id": stmt.excluded.work_id,
                "embedding": stmt.excluded.embedding,
                "metadata": stmt.excluded["metadata"],
                "updated_at": stmt.excluded.updated_at,
            },
        )

        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.debug(f"Upserted {len(rows)} vector(s)")

    async def query(
        self,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[VectorMatch]:
        distance = DBVectorEntry.embedding.cosine_distance(vector)
        stmt = select(
            DBVectorEntry.id,
            DBVectorEntry.entry_metadata,
            (1 - distance).label("similarity"),
        )
        for key, value in (filter or {}).items():
            stmt = stmt.where(DBVectorEntry.entry_metadata[key].as_string() == str(value))
        stmt = stmt.order_by(distance).limit(top_k)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        return [
            VectorMatch(id=row.id, score=float(row.similarity), metadata=row.entry_metadata or {})
            for row in rows
        ]

    async def delete_by_ids(self, ids: List[str]) -> None:
        if not ids:
            return
        async with self._session_factory() as session:
            await session.execute(delete(DBVectorEntry).where(DBVectorEntry.id.in_(ids)))
            await session.commit()
        logger.debug(f"Deleted up to {len(ids)} vector(s)")


class InMemoryVectorIndexClient(VectorIndexClient):
    """Process-local index with Python cosine similarity."""

    def __init__(self):
        self._vectors: Dict[str, VectorRecord] = {}

    async def upsert(self, vectors: List[VectorRecord]) -> None:
        for v in vectors:
            self._vectors[v.id] = VectorRecord(
                id=v.id, values=list(v.values), metadata=encode_metadata(v.metadata)
            )

    async def query(
        self,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[VectorMatch]:
        matches = []
        for record in self._vectors.values():
            if filter and any(str(record.metadata.get(k)) != str(v) for k, v in filter.items()):
                continue
            matches.append(VectorMatch(
                id=record.id,
                score=cosine_similarity(vector, record.values),
                metadata=dict(record.metadata),
            ))
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    async def delete_by_ids(self, ids: List[str]) -> None:
        for vector_id in ids:
            self._vectors.pop(vector_id, None)

    def ids(self) -> List[str]:
        """All stored IDs, sorted."""
        return sorted(self._vectors)

    def get(self, vector_id: str) -> Optional[VectorRecord]:
        return self._vectors.get(vector_id)


_vector_index_client: Optional[VectorIndexClient] = None


def get_vector_index_client() -> VectorIndexClient:
    """Shared vector index client for the configured backend (created on first use)."""
    global _vector_index_client
    if _vector_index_client is None:
        if settings.VECTOR_INDEX_BACKEND == "memory":
            _vector_index_client = InMemoryVectorIndexClient()
        else:
            from worknote_rag.core.database import AsyncSessionLocal
            _vector_index_client = PgVectorIndexClient(AsyncSessionLocal)
        logger.info(f"Vector index client initialized ({type(_vector_index_client).__name__})")
    return _vector_index_client
