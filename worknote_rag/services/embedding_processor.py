"""
Embedding Processor - chunk-level writes to the vector index.

Chunks are addressed by deterministic composite IDs ("{work_id}#chunk{i}"),
so there is no chunk registry table. Instead every work note carries
max_chunk_count, the highest number of chunk slots ever written for it,
which bounds stale-range deletes without scanning the index.

This module never marks a note as embedded; that is the job of the
ConsistencyGuard once it has verified the snapshot is still current.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from worknote_rag.core.logging_config import get_logger
from worknote_rag.core.store_postgres import WorkNoteStorePostgres
from worknote_rag.models.embedding_retry import EmbeddingStats
from worknote_rag.models.work_note import WorkNoteInDB
from worknote_rag.services.chunking import ChunkingService, TextChunk, generate_chunk_id, build_note_text
from worknote_rag.services.embedding_client import EmbeddingClient
from worknote_rag.services.vector_index import VectorIndexClient, VectorRecord

logger = get_logger(__name__)

# Max vectors per delete_by_ids call
VECTOR_DELETE_BATCH_SIZE = 100
# Max texts per embed_batch call
MAX_CHUNKS_PER_BATCH = 100


@dataclass(frozen=True)
class RecordSnapshot:
    """The state of a work note captured when an embedding job starts."""
    work_id: str
    title: str
    content: str
    category: Optional[str]
    project_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_note(cls, note: WorkNoteInDB) -> "RecordSnapshot":
        return cls(
            work_id=note.work_id,
            title=note.title,
            content=note.content_raw,
            category=note.category,
            project_id=note.project_id,
            created_at=note.created_at,
            updated_at=note.updated_at,
        )

    def chunk_metadata(self) -> Dict[str, Any]:
        """Metadata stored with every chunk of this snapshot."""
        return {
            "category": self.category,
            "project_id": self.project_id,
            "created_at_bucket": self.created_at.strftime("%Y-%m-%d"),
        }


class EmbeddingProcessor:
    """Drives chunk upserts and deletes against the vector index."""

    def __init__(
        self,
        db: AsyncSession,
        embedding_client: EmbeddingClient,
        vector_index: VectorIndexClient,
        chunker: Optional[ChunkingService] = None,
    ):
        self.db = db
        self.notes = WorkNoteStorePostgres(db)
        self.embedding_client = embedding_client
        self.vector_index = vector_index
        self.chunker = chunker or ChunkingService()

    def chunk_snapshot(self, snapshot: RecordSnapshot) -> List[TextChunk]:
        return self.chunker.chunk_work_note(
            snapshot.work_id,
            snapshot.title,
            snapshot.content,
            metadata=snapshot.chunk_metadata(),
        )

    def estimate_chunk_count(self, title: str, content: str) -> int:
        """Number of chunk slots the given content will occupy."""
        return self.chunker.count_chunks(build_note_text(title, content))

    async def upsert_chunks(self, chunks: List[TextChunk]) -> List[str]:
        """
        Embed and upsert chunks under their composite IDs.

        Returns the IDs written. Raises on any embedding or index failure;
        vectors from earlier batches may already be visible in that case.
        """
        written: List[str] = []
        for start in range(0, len(chunks), MAX_CHUNKS_PER_BATCH):
            batch = chunks[start:start + MAX_CHUNKS_PER_BATCH]
            vectors = await self.embedding_client.embed_batch([c.text for c in batch])
            if len(vectors) != len(batch):
                raise ValueError(
                    f"Embedding count mismatch: expected {len(batch)}, got {len(vectors)}"
                )

            records = [
                VectorRecord(id=chunk.chunk_id, values=vector, metadata=chunk.metadata)
                for chunk, vector in zip(batch, vectors)
            ]
            await self.vector_index.upsert(records)
            written.extend(r.id for r in records)

        return written

    async def get_max_known_chunk_count(self, work_id: str, fallback_count: int = 0) -> int:
        """Largest chunk count ever recorded for a note, never less than fallback_count."""
        recorded = await self.notes.get_max_chunk_count(work_id)
        if recorded is None:
            return fallback_count
        return max(fallback_count, recorded)

    async def record_chunk_count(self, work_id: str, chunk_count: int) -> None:
        """
        Raise the note's high-water mark and commit.

        Called before a generation is upserted so slots written by a job that
        crashes before finalizing are still covered by later range deletes.
        """
        await self.notes.raise_max_chunk_count(work_id, chunk_count)
        await self.db.commit()

    async def delete_chunk_range(self, work_id: str, from_index: int, to_index_exclusive: int) -> int:
        """Delete chunk slots [from_index, to_index_exclusive). Returns the number of IDs issued."""
        if to_index_exclusive <= from_index:
            return 0
        ids = [generate_chunk_id(work_id, i) for i in range(from_index, to_index_exclusive)]
        await self.delete_chunk_ids_in_batches(ids)
        logger.info(
            f"Deleted chunk range [{from_index}, {to_index_exclusive}) for {work_id}",
            extra={"work_id": work_id, "from_index": from_index, "to_index": to_index_exclusive}
        )
        return len(ids)

    async def delete_chunk_ids_in_batches(self, ids: List[str]) -> None:
        """Delete explicit chunk IDs, VECTOR_DELETE_BATCH_SIZE at a time."""
        for start in range(0, len(ids), VECTOR_DELETE_BATCH_SIZE):
            await self.vector_index.delete_by_ids(ids[start:start + VECTOR_DELETE_BATCH_SIZE])

    async def get_embedding_stats(self) -> EmbeddingStats:
        total, embedded = await self.notes.count_embedding_stats()
        return EmbeddingStats(total=total, embedded=embedded, pending=total - embedded)
