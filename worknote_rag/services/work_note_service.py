"""
Work note write path.

Every write commits the relational change together with its embedding
queue item, then returns. The vector index catches up asynchronously
through the embedding worker.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from worknote_rag.core.logging_config import get_logger
from worknote_rag.core.store_postgres import WorkNoteStorePostgres
from worknote_rag.models.embedding_retry import OperationType
from worknote_rag.models.work_note import WorkNote, WorkNoteCreate, WorkNoteUpdate, WorkNoteInDB
from worknote_rag.services.chunking import ChunkingService, build_note_text
from worknote_rag.services.retry_queue import EmbeddingRetryService

logger = get_logger(__name__)

# Page size for bulk enqueue scans
REINDEX_PAGE_SIZE = 500


def to_response(note: WorkNoteInDB) -> WorkNote:
    return WorkNote(
        work_id=note.work_id,
        title=note.title,
        content=note.content_raw,
        category=note.category,
        project_id=note.project_id,
        created_at=note.created_at,
        updated_at=note.updated_at,
        embedded_at=note.embedded_at,
        embedding_pending=note.embedded_at is None,
    )


class WorkNoteService:
    """Create, edit and delete work notes, queueing the matching embedding job."""

    def __init__(self, db: AsyncSession, chunker: Optional[ChunkingService] = None):
        self.db = db
        self.notes = WorkNoteStorePostgres(db)
        self.retry_queue = EmbeddingRetryService(db)
        self.chunker = chunker or ChunkingService()

    async def get(self, work_id: str) -> Optional[WorkNoteInDB]:
        return await self.notes.get(work_id)

    async def create(self, data: WorkNoteCreate) -> WorkNoteInDB:
        note = await self.notes.create(data)
        await self.retry_queue.enqueue(note.work_id, OperationType.CREATE)
        await self.db.commit()
        logger.info(f"Created work note {note.work_id}", extra={"work_id": note.work_id})
        return note

    async def update(self, work_id: str, data: WorkNoteUpdate) -> Optional[WorkNoteInDB]:
        """Apply an edit. Returns None if the note does not exist."""
        note = await self.notes.update(work_id, data)
        if note is None:
            return None
        await self.retry_queue.enqueue(work_id, OperationType.UPDATE)
        await self.db.commit()
        logger.info(
            f"Updated work note {work_id}",
            extra={"work_id": work_id, "updated_at": note.updated_at.isoformat()}
        )
        return note

    async def delete(self, work_id: str) -> bool:
        """
        Delete a note and queue removal of its chunks.

        The number of chunk slots to remove is captured before the row goes
        away: the larger of the current content's chunk count and the
        note's high-water mark.
        """
        note = await self.notes.get(work_id)
        if note is None:
            return False

        estimated = self.chunker.count_chunks(build_note_text(note.title, note.content_raw))
        chunk_count = max(estimated, note.max_chunk_count)

        await self.notes.delete(work_id)
        await self.retry_queue.enqueue(work_id, OperationType.DELETE, chunk_count=chunk_count)
        await self.db.commit()
        logger.info(
            f"Deleted work note {work_id} ({chunk_count} chunk slot(s) queued for removal)",
            extra={"work_id": work_id, "chunk_count": chunk_count}
        )
        return True

    async def reembed(self, work_id: str) -> Optional[str]:
        """Queue a re-embed of the current content without editing the note."""
        if await self.notes.get_version(work_id) is None:
            return None
        item_id = await self.retry_queue.enqueue(work_id, OperationType.UPDATE)
        await self.db.commit()
        return item_id

    async def enqueue_reindex_all(self) -> int:
        """Queue every note for re-embedding. Returns the number of notes queued."""
        return await self._enqueue_all(only_pending=False)

    async def enqueue_pending(self) -> int:
        """Queue every note whose embedded_at is NULL."""
        return await self._enqueue_all(only_pending=True)

    async def _enqueue_all(self, only_pending: bool) -> int:
        total = 0
        after = None
        while True:
            page = await self.notes.list_ids_page(REINDEX_PAGE_SIZE, after=after, only_pending=only_pending)
            if not page:
                break
            for _, work_id in page:
                await self.retry_queue.enqueue(work_id, OperationType.UPDATE)
            await self.db.commit()
            total += len(page)
            after = page[-1]

        logger.info(
            f"Queued {total} work note(s) for embedding ({'pending only' if only_pending else 'all'})",
            extra={"enqueued": total}
        )
        return total
