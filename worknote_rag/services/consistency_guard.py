"""
Consistency Guard - optimistic concurrency around embedding a work note.

A job embeds the snapshot of a note captured when it started. Edits are not
blocked while the slow embedding work runs, so before a job may stamp
embedded_at it re-checks that the note's updated_at still equals the
snapshot's. A job that lost the race deletes the chunk IDs it wrote and
gives up; the edit that beat it has its own job queued.

Order of operations for embed_snapshot():
    0. note gone or already edited -> stop before writing anything
    1. raise the chunk high-water mark, upsert the new generation
    2. re-read the note; changed or gone -> roll back our chunk IDs
    3. delete stale slots [new_count, previous_count)
    4. conditional UPDATE embedded_at WHERE updated_at = snapshot.updated_at;
       zero rows -> roll back our chunk IDs

Staleness is an expected outcome, not an error. Backend failures in steps 1
and 3 propagate to the caller so the retry queue can record them.
"""

from enum import Enum
from typing import List, Optional

from worknote_rag.core.logging_config import get_logger
from worknote_rag.services.embedding_processor import EmbeddingProcessor, RecordSnapshot

logger = get_logger(__name__)


class EmbeddingOutcome(str, Enum):
    """Result of one embedding attempt."""
    FINALIZED = "finalized"
    STALE = "stale"
    NOT_FOUND = "not_found"


class ConsistencyGuard:
    """Finalizes or rolls back one embedding generation."""

    def __init__(self, processor: EmbeddingProcessor):
        self.processor = processor
        self.notes = processor.notes
        self.db = processor.db

    async def embed_snapshot(self, snapshot: RecordSnapshot) -> EmbeddingOutcome:
        work_id = snapshot.work_id
        log_extra = {"work_id": work_id, "snapshot_updated_at": snapshot.updated_at.isoformat()}

        outcome = await self._check_current(snapshot)
        if outcome is not None:
            logger.info(f"Skipping embedding for {work_id}: {outcome.value} before start", extra=log_extra)
            return outcome

        previous_count = await self.processor.get_max_known_chunk_count(work_id)
        chunks = self.processor.chunk_snapshot(snapshot)
        new_count = len(chunks)

        await self.processor.record_chunk_count(work_id, new_count)
        upserted_ids = await self.processor.upsert_chunks(chunks)

        outcome = await self._check_current(snapshot)
        if outcome is not None:
            await self._rollback(work_id, upserted_ids, outcome)
            return outcome

        if previous_count > new_count:
            await self.processor.delete_chunk_range(work_id, new_count, previous_count)

        finalized = await self.notes.mark_embedded_if_current(work_id, snapshot.updated_at, new_count)
        await self.db.commit()

        if not finalized:
            outcome = await self._check_current(snapshot) or EmbeddingOutcome.STALE
            await self._rollback(work_id, upserted_ids, outcome)
            return outcome

        logger.info(
            f"Embedding finalized for {work_id} ({new_count} chunk(s))",
            extra={**log_extra, "chunk_count": new_count, "previous_chunk_count": previous_count}
        )
        return EmbeddingOutcome.FINALIZED

    async def delete_record_chunks(self, work_id: str, chunk_count: int) -> None:
        """Remove every chunk slot of a deleted note."""
        await self.processor.delete_chunk_range(work_id, 0, chunk_count)

    async def _check_current(self, snapshot: RecordSnapshot) -> Optional[EmbeddingOutcome]:
        """None if the note still matches the snapshot, otherwise why not."""
        current_updated_at = await self.notes.get_version(snapshot.work_id)
        await self.db.commit()
        if current_updated_at is None:
            return EmbeddingOutcome.NOT_FOUND
        if current_updated_at != snapshot.updated_at:
            return EmbeddingOutcome.STALE
        return None

    async def _rollback(self, work_id: str, upserted_ids: List[str], outcome: EmbeddingOutcome) -> None:
        """Delete the chunk IDs this job wrote. Failures are logged, not raised."""
        logger.info(
            f"Rolling back {len(upserted_ids)} chunk(s) for {work_id}: note is {outcome.value}",
            extra={"work_id": work_id, "chunk_count": len(upserted_ids), "outcome": outcome.value}
        )
        try:
            await self.processor.delete_chunk_ids_in_batches(upserted_ids)
        except Exception as e:
            logger.error(
                f"Rollback of {len(upserted_ids)} chunk(s) for {work_id} failed: {e}",
                extra={"work_id": work_id},
                exc_info=True
            )
