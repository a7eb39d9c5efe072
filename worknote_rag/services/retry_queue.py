"""
Embedding Retry Queue - durable state machine for embedding jobs.

    pending --claim--> (leased) --success/stale/not found--> deleted
                           |
                           +--failure--> retrying (next_retry_at = now + base ** attempts)
                           |
                           +--failure, attempts exhausted--> dead_letter
    dead_letter --operator reset--> pending

Rows live in the embedding_retry_queue table, so jobs survive restarts and
any number of workers can share the queue. A worker claims an item by taking
a lease (locked_at/locked_by); two items of the same work note are never
leased at the same time.
"""

from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from worknote_rag.core.config import settings
from worknote_rag.core.errors import NotFoundError, InvalidRetryStateError, ErrorCode
from worknote_rag.core.logging_config import get_logger
from worknote_rag.core.store_postgres import EmbeddingRetryQueueStore
from worknote_rag.models.db_models import utc_now
from worknote_rag.models.embedding_retry import (
    EmbeddingRetryItem, OperationType, RetryStatus, DeadLetterItem, QueueStats,
)

logger = get_logger(__name__)

# Longest error message kept on a queue row
MAX_ERROR_MESSAGE_LENGTH = 2000

# Re-reads allowed when concurrent failures race on one item
MAX_FAILURE_WRITE_ATTEMPTS = 5


def compute_backoff_seconds(attempt_count: int, base: int) -> int:
    """Delay before the next attempt after attempt_count failures (0 means immediate)."""
    if attempt_count <= 0:
        return 0
    return base ** attempt_count


class EmbeddingRetryService:
    """Queue operations over one database session. Callers commit."""

    def __init__(
        self,
        db: AsyncSession,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[int] = None,
        lease_seconds: Optional[int] = None,
    ):
        self.db = db
        self.store = EmbeddingRetryQueueStore(db)
        self.max_attempts = max_attempts or settings.EMBEDDING_RETRY_MAX_ATTEMPTS
        self.backoff_base = backoff_base or settings.EMBEDDING_RETRY_BACKOFF_BASE
        self.lease_seconds = lease_seconds or settings.EMBEDDING_WORKER_LEASE_SECONDS

    async def enqueue(
        self,
        work_id: str,
        operation_type: OperationType,
        chunk_count: Optional[int] = None,
    ) -> str:
        """
        Queue an embedding operation, due immediately. Returns the item ID.

        An unclaimed pending/retrying item for the same note and operation is
        reused instead of adding a duplicate. Items already leased by a worker
        never absorb a new enqueue: the worker may have read the note before
        this change.
        """
        existing = await self.store.find_unclaimed_active(work_id, operation_type)
        if existing:
            widened = None
            if chunk_count is not None:
                widened = max(chunk_count, existing.chunk_count or 0)
            if await self.store.reschedule_now(existing.id, chunk_count=widened):
                logger.debug(
                    f"Embedding job already queued for {work_id} ({operation_type.value}): {existing.id}",
                    extra={"work_id": work_id, "retry_id": existing.id}
                )
                return existing.id
            # Claimed between the lookup and the update: queue the change separately
            logger.debug(
                f"Embedding job {existing.id} for {work_id} was claimed meanwhile, enqueueing a new one",
                extra={"work_id": work_id, "retry_id": existing.id}
            )

        item = await self.store.create(work_id, operation_type, self.max_attempts, chunk_count=chunk_count)
        logger.info(
            f"Enqueued {operation_type.value} embedding job {item.id} for {work_id}",
            extra={"work_id": work_id, "retry_id": item.id, "operation_type": operation_type.value}
        )
        return item.id

    async def claim_batch(self, worker_id: str, limit: int) -> List[EmbeddingRetryItem]:
        """Lease up to limit due items, at most one per work note. Commits the leases."""
        now = utc_now()
        lease_cutoff = now - timedelta(seconds=self.lease_seconds)

        # Over-fetch: several candidates may belong to the same note
        candidates = await self.store.find_due(now, lease_cutoff, limit * 3)
        claimed: List[EmbeddingRetryItem] = []
        for candidate in candidates:
            if len(claimed) >= limit:
                break
            if await self.store.try_claim(candidate.id, worker_id, now, lease_cutoff):
                claimed.append(candidate.model_copy(update={"locked_at": now, "locked_by": worker_id}))

        await self.db.commit()
        if claimed:
            logger.debug(f"Worker {worker_id} claimed {len(claimed)} embedding job(s)")
        return claimed

    async def mark_succeeded(self, item_id: str, worker_id: Optional[str] = None) -> bool:
        """
        Resolve an item. Resolved items are removed from the queue.

        With worker_id, only an item still leased by that worker is removed;
        returns False if the lease was lost to another worker.
        """
        deleted = await self.store.delete(item_id, worker_id=worker_id)
        if not deleted and worker_id is not None:
            logger.warning(
                f"Worker {worker_id} no longer holds retry item {item_id}; leaving it to the new holder",
                extra={"retry_id": item_id, "worker_id": worker_id}
            )
        return deleted

    async def record_failure(
        self,
        item_id: str,
        error_message: str,
        worker_id: Optional[str] = None,
    ) -> Optional[EmbeddingRetryItem]:
        """
        Count a failed attempt and schedule the next one, or dead-letter the item.

        Only pending/retrying items are affected. With worker_id, the failure
        is only recorded while that worker still holds the lease. Returns the
        updated item, the unchanged item if it is dead-lettered or leased by
        another worker, or None if it no longer exists.
        """
        message = (error_message or "unknown error")[:MAX_ERROR_MESSAGE_LENGTH]

        for _ in range(MAX_FAILURE_WRITE_ATTEMPTS):
            item = await self.store.get(item_id)
            if item is None:
                logger.warning(f"Cannot record failure for missing retry item {item_id}")
                return None
            if item.status == RetryStatus.DEAD_LETTER:
                logger.warning(f"Ignoring failure for retry item {item_id}: already dead_letter")
                return item
            if worker_id is not None and item.locked_by != worker_id:
                logger.warning(
                    f"Ignoring failure for retry item {item_id}: lease now held by {item.locked_by}",
                    extra={"retry_id": item_id, "worker_id": worker_id}
                )
                return item

            now = utc_now()
            attempt_count = item.attempt_count + 1
            if attempt_count >= item.max_attempts:
                status = RetryStatus.DEAD_LETTER
                next_retry_at = None
                dead_letter_at = now
            else:
                status = RetryStatus.RETRYING
                next_retry_at = now + timedelta(seconds=compute_backoff_seconds(attempt_count, self.backoff_base))
                dead_letter_at = None

            applied = await self.store.apply_failure(
                item_id,
                expected_attempt_count=item.attempt_count,
                status=status,
                error_message=message,
                next_retry_at=next_retry_at,
                dead_letter_at=dead_letter_at,
                worker_id=worker_id,
            )
            if applied:
                break
            # Another failure was counted since the read; re-read and try again
        else:
            logger.error(f"Could not record failure for retry item {item_id}: concurrent updates")
            return await self.store.get(item_id)

        log_extra = {
            "retry_id": item_id,
            "work_id": item.work_id,
            "attempt_count": attempt_count,
            "max_attempts": item.max_attempts,
        }
        if status == RetryStatus.DEAD_LETTER:
            logger.error(
                f"Embedding job {item_id} for {item.work_id} moved to dead_letter after {attempt_count} attempt(s): {message}",
                extra=log_extra
            )
        else:
            logger.warning(
                f"Embedding job {item_id} for {item.work_id} failed (attempt {attempt_count}/{item.max_attempts}), "
                f"next retry at {next_retry_at.isoformat()}",
                extra=log_extra
            )

        return item.model_copy(update={
            "attempt_count": attempt_count,
            "status": status,
            "error_message": message,
            "next_retry_at": next_retry_at,
            "dead_letter_at": dead_letter_at,
            "locked_at": None,
            "locked_by": None,
        })

    async def release(self, item_id: str, worker_id: Optional[str] = None) -> bool:
        """Give back a lease without counting an attempt."""
        return await self.store.release(item_id, worker_id=worker_id)

    async def reset_to_pending(self, item_id: str, reset_attempts: bool = False) -> EmbeddingRetryItem:
        """
        Operator retry of a dead-letter item.

        Raises:
            NotFoundError: Unknown item ID
            InvalidRetryStateError: Item is not in dead_letter
        """
        item = await self.store.get(item_id)
        if item is None:
            raise NotFoundError("Embedding retry item", item_id, error_code=ErrorCode.RETRY_ITEM_NOT_FOUND)
        if item.status != RetryStatus.DEAD_LETTER:
            raise InvalidRetryStateError(item_id, item.status.value)

        if not await self.store.reset_dead_letter(item_id, reset_attempts=reset_attempts):
            # Lost a race with another reset
            current = await self.store.get(item_id)
            if current is None:
                raise NotFoundError("Embedding retry item", item_id, error_code=ErrorCode.RETRY_ITEM_NOT_FOUND)
            raise InvalidRetryStateError(item_id, current.status.value)

        logger.info(
            f"Retry item {item_id} reset to pending by operator",
            extra={"retry_id": item_id, "work_id": item.work_id, "reset_attempts": reset_attempts}
        )
        return await self.store.get(item_id)

    async def list_dead_letter(self, limit: int = 50, offset: int = 0) -> Tuple[List[DeadLetterItem], int]:
        """Dead-letter items, most recently failed first, with the total count."""
        rows, total = await self.store.list_dead_letter(limit, offset)
        items = [
            DeadLetterItem(
                id=item.id,
                work_id=item.work_id,
                work_title=title,
                operation_type=item.operation_type,
                attempt_count=item.attempt_count,
                error_message=item.error_message,
                created_at=item.created_at,
                dead_letter_at=item.dead_letter_at,
            )
            for item, title in rows
        ]
        return items, total

    async def get_queue_stats(self) -> QueueStats:
        lease_cutoff = utc_now() - timedelta(seconds=self.lease_seconds)
        counts = await self.store.count_by_status(lease_cutoff)
        pending = counts.get(RetryStatus.PENDING.value, 0)
        retrying = counts.get(RetryStatus.RETRYING.value, 0)
        dead_letter = counts.get(RetryStatus.DEAD_LETTER.value, 0)
        return QueueStats(
            pending=pending,
            retrying=retrying,
            dead_letter=dead_letter,
            in_flight=counts.get("in_flight", 0),
            total=pending + retrying + dead_letter,
        )
