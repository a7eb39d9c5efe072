"""
Embedding Queue Worker

Background processing of the embedding retry queue.

This service provides:
- A dispatcher task that leases due items from the durable queue
- A pool of worker tasks that embed, re-embed or delete a work note's chunks
- Outcome handling: finalized, stale and vanished notes resolve the item,
  exceptions become a failed attempt on the item
- Status/statistics for the admin endpoints

Record edits only enqueue an item and return; the slow embedding work
happens here. Queue rows are the only shared state, so any number of
processes may run a worker against the same database.
"""

import asyncio
import os
import socket
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from worknote_rag.core.config import settings
from worknote_rag.core.logging_config import get_logger
from worknote_rag.models.embedding_retry import EmbeddingRetryItem, OperationType
from worknote_rag.services.consistency_guard import ConsistencyGuard, EmbeddingOutcome
from worknote_rag.services.embedding_client import EmbeddingClient
from worknote_rag.services.embedding_processor import EmbeddingProcessor, RecordSnapshot
from worknote_rag.services.retry_queue import EmbeddingRetryService
from worknote_rag.services.vector_index import VectorIndexClient

logger = get_logger(__name__)


def generate_worker_id() -> str:
    """Identity written to locked_by: host, pid and a random suffix."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


class EmbeddingQueueWorker:
    """
    Dispatcher plus N consumer tasks over the embedding retry queue.

    The dispatcher claims at most batch_size items at a time and hands them
    to the consumers through an in-process asyncio.Queue. Items that are
    still waiting locally when the worker stops have their lease released.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        embedding_client: EmbeddingClient,
        vector_index: VectorIndexClient,
        worker_id: Optional[str] = None,
        concurrency: Optional[int] = None,
        poll_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.embedding_client = embedding_client
        self.vector_index = vector_index
        self.worker_id = worker_id or generate_worker_id()
        self.concurrency = max(1, concurrency or settings.EMBEDDING_WORKER_CONCURRENCY)
        self.poll_seconds = poll_seconds or settings.EMBEDDING_WORKER_POLL_SECONDS
        self.batch_size = max(1, batch_size or settings.EMBEDDING_WORKER_BATCH_SIZE)

        self._queue: asyncio.Queue = asyncio.Queue()
        self._in_flight: Set[str] = set()
        self._dispatcher_task: Optional[asyncio.Task] = None
        self._worker_tasks: list = []
        self._running: bool = False

        # Statistics
        self._total_finalized: int = 0
        self._total_stale: int = 0
        self._total_not_found: int = 0
        self._total_failed: int = 0
        self._total_time_ms: int = 0
        self._started_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the dispatcher and the consumer tasks."""
        if self._running:
            logger.warning("Embedding queue worker already running")
            return

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._dispatcher_task = asyncio.create_task(self._dispatcher())
        self._worker_tasks = [
            asyncio.create_task(self._worker(n)) for n in range(self.concurrency)
        ]
        logger.info(
            f"Embedding queue worker {self.worker_id} started "
            f"(concurrency={self.concurrency}, batch_size={self.batch_size}, poll={self.poll_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop all tasks and release leases on items that were never started."""
        if not self._running:
            return

        self._running = False

        tasks = [t for t in [self._dispatcher_task, *self._worker_tasks] if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._dispatcher_task = None
        self._worker_tasks = []

        await self._release_unstarted()

        logger.info(
            f"Embedding queue worker {self.worker_id} stopped "
            f"(finalized={self._total_finalized}, stale={self._total_stale}, failed={self._total_failed})"
        )

    async def run_once(self, limit: Optional[int] = None) -> int:
        """Claim one batch and process it inline. Returns the number of items processed."""
        async with self._session_factory() as session:
            items = await EmbeddingRetryService(session).claim_batch(self.worker_id, limit or self.batch_size)

        for item in items:
            await self.process_item(item)
        return len(items)

    async def process_item(self, item: EmbeddingRetryItem) -> Optional[EmbeddingOutcome]:
        """
        Run one claimed item to completion.

        Returns the outcome, or None if the attempt failed and was recorded
        on the item. Never raises for backend failures.
        """
        log_extra = {
            "retry_id": item.id,
            "work_id": item.work_id,
            "operation_type": item.operation_type.value,
            "attempt_count": item.attempt_count,
        }
        start_time = time.time()
        self._in_flight.add(item.id)

        try:
            async with self._session_factory() as session:
                retry_service = EmbeddingRetryService(session)
                try:
                    outcome = await self._execute(session, item)
                except Exception as e:
                    await session.rollback()
                    self._total_failed += 1
                    logger.error(
                        f"Embedding job {item.id} ({item.operation_type.value} {item.work_id}) failed: "
                        f"{type(e).__name__}: {e}",
                        extra=log_extra
                    )
                    await retry_service.record_failure(item.id, f"{type(e).__name__}: {e}", worker_id=self.worker_id)
                    await session.commit()
                    return None

                await retry_service.mark_succeeded(item.id, worker_id=self.worker_id)
                await session.commit()
        finally:
            self._in_flight.discard(item.id)

        processing_time = int((time.time() - start_time) * 1000)
        self._total_time_ms += processing_time
        if outcome == EmbeddingOutcome.FINALIZED:
            self._total_finalized += 1
        elif outcome == EmbeddingOutcome.STALE:
            self._total_stale += 1
        else:
            self._total_not_found += 1

        logger.info(
            f"Embedding job {item.id} resolved as {outcome.value} in {processing_time}ms",
            extra={**log_extra, "outcome": outcome.value}
        )
        return outcome

    async def _execute(self, session: AsyncSession, item: EmbeddingRetryItem) -> EmbeddingOutcome:
        processor = EmbeddingProcessor(session, self.embedding_client, self.vector_index)
        guard = ConsistencyGuard(processor)

        if item.operation_type == OperationType.DELETE:
            chunk_count = await processor.get_max_known_chunk_count(
                item.work_id, fallback_count=item.chunk_count or 0
            )
            await session.commit()
            await guard.delete_record_chunks(item.work_id, chunk_count)
            return EmbeddingOutcome.FINALIZED

        note = await processor.notes.get(item.work_id)
        await session.commit()
        if note is None:
            return EmbeddingOutcome.NOT_FOUND

        return await guard.embed_snapshot(RecordSnapshot.from_note(note))

    async def _dispatcher(self) -> None:
        """Lease due items and hand them to the consumers."""
        logger.info(f"Embedding queue dispatcher started ({self.worker_id})")

        while self._running:
            try:
                capacity = self.batch_size - self._queue.qsize()
                claimed = []
                if capacity > 0:
                    async with self._session_factory() as session:
                        claimed = await EmbeddingRetryService(session).claim_batch(self.worker_id, capacity)
                    for item in claimed:
                        self._queue.put_nowait(item)

                if not claimed:
                    await asyncio.sleep(self.poll_seconds)

            except asyncio.CancelledError:
                logger.info("Embedding queue dispatcher cancelled")
                break
            except Exception as e:
                logger.error(f"Embedding queue dispatcher error: {e}", exc_info=True)
                await asyncio.sleep(self.poll_seconds)

        logger.info("Embedding queue dispatcher stopped")

    async def _worker(self, number: int) -> None:
        """Consume claimed items until stopped."""
        logger.debug(f"Embedding worker task {number} started")

        while self._running:
            try:
                # Wait for an item with timeout to allow graceful shutdown
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.process_item(item)
                finally:
                    self._queue.task_done()

            except asyncio.CancelledError:
                break
            except Exception as e:
                # process_item records failures itself; this is a database problem
                # while recording. The lease expires and the item is retried.
                logger.error(f"Embedding worker task {number} error: {e}", exc_info=True)

        logger.debug(f"Embedding worker task {number} stopped")

    async def _release_unstarted(self) -> None:
        items = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
            self._queue.task_done()
        if not items:
            return

        async with self._session_factory() as session:
            retry_service = EmbeddingRetryService(session)
            for item in items:
                await retry_service.release(item.id, worker_id=self.worker_id)
            await session.commit()
        logger.info(f"Released {len(items)} unstarted embedding job(s)")

    def get_status(self) -> Dict[str, Any]:
        """Worker status for the admin API."""
        resolved = self._total_finalized + self._total_stale + self._total_not_found
        return {
            "running": self._running,
            "worker_id": self.worker_id,
            "concurrency": self.concurrency,
            "local_queue_size": self._queue.qsize(),
            "in_flight": sorted(self._in_flight),
            "total_finalized": self._total_finalized,
            "total_stale": self._total_stale,
            "total_not_found": self._total_not_found,
            "total_failed": self._total_failed,
            "average_processing_time_ms": self._total_time_ms // resolved if resolved else 0,
            "started_at": self._started_at.isoformat() if self._started_at else None,
        }


# Global worker instance
_embedding_worker: Optional[EmbeddingQueueWorker] = None


def get_embedding_worker() -> Optional[EmbeddingQueueWorker]:
    """The worker started by init_embedding_worker(), if any."""
    return _embedding_worker


async def init_embedding_worker(
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    embedding_client: Optional[EmbeddingClient] = None,
    vector_index: Optional[VectorIndexClient] = None,
) -> EmbeddingQueueWorker:
    """Initialize and start the embedding queue worker."""
    global _embedding_worker
    if _embedding_worker is None:
        if session_factory is None:
            from worknote_rag.core.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        if embedding_client is None:
            from worknote_rag.services.embedding_client import get_embedding_client
            embedding_client = get_embedding_client()
        if vector_index is None:
            from worknote_rag.services.vector_index import get_vector_index_client
            vector_index = get_vector_index_client()
        _embedding_worker = EmbeddingQueueWorker(session_factory, embedding_client, vector_index)
    if not _embedding_worker.running:
        await _embedding_worker.start()
    return _embedding_worker


async def stop_embedding_worker() -> None:
    """Stop the embedding queue worker."""
    global _embedding_worker
    if _embedding_worker is not None:
        await _embedding_worker.stop()
        _embedding_worker = None
