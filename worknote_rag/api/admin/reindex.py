"""
Embedding maintenance endpoints: bulk re-embedding and queue visibility.

Nothing here embeds inline. Every operation only queues jobs for the
embedding worker and returns.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from worknote_rag.core.dependencies import get_work_note_service, get_retry_service, get_embedding_processor
from worknote_rag.core.errors import NotFoundError, wrap_or_reraise
from worknote_rag.models.embedding_retry import EnqueueResult, EmbeddingStats
from worknote_rag.services.embedding_processor import EmbeddingProcessor
from worknote_rag.services.queue_worker import get_embedding_worker
from worknote_rag.services.retry_queue import EmbeddingRetryService
from worknote_rag.services.work_note_service import WorkNoteService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/reindex-all", response_model=EnqueueResult)
async def reindex_all(service: WorkNoteService = Depends(get_work_note_service)):
    """
    Queue every work note for re-embedding.

    Use after switching DEFAULT_EMBEDDING_MODEL or CHUNK_SIZE_TOKENS.
    """
    try:
        count = await service.enqueue_reindex_all()
        return EnqueueResult(success=True, message=f"Queued {count} work note(s) for re-embedding", enqueued=count)
    except Exception as e:
        wrap_or_reraise(e, context="queueing re-embed of all work notes")


@router.post("/reindex/{work_id}", response_model=EnqueueResult)
async def reindex_work_note(work_id: str, service: WorkNoteService = Depends(get_work_note_service)):
    """Queue one work note for re-embedding."""
    try:
        item_id = await service.reembed(work_id)
        if item_id is None:
            raise NotFoundError("Work note", work_id)
        return EnqueueResult(success=True, message=f"Queued {work_id} for re-embedding ({item_id})", enqueued=1)
    except Exception as e:
        wrap_or_reraise(e, context="queueing work note re-embed")


@router.post("/embed-pending", response_model=EnqueueResult)
async def embed_pending(service: WorkNoteService = Depends(get_work_note_service)):
    """Queue every work note that is not embedded yet."""
    try:
        count = await service.enqueue_pending()
        return EnqueueResult(success=True, message=f"Queued {count} pending work note(s)", enqueued=count)
    except Exception as e:
        wrap_or_reraise(e, context="queueing pending work notes")


@router.get("/embedding-stats", response_model=EmbeddingStats)
async def embedding_stats(processor: EmbeddingProcessor = Depends(get_embedding_processor)):
    """How many work notes the vector index currently reflects."""
    try:
        return await processor.get_embedding_stats()
    except Exception as e:
        wrap_or_reraise(e, context="reading embedding stats")


@router.get("/embedding-queue")
async def embedding_queue(retry_service: EmbeddingRetryService = Depends(get_retry_service)) -> Dict[str, Any]:
    """Retry queue counts per status plus the local worker's status."""
    try:
        stats = await retry_service.get_queue_stats()
        worker = get_embedding_worker()
        return {
            "queue": stats.model_dump(),
            "worker": worker.get_status() if worker else {"running": False},
        }
    except Exception as e:
        wrap_or_reraise(e, context="reading embedding queue status")
