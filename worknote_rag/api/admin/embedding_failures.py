"""
Embedding failure endpoints.

Dead-letter items are embedding jobs that exhausted their attempts. They
stay in the queue until an operator retries them from here.
"""

import logging

from fastapi import APIRouter, Depends, Query

from worknote_rag.core.dependencies import get_retry_service
from worknote_rag.core.errors import wrap_or_reraise
from worknote_rag.models.embedding_retry import DeadLetterListResponse, RetryResponse
from worknote_rag.services.retry_queue import EmbeddingRetryService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/embedding-failures", response_model=DeadLetterListResponse)
async def list_embedding_failures(
    limit: int = Query(50, ge=1, le=200, description="Maximum number of items to return"),
    offset: int = Query(0, ge=0, description="Number of items to skip"),
    retry_service: EmbeddingRetryService = Depends(get_retry_service),
):
    """
    List dead-letter embedding jobs, most recently failed first.

    Each item carries the title of its work note, or null if the note has
    since been deleted.
    """
    try:
        items, total = await retry_service.list_dead_letter(limit=limit, offset=offset)
        return DeadLetterListResponse(items=items, total=total)
    except Exception as e:
        wrap_or_reraise(e, context="listing embedding failures")


@router.post("/embedding-failures/{item_id}/retry", response_model=RetryResponse)
async def retry_embedding_failure(
    item_id: str,
    retry_service: EmbeddingRetryService = Depends(get_retry_service),
):
    """
    Move a dead-letter job back to pending so the worker picks it up again.

    Returns 404 for unknown IDs and 400 if the item is not in dead_letter.
    The attempt count is kept.
    """
    try:
        item = await retry_service.reset_to_pending(item_id)
        await retry_service.db.commit()
        logger.info(f"Operator retry of embedding job {item_id} ({item.work_id})")
        return RetryResponse(
            success=True,
            message=f"Retry item {item_id} reset to pending",
            status=item.status,
        )
    except Exception as e:
        wrap_or_reraise(e, context="retrying embedding failure")
