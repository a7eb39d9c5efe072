"""
Work note API endpoints.

Thin write endpoints: each call commits the note change and queues the
matching embedding job, then returns without waiting for embeddings.
"""

import logging
from fastapi import APIRouter, Depends, status

from worknote_rag.core.dependencies import get_work_note_service
from worknote_rag.core.errors import NotFoundError, wrap_or_reraise
from worknote_rag.models.work_note import WorkNote, WorkNoteCreate, WorkNoteUpdate
from worknote_rag.services.work_note_service import WorkNoteService, to_response

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/", response_model=WorkNote, status_code=status.HTTP_201_CREATED)
async def create_work_note(
    note: WorkNoteCreate,
    service: WorkNoteService = Depends(get_work_note_service)
):
    """Create a work note. It is embedded in the background."""
    try:
        return to_response(await service.create(note))
    except Exception as e:
        wrap_or_reraise(e, context="creating work note")


@router.get("/{work_id}", response_model=WorkNote)
async def get_work_note(
    work_id: str,
    service: WorkNoteService = Depends(get_work_note_service)
):
    note = await service.get(work_id)
    if note is None:
        raise NotFoundError("Work note", work_id)
    return to_response(note)


@router.put("/{work_id}", response_model=WorkNote)
async def update_work_note(
    work_id: str,
    update: WorkNoteUpdate,
    service: WorkNoteService = Depends(get_work_note_service)
):
    """
    Edit a work note.

    The note reports embedding_pending=true until the worker has
    re-embedded this version.
    """
    try:
        note = await service.update(work_id, update)
        if note is None:
            raise NotFoundError("Work note", work_id)
        return to_response(note)
    except Exception as e:
        wrap_or_reraise(e, context="updating work note")


@router.delete("/{work_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_work_note(
    work_id: str,
    service: WorkNoteService = Depends(get_work_note_service)
):
    """Delete a work note. Its chunks are removed from the index in the background."""
    try:
        if not await service.delete(work_id):
            raise NotFoundError("Work note", work_id)
    except Exception as e:
        wrap_or_reraise(e, context="deleting work note")
