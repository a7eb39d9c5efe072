"""
Similarity search API endpoint.
"""

import logging
from fastapi import APIRouter, Depends

from worknote_rag.core.dependencies import get_similarity_search_service
from worknote_rag.core.errors import wrap_or_reraise
from worknote_rag.models.search import SimilarNotesRequest, SimilarNotesResponse
from worknote_rag.services.similarity_search import SimilaritySearchService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/similar", response_model=SimilarNotesResponse)
async def find_similar_notes(
    request: SimilarNotesRequest,
    service: SimilaritySearchService = Depends(get_similarity_search_service)
):
    """
    Find work notes similar to the given text.

    Results are ranked by the best-matching chunk of each note and carry
    the note's open todos. Notes below score_threshold are omitted.
    """
    try:
        results = await service.find_similar_notes(
            request.query,
            top_k=request.top_k,
            score_threshold=request.score_threshold,
        )
        return SimilarNotesResponse(results=results)
    except Exception as e:
        wrap_or_reraise(e, context="searching similar work notes")
