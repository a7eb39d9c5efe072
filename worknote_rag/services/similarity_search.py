"""
Similarity Search - work notes related to a piece of text.

The vector index returns chunks, not notes. A query therefore over-fetches
chunk matches, keeps only those at or above the score threshold, collapses
them to one entry per note (best chunk wins) and hydrates the surviving
notes and their open todos with one batched query each.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from worknote_rag.core.config import settings
from worknote_rag.core.logging_config import get_logger
from worknote_rag.core.store_postgres import WorkNoteStorePostgres
from worknote_rag.models.search import SimilarWorkNote, TodoSummary
from worknote_rag.services.chunking import work_id_from_chunk_id
from worknote_rag.services.embedding_client import EmbeddingClient
from worknote_rag.services.vector_index import VectorIndexClient, VectorMatch

logger = get_logger(__name__)


def best_score_per_work_note(matches: List[VectorMatch], score_threshold: float) -> Dict[str, float]:
    """Highest chunk score per work ID, ignoring matches below the threshold."""
    best: Dict[str, float] = {}
    for match in matches:
        if match.score < score_threshold:
            continue
        work_id = work_id_from_chunk_id(match.id)
        if work_id not in best or match.score > best[work_id]:
            best[work_id] = match.score
    return best


class SimilaritySearchService:
    """Ranks work notes by similarity to a query text."""

    def __init__(
        self,
        db: AsyncSession,
        embedding_client: EmbeddingClient,
        vector_index: VectorIndexClient,
        oversample_factor: Optional[int] = None,
    ):
        self.notes = WorkNoteStorePostgres(db)
        self.embedding_client = embedding_client
        self.vector_index = vector_index
        self.oversample_factor = max(1, oversample_factor or settings.SEARCH_OVERSAMPLE_FACTOR)

    async def find_similar_notes(
        self,
        query: str,
        top_k: Optional[int] = None,
        score_threshold: Optional[float] = None,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[SimilarWorkNote]:
        """
        Work notes most similar to query, best first.

        Args:
            query: Free text to compare against
            top_k: Maximum number of notes (default SEARCH_DEFAULT_TOP_K)
            score_threshold: Minimum cosine similarity (default SEARCH_SCORE_THRESHOLD)
            filter: Optional metadata equality filter passed to the index

        Returns:
            Empty list for a blank query or when nothing clears the threshold.
        """
        if not query or not query.strip():
            return []

        if top_k is None:
            top_k = settings.SEARCH_DEFAULT_TOP_K
        if top_k <= 0:
            return []
        if score_threshold is None:
            score_threshold = settings.SEARCH_SCORE_THRESHOLD

        query_vector = await self.embedding_client.embed(query)
        matches = await self.vector_index.query(
            query_vector, top_k=top_k * self.oversample_factor, filter=filter
        )

        best = best_score_per_work_note(matches, score_threshold)
        if not best:
            logger.debug(f"No chunk above threshold {score_threshold} ({len(matches)} candidate(s))")
            return []

        ranked = sorted(best.items(), key=lambda kv: kv[1], reverse=True)[:top_k]
        work_ids = [work_id for work_id, _ in ranked]

        notes = {note.work_id: note for note in await self.notes.find_by_ids(work_ids)}
        todos = await self.notes.find_open_todos_by_work_ids(list(notes))

        results = []
        for work_id, score in ranked:
            note = notes.get(work_id)
            if note is None:
                # Deleted after its chunks were indexed; the delete job has not run yet
                continue
            results.append(SimilarWorkNote(
                work_id=note.work_id,
                title=note.title,
                content=note.content_raw,
                category=note.category,
                similarity_score=score,
                todos=[
                    TodoSummary(todo_id=t.todo_id, title=t.title, status=t.status, due_date=t.due_date)
                    for t in todos.get(work_id, [])
                ],
            ))

        logger.info(
            f"Similarity search returned {len(results)} note(s) "
            f"(top_k={top_k}, threshold={score_threshold}, candidates={len(matches)})"
        )
        return results
