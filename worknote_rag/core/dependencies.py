"""
Dependency injection for services.

Routes depend on these providers rather than constructing services
themselves, so tests can swap the database session, embedding client and
vector index through app.dependency_overrides.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from worknote_rag.core.database import get_db
from worknote_rag.services.embedding_client import EmbeddingClient, get_embedding_client
from worknote_rag.services.embedding_processor import EmbeddingProcessor
from worknote_rag.services.retry_queue import EmbeddingRetryService
from worknote_rag.services.similarity_search import SimilaritySearchService
from worknote_rag.services.vector_index import VectorIndexClient, get_vector_index_client
from worknote_rag.services.work_note_service import WorkNoteService


def get_work_note_service(db: AsyncSession = Depends(get_db)) -> WorkNoteService:
    return WorkNoteService(db)


def get_retry_service(db: AsyncSession = Depends(get_db)) -> EmbeddingRetryService:
    return EmbeddingRetryService(db)


def get_embedding_processor(
    db: AsyncSession = Depends(get_db),
    embedding_client: EmbeddingClient = Depends(get_embedding_client),
    vector_index: VectorIndexClient = Depends(get_vector_index_client),
) -> EmbeddingProcessor:
    return EmbeddingProcessor(db, embedding_client, vector_index)


def get_similarity_search_service(
    db: AsyncSession = Depends(get_db),
    embedding_client: EmbeddingClient = Depends(get_embedding_client),
    vector_index: VectorIndexClient = Depends(get_vector_index_client),
) -> SimilaritySearchService:
    return SimilaritySearchService(db, embedding_client, vector_index)
