"""
Models package.
"""

from .db_models import Base, DBWorkNote, DBTodo, DBEmbeddingRetryItem
# Import DBVectorEntry to register it with SQLAlchemy metadata
from .vector_entry import DBVectorEntry
from .work_note import WorkNote, WorkNoteCreate, WorkNoteUpdate, WorkNoteInDB, TodoInDB
from .embedding_retry import (
    RetryStatus, OperationType, EmbeddingRetryItem, DeadLetterItem,
    DeadLetterListResponse, RetryResponse, QueueStats, EmbeddingStats, EnqueueResult
)
from .search import SimilarNotesRequest, SimilarWorkNote, SimilarNotesResponse, TodoSummary
