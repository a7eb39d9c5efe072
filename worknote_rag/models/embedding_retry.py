"""
Pydantic models and enums for the embedding retry queue.
"""

from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class RetryStatus(str, Enum):
    """Lifecycle of a retry queue item. Resolved items are deleted."""
    PENDING = "pending"
    RETRYING = "retrying"
    DEAD_LETTER = "dead_letter"


class OperationType(str, Enum):
    """Embedding operation carried by a retry queue item."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EmbeddingRetryItem(BaseModel):
    """Retry queue item as stored."""
    id: str
    work_id: str
    operation_type: OperationType
    attempt_count: int
    max_attempts: int
    status: RetryStatus
    error_message: Optional[str] = None
    chunk_count: Optional[int] = None
    next_retry_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    dead_letter_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DeadLetterItem(BaseModel):
    """Dead-letter entry shown to operators."""
    id: str
    work_id: str
    work_title: Optional[str] = Field(None, description="Null when the work note no longer exists")
    operation_type: OperationType
    attempt_count: int
    error_message: Optional[str] = None
    created_at: datetime
    dead_letter_at: Optional[datetime] = None


class DeadLetterListResponse(BaseModel):
    """Paginated dead-letter listing."""
    items: List[DeadLetterItem]
    total: int


class RetryResponse(BaseModel):
    """Result of an operator retry request."""
    success: bool
    message: str
    status: RetryStatus


class QueueStats(BaseModel):
    """Item counts per retry queue status."""
    pending: int = 0
    retrying: int = 0
    dead_letter: int = 0
    in_flight: int = 0
    total: int = 0


class EmbeddingStats(BaseModel):
    """Embedding coverage of work notes."""
    total: int
    embedded: int
    pending: int


class EnqueueResult(BaseModel):
    """Result of a bulk enqueue request."""
    success: bool
    message: str
    enqueued: int
