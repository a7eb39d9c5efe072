"""
SQLAlchemy database models for relational persistence.
These models map to actual database tables.
"""

from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, Index
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from datetime import datetime, timezone, timedelta
from typing import Optional
import uuid

Base = declarative_base()


def utc_now():
    """Return current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without timezone support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def next_updated_at(previous: Optional[datetime]) -> datetime:
    """
    Timestamp for a content edit.

    Always strictly greater than the previous value so two edits within the
    same clock tick still produce distinct versions.
    """
    now = utc_now()
    previous = as_utc(previous)
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def generate_work_id():
    """Generate a new work note ID."""
    return f"WORK-{uuid.uuid4().hex[:16]}"


def generate_todo_id():
    """Generate a new todo ID."""
    return f"TODO-{uuid.uuid4().hex[:16]}"


def generate_retry_id():
    """Generate a new retry queue item ID."""
    return f"RETRY-{uuid.uuid4().hex[:16]}"


# Todo status constants
TODO_STATUS_OPEN = 'open'
TODO_STATUS_COMPLETED = 'completed'

# Retry queue status constants (enforced by RetryStatus in models.embedding_retry)
RETRY_STATUS_PENDING = 'pending'
RETRY_STATUS_RETRYING = 'retrying'
RETRY_STATUS_DEAD_LETTER = 'dead_letter'

# Statuses a worker may claim
CLAIMABLE_RETRY_STATUSES = (RETRY_STATUS_PENDING, RETRY_STATUS_RETRYING)


class DBWorkNote(Base):
    """Work note - the free-text record that gets chunked and embedded."""
    __tablename__ = "work_notes"

    work_id = Column(String(64), primary_key=True, default=generate_work_id)
    title = Column(String(500), nullable=False)
    content_raw = Column(Text, nullable=False, default="")
    category = Column(String(100), nullable=True)
    project_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, server_default=func.now())
    # Only content edits move updated_at. No onupdate hook: embedding
    # bookkeeping writes to this row must never change it.
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, server_default=func.now())
    # Set only when the vector index reflects the content as of updated_at
    embedded_at = Column(DateTime(timezone=True), nullable=True)
    # High-water mark of chunk slots ever written for this note
    max_chunk_count = Column(Integer, nullable=False, default=0, server_default="0")

    todos = relationship("DBTodo", back_populates="work_note", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_work_notes_created_at", "created_at"),
        Index("ix_work_notes_embedded_at", "embedded_at"),
    )


class DBTodo(Base):
    """Todo attached to a work note."""
    __tablename__ = "todos"

    todo_id = Column(String(64), primary_key=True, default=generate_todo_id)
    work_id = Column(String(64), ForeignKey("work_notes.work_id", ondelete="CASCADE"), nullable=False)
    title = Column(String(500), nullable=False)
    status = Column(String(20), nullable=False, default=TODO_STATUS_OPEN, server_default=TODO_STATUS_OPEN)
    due_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, server_default=func.now())

    work_note = relationship("DBWorkNote", back_populates="todos")

    __table_args__ = (
        Index("ix_todos_work_id_status", "work_id", "status"),
    )


class DBEmbeddingRetryItem(Base):
    """
    Durable embedding job.

    One row per pending create/update/delete embedding operation. Rows are
    deleted once the operation is resolved; exhausted rows stay in
    ``dead_letter`` until an operator resets them. work_id is
    not a foreign key: delete jobs outlive their work note.
    """
    __tablename__ = "embedding_retry_queue"

    id = Column(String(64), primary_key=True, default=generate_retry_id)
    work_id = Column(String(64), nullable=False)
    operation_type = Column(String(10), nullable=False)
    attempt_count = Column(Integer, nullable=False, default=0, server_default="0")
    max_attempts = Column(Integer, nullable=False, default=3, server_default="3")
    status = Column(String(20), nullable=False, default=RETRY_STATUS_PENDING, server_default=RETRY_STATUS_PENDING)
    error_message = Column(Text, nullable=True)
    # For delete operations: chunk slots to remove, captured before the note row is gone
    chunk_count = Column(Integer, nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    locked_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now, server_default=func.now())
    dead_letter_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_embedding_retry_queue_status_next_retry", "status", "next_retry_at"),
        Index("ix_embedding_retry_queue_work_id", "work_id"),
        Index("ix_embedding_retry_queue_dead_letter_at", "dead_letter_at"),
    )
