"""
SQLAlchemy-backed storage for work notes, todos and the embedding retry queue.

Every store wraps an AsyncSession and never commits on its own; the caller
owns the transaction boundary.
"""

import logging
from typing import Dict, List, Optional, Tuple
from datetime import datetime
from sqlalchemy import select, update, delete, and_, or_, func, tuple_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from worknote_rag.models.work_note import WorkNoteInDB, WorkNoteCreate, WorkNoteUpdate, TodoInDB
from worknote_rag.models.embedding_retry import EmbeddingRetryItem, OperationType, RetryStatus
from worknote_rag.models.db_models import (
    DBWorkNote, DBTodo, DBEmbeddingRetryItem,
    TODO_STATUS_OPEN, RETRY_STATUS_PENDING, RETRY_STATUS_DEAD_LETTER, CLAIMABLE_RETRY_STATUSES,
    as_utc, utc_now, next_updated_at,
)

logger = logging.getLogger(__name__)


class WorkNoteStorePostgres:
    """Work note storage, including the embedding bookkeeping columns."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, data: WorkNoteCreate) -> WorkNoteInDB:
        """Create a new work note. It starts out not embedded."""
        now = utc_now()
        db_note = DBWorkNote(
            title=data.title,
            content_raw=data.content,
            category=data.category,
            project_id=data.project_id,
            created_at=now,
            updated_at=now,
            embedded_at=None,
            max_chunk_count=0,
        )
        self.db.add(db_note)
        await self.db.flush()
        return self._to_pydantic(db_note)

    async def get(self, work_id: str) -> Optional[WorkNoteInDB]:
        """Read the current committed state of a work note."""
        result = await self.db.execute(
            select(DBWorkNote)
            .where(DBWorkNote.work_id == work_id)
            .execution_options(populate_existing=True)
        )
        db_note = result.scalar_one_or_none()
        return self._to_pydantic(db_note) if db_note else None

    async def find_by_ids(self, work_ids: List[str]) -> List[WorkNoteInDB]:
        """Fetch several work notes in one query. Missing IDs are skipped."""
        if not work_ids:
            return []
        result = await self.db.execute(
            select(DBWorkNote)
            .where(DBWorkNote.work_id.in_(work_ids))
            .execution_options(populate_existing=True)
        )
        return [self._to_pydantic(n) for n in result.scalars().all()]

    async def get_version(self, work_id: str) -> Optional[datetime]:
        """Current updated_at of a work note, or None if it no longer exists."""
        result = await self.db.execute(
            select(DBWorkNote.updated_at).where(DBWorkNote.work_id == work_id)
        )
        return as_utc(result.scalar_one_or_none())

    async def update(self, work_id: str, data: WorkNoteUpdate) -> Optional[WorkNoteInDB]:
        """
        Apply a content edit.

        Moves updated_at forward and clears embedded_at: the index no
        longer reflects this version.
        """
        result = await self.db.execute(
            select(DBWorkNote).where(DBWorkNote.work_id == work_id)
        )
        db_note = result.scalar_one_or_none()
        if not db_note:
            return None

        update_dict = data.model_dump(exclude_unset=True)
        if "content" in update_dict:
            update_dict["content_raw"] = update_dict.pop("content")
        for key, value in update_dict.items():
            setattr(db_note, key, value)

        db_note.updated_at = next_updated_at(db_note.updated_at)
        db_note.embedded_at = None
        await self.db.flush()
        return self._to_pydantic(db_note)

    async def delete(self, work_id: str) -> bool:
        """Delete a work note and its todos."""
        await self.db.execute(delete(DBTodo).where(DBTodo.work_id == work_id))
        result = await self.db.execute(delete(DBWorkNote).where(DBWorkNote.work_id == work_id))
        return result.rowcount > 0

    async def get_max_chunk_count(self, work_id: str) -> Optional[int]:
        """High-water mark of chunk slots, or None if the note no longer exists."""
        result = await self.db.execute(
            select(DBWorkNote.max_chunk_count).where(DBWorkNote.work_id == work_id)
        )
        return result.scalar_one_or_none()

    async def raise_max_chunk_count(self, work_id: str, chunk_count: int) -> int:
        """Raise the high-water mark to chunk_count. Never lowers it."""
        result = await self.db.execute(
            update(DBWorkNote)
            .where(DBWorkNote.work_id == work_id, DBWorkNote.max_chunk_count < chunk_count)
            .values(max_chunk_count=chunk_count)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def mark_embedded_if_current(
        self,
        work_id: str,
        expected_updated_at: datetime,
        chunk_count: int,
    ) -> bool:
        """
        Stamp embedded_at only if the note is still at expected_updated_at.

        Also records chunk_count as the new high-water mark since the slots
        above it were already removed. Returns False when the note was edited
        or deleted in the meantime.
        """
        result = await self.db.execute(
            update(DBWorkNote)
            .where(
                DBWorkNote.work_id == work_id,
                DBWorkNote.updated_at == expected_updated_at,
            )
            .values(embedded_at=utc_now(), max_chunk_count=chunk_count)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_ids_page(
        self,
        limit: int,
        after: Optional[Tuple[datetime, str]] = None,
        only_pending: bool = False,
    ) -> List[Tuple[datetime, str]]:
        """Keyset page of (created_at, work_id), oldest first."""
        stmt = select(DBWorkNote.created_at, DBWorkNote.work_id)
        if only_pending:
            stmt = stmt.where(DBWorkNote.embedded_at.is_(None))
        if after is not None:
            stmt = stmt.where(
                tuple_(DBWorkNote.created_at, DBWorkNote.work_id) > tuple_(after[0], after[1])
            )
        stmt = stmt.order_by(DBWorkNote.created_at, DBWorkNote.work_id).limit(limit)
        result = await self.db.execute(stmt)
        return [(row.created_at, row.work_id) for row in result.all()]

    async def count_embedding_stats(self) -> Tuple[int, int]:
        """Return (total notes, notes with embedded_at set)."""
        result = await self.db.execute(
            select(func.count(DBWorkNote.work_id), func.count(DBWorkNote.embedded_at))
        )
        total, embedded = result.one()
        return total or 0, embedded or 0

    async def add_todo(self, work_id: str, title: str, due_date: Optional[datetime] = None) -> TodoInDB:
        """Attach an open todo to a work note."""
        db_todo = DBTodo(work_id=work_id, title=title, due_date=due_date, status=TODO_STATUS_OPEN)
        self.db.add(db_todo)
        await self.db.flush()
        return TodoInDB.model_validate(db_todo)

    async def find_open_todos_by_work_ids(self, work_ids: List[str]) -> Dict[str, List[TodoInDB]]:
        """Open todos grouped by work note, in one query."""
        if not work_ids:
            return {}
        result = await self.db.execute(
            select(DBTodo)
            .where(DBTodo.work_id.in_(work_ids), DBTodo.status == TODO_STATUS_OPEN)
            .order_by(DBTodo.due_date.is_(None), DBTodo.due_date, DBTodo.created_at)
        )
        grouped: Dict[str, List[TodoInDB]] = {}
        for db_todo in result.scalars().all():
            todo = TodoInDB.model_validate(db_todo)
            todo.due_date = as_utc(todo.due_date)
            grouped.setdefault(db_todo.work_id, []).append(todo)
        return grouped

    def _to_pydantic(self, db_note: DBWorkNote) -> WorkNoteInDB:
        return WorkNoteInDB(
            work_id=db_note.work_id,
            title=db_note.title,
            content_raw=db_note.content_raw or "",
            category=db_note.category,
            project_id=db_note.project_id,
            created_at=as_utc(db_note.created_at),
            updated_at=as_utc(db_note.updated_at),
            embedded_at=as_utc(db_note.embedded_at),
            max_chunk_count=db_note.max_chunk_count or 0,
        )


class EmbeddingRetryQueueStore:
    """Row-level access to the embedding retry queue."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        work_id: str,
        operation_type: OperationType,
        max_attempts: int,
        chunk_count: Optional[int] = None,
    ) -> EmbeddingRetryItem:
        now = utc_now()
        db_item = DBEmbeddingRetryItem(
            work_id=work_id,
            operation_type=operation_type.value,
            attempt_count=0,
            max_attempts=max_attempts,
            status=RETRY_STATUS_PENDING,
            chunk_count=chunk_count,
            next_retry_at=now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(db_item)
        await self.db.flush()
        return self._to_pydantic(db_item)

    async def get(self, item_id: str) -> Optional[EmbeddingRetryItem]:
        result = await self.db.execute(
            select(DBEmbeddingRetryItem)
            .where(DBEmbeddingRetryItem.id == item_id)
            .execution_options(populate_existing=True)
        )
        db_item = result.scalar_one_or_none()
        return self._to_pydantic(db_item) if db_item else None

    async def find_unclaimed_active(
        self,
        work_id: str,
        operation_type: OperationType,
    ) -> Optional[EmbeddingRetryItem]:
        """A pending/retrying item for the same note and operation that no worker holds."""
        result = await self.db.execute(
            select(DBEmbeddingRetryItem)
            .where(
                DBEmbeddingRetryItem.work_id == work_id,
                DBEmbeddingRetryItem.operation_type == operation_type.value,
                DBEmbeddingRetryItem.status.in_(CLAIMABLE_RETRY_STATUSES),
                DBEmbeddingRetryItem.locked_at.is_(None),
            )
            .order_by(DBEmbeddingRetryItem.created_at)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        db_item = result.scalar_one_or_none()
        return self._to_pydantic(db_item) if db_item else None

    async def reschedule_now(self, item_id: str, chunk_count: Optional[int] = None) -> bool:
        """
        Pull an unclaimed item's schedule forward, optionally replacing its chunk_count.

        Returns False if a worker leased the item in the meantime.
        """
        now = utc_now()
        values = {"next_retry_at": now, "updated_at": now}
        if chunk_count is not None:
            values["chunk_count"] = chunk_count
        result = await self.db.execute(
            update(DBEmbeddingRetryItem)
            .where(DBEmbeddingRetryItem.id == item_id, DBEmbeddingRetryItem.locked_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def find_due(self, now: datetime, lease_cutoff: datetime, limit: int) -> List[EmbeddingRetryItem]:
        """Due, claimable items, oldest first."""
        result = await self.db.execute(
            select(DBEmbeddingRetryItem)
            .where(
                DBEmbeddingRetryItem.status.in_(CLAIMABLE_RETRY_STATUSES),
                or_(DBEmbeddingRetryItem.next_retry_at.is_(None), DBEmbeddingRetryItem.next_retry_at <= now),
                or_(DBEmbeddingRetryItem.locked_at.is_(None), DBEmbeddingRetryItem.locked_at < lease_cutoff),
            )
            .order_by(DBEmbeddingRetryItem.created_at, DBEmbeddingRetryItem.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [self._to_pydantic(i) for i in result.scalars().all()]

    async def try_claim(self, item_id: str, worker_id: str, now: datetime, lease_cutoff: datetime) -> bool:
        """
        Take the lease on one item.

        Fails if another worker holds a live lease on it or on any other item
        of the same work note, so one note is never processed twice at once.
        """
        other = aliased(DBEmbeddingRetryItem)
        busy_work_ids = select(other.work_id).where(
            other.id != item_id,
            other.locked_at.is_not(None),
            other.locked_at >= lease_cutoff,
        )
        result = await self.db.execute(
            update(DBEmbeddingRetryItem)
            .where(
                DBEmbeddingRetryItem.id == item_id,
                DBEmbeddingRetryItem.status.in_(CLAIMABLE_RETRY_STATUSES),
                or_(DBEmbeddingRetryItem.locked_at.is_(None), DBEmbeddingRetryItem.locked_at < lease_cutoff),
                DBEmbeddingRetryItem.work_id.not_in(busy_work_ids),
            )
            .values(locked_at=now, locked_by=worker_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _held_by(item_id: str, worker_id: Optional[str]) -> list:
        """WHERE clauses for an item, restricted to worker_id's lease when given."""
        clauses = [DBEmbeddingRetryItem.id == item_id]
        if worker_id is not None:
            clauses.append(DBEmbeddingRetryItem.locked_by == worker_id)
        return clauses

    async def delete(self, item_id: str, worker_id: Optional[str] = None) -> bool:
        result = await self.db.execute(
            delete(DBEmbeddingRetryItem).where(*self._held_by(item_id, worker_id))
        )
        return result.rowcount > 0

    async def apply_failure(
        self,
        item_id: str,
        expected_attempt_count: int,
        status: RetryStatus,
        error_message: str,
        next_retry_at: Optional[datetime],
        dead_letter_at: Optional[datetime],
        worker_id: Optional[str] = None,
    ) -> bool:
        """
        Count a failed attempt and release the lease.

        The increment happens in SQL and only applies while attempt_count still
        equals expected_attempt_count, so concurrent failures never overwrite
        each other. Dead-letter rows are never touched.
        """
        result = await self.db.execute(
            update(DBEmbeddingRetryItem)
            .where(
                *self._held_by(item_id, worker_id),
                DBEmbeddingRetryItem.status.in_(CLAIMABLE_RETRY_STATUSES),
                DBEmbeddingRetryItem.attempt_count == expected_attempt_count,
            )
            .values(
                attempt_count=DBEmbeddingRetryItem.attempt_count + 1,
                status=status.value,
                error_message=error_message,
                next_retry_at=next_retry_at,
                dead_letter_at=dead_letter_at,
                locked_at=None,
                locked_by=None,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release(self, item_id: str, worker_id: Optional[str] = None) -> bool:
        """Drop the lease without recording an attempt."""
        result = await self.db.execute(
            update(DBEmbeddingRetryItem)
            .where(*self._held_by(item_id, worker_id))
            .values(locked_at=None, locked_by=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reset_dead_letter(self, item_id: str, reset_attempts: bool = False) -> bool:
        """Move a dead-letter item back to pending. Conditional on it still being dead-lettered."""
        now = utc_now()
        values = {
            "status": RETRY_STATUS_PENDING,
            "dead_letter_at": None,
            "next_retry_at": now,
            "locked_at": None,
            "locked_by": None,
            "updated_at": now,
        }
        if reset_attempts:
            values["attempt_count"] = 0
        result = await self.db.execute(
            update(DBEmbeddingRetryItem)
            .where(
                DBEmbeddingRetryItem.id == item_id,
                DBEmbeddingRetryItem.status == RETRY_STATUS_DEAD_LETTER,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_dead_letter(
        self,
        limit: int,
        offset: int,
    ) -> Tuple[List[Tuple[EmbeddingRetryItem, Optional[str]]], int]:
        """Dead-letter items, newest first, each with its note title (None if the note is gone)."""
        result = await self.db.execute(
            select(DBEmbeddingRetryItem, DBWorkNote.title)
            .outerjoin(DBWorkNote, DBWorkNote.work_id == DBEmbeddingRetryItem.work_id)
            .where(DBEmbeddingRetryItem.status == RETRY_STATUS_DEAD_LETTER)
            .order_by(DBEmbeddingRetryItem.dead_letter_at.desc(), DBEmbeddingRetryItem.id)
            .limit(limit)
            .offset(offset)
        )
        rows = [(self._to_pydantic(item), title) for item, title in result.all()]

        total_result = await self.db.execute(
            select(func.count(DBEmbeddingRetryItem.id))
            .where(DBEmbeddingRetryItem.status == RETRY_STATUS_DEAD_LETTER)
        )
        return rows, total_result.scalar_one()

    async def count_by_status(self, lease_cutoff: datetime) -> Dict[str, int]:
        """Item counts per status plus the number of items under a live lease."""
        result = await self.db.execute(
            select(DBEmbeddingRetryItem.status, func.count(DBEmbeddingRetryItem.id))
            .group_by(DBEmbeddingRetryItem.status)
        )
        counts = {status: count for status, count in result.all()}

        in_flight = await self.db.execute(
            select(func.count(DBEmbeddingRetryItem.id)).where(
                and_(
                    DBEmbeddingRetryItem.locked_at.is_not(None),
                    DBEmbeddingRetryItem.locked_at >= lease_cutoff,
                )
            )
        )
        counts["in_flight"] = in_flight.scalar_one()
        return counts

    def _to_pydantic(self, db_item: DBEmbeddingRetryItem) -> EmbeddingRetryItem:
        return EmbeddingRetryItem(
            id=db_item.id,
            work_id=db_item.work_id,
            operation_type=OperationType(db_item.operation_type),
            attempt_count=db_item.attempt_count,
            max_attempts=db_item.max_attempts,
            status=RetryStatus(db_item.status),
            error_message=db_item.error_message,
            chunk_count=db_item.chunk_count,
            next_retry_at=as_utc(db_item.next_retry_at),
            locked_at=as_utc(db_item.locked_at),
            locked_by=db_item.locked_by,
            created_at=as_utc(db_item.created_at),
            updated_at=as_utc(db_item.updated_at),
            dead_letter_at=as_utc(db_item.dead_letter_at),
        )
