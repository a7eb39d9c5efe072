"""
Tests for the embedding retry queue: enqueue/dedupe, leasing, backoff,
dead-lettering and operator reset.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from worknote_rag.core.errors import InvalidRetryStateError, NotFoundError, ErrorCode
from worknote_rag.core.store_postgres import WorkNoteStorePostgres
from worknote_rag.models.db_models import DBEmbeddingRetryItem, utc_now
from worknote_rag.models.embedding_retry import OperationType, RetryStatus
from worknote_rag.services.retry_queue import EmbeddingRetryService, compute_backoff_seconds


@pytest.fixture
def retry_service(db_session):
    return EmbeddingRetryService(db_session, max_attempts=3, backoff_base=2)


async def dead_letter(retry_service, work_id, operation_type=OperationType.UPDATE):
    item_id = await retry_service.enqueue(work_id, operation_type)
    for attempt in range(3):
        await retry_service.record_failure(item_id, f"failure {attempt + 1}")
    await retry_service.db.commit()
    return item_id


def test_backoff_is_exponential():
    assert compute_backoff_seconds(0, 2) == 0
    assert [compute_backoff_seconds(n, 2) for n in (1, 2, 3)] == [2, 4, 8]


async def test_enqueue_creates_pending_item_due_now(retry_service):
    before = utc_now()
    item_id = await retry_service.enqueue("WORK-1", OperationType.CREATE)
    await retry_service.db.commit()

    item = await retry_service.store.get(item_id)
    assert item_id.startswith("RETRY-")
    assert item.status == RetryStatus.PENDING
    assert item.attempt_count == 0
    assert item.max_attempts == 3
    assert item.next_retry_at >= before - timedelta(seconds=1)
    assert item.next_retry_at <= utc_now()


async def test_enqueue_dedupes_unclaimed_items(retry_service):
    first = await retry_service.enqueue("WORK-1", OperationType.UPDATE)
    second = await retry_service.enqueue("WORK-1", OperationType.UPDATE)
    other_op = await retry_service.enqueue("WORK-1", OperationType.DELETE)
    other_note = await retry_service.enqueue("WORK-2", OperationType.UPDATE)
    await retry_service.db.commit()

    assert first == second
    assert len({first, other_op, other_note}) == 3


async def test_enqueue_dedupe_widens_delete_chunk_count(retry_service):
    first = await retry_service.enqueue("WORK-1", OperationType.DELETE, chunk_count=5)
    await retry_service.enqueue("WORK-1", OperationType.DELETE, chunk_count=2)
    await retry_service.db.commit()

    assert (await retry_service.store.get(first)).chunk_count == 5


async def test_claimed_item_does_not_absorb_new_enqueue(retry_service):
    first = await retry_service.enqueue("WORK-1", OperationType.UPDATE)
    await retry_service.db.commit()
    claimed = await retry_service.claim_batch("worker-a", 10)
    assert [c.id for c in claimed] == [first]

    second = await retry_service.enqueue("WORK-1", OperationType.UPDATE)
    await retry_service.db.commit()

    assert second != first


async def test_claim_sets_lease_and_is_exclusive(retry_service):
    item_id = await retry_service.enqueue("WORK-1", OperationType.CREATE)
    await retry_service.db.commit()

    claimed = await retry_service.claim_batch("worker-a", 10)
    again = await retry_service.claim_batch("worker-b", 10)

    assert [c.id for c in claimed] == [item_id]
    assert claimed[0].locked_by == "worker-a"
    assert again == []
    stored = await retry_service.store.get(item_id)
    assert stored.locked_by == "worker-a"
    assert stored.locked_at is not None


async def test_claim_hands_out_one_item_per_work_note(retry_service):
    await retry_service.enqueue("WORK-1", OperationType.CREATE)
    await retry_service.enqueue("WORK-1", OperationType.UPDATE)
    await retry_service.enqueue("WORK-2", OperationType.CREATE)
    await retry_service.db.commit()

    claimed = await retry_service.claim_batch("worker-a", 10)

    assert sorted(c.work_id for c in claimed) == ["WORK-1", "WORK-2"]

    # The second WORK-1 item stays unclaimable while the first is leased
    assert await retry_service.claim_batch("worker-b", 10) == []

    first_work_1 = next(c for c in claimed if c.work_id == "WORK-1")
    await retry_service.mark_succeeded(first_work_1.id)
    await retry_service.db.commit()

    follow_up = await retry_service.claim_batch("worker-b", 10)
    assert len(follow_up) == 1
    assert follow_up[0].work_id == "WORK-1"
    assert follow_up[0].operation_type != first_work_1.operation_type


async def test_expired_lease_is_claimable_again(retry_service, db_session):
    item_id = await retry_service.enqueue("WORK-1", OperationType.CREATE)
    await retry_service.db.commit()
    await retry_service.claim_batch("worker-a", 10)

    await db_session.execute(
        update(DBEmbeddingRetryItem)
        .where(DBEmbeddingRetryItem.id == item_id)
        .values(locked_at=utc_now() - timedelta(seconds=retry_service.lease_seconds + 60))
    )
    await db_session.commit()

    reclaimed = await retry_service.claim_batch("worker-b", 10)
    assert [c.id for c in reclaimed] == [item_id]
    assert reclaimed[0].locked_by == "worker-b"


async def test_enqueue_adds_item_when_match_is_claimed_during_dedupe(retry_service, monkeypatch):
    first = await retry_service.enqueue("WORK-1", OperationType.UPDATE)
    await retry_service.db.commit()

    find_unclaimed_active = retry_service.store.find_unclaimed_active

    async def find_then_lose_to_worker(*args, **kwargs):
        found = await find_unclaimed_active(*args, **kwargs)
        await retry_service.claim_batch("worker-a", 10)
        return found

    monkeypatch.setattr(retry_service.store, "find_unclaimed_active", find_then_lose_to_worker)
    second = await retry_service.enqueue("WORK-1", OperationType.UPDATE)
    await retry_service.db.commit()

    assert second != first
    assert (await retry_service.store.get(second)).locked_by is None

    # worker-a resolves the job it read before the edit; the edit still has its own item
    assert await retry_service.mark_succeeded(first, worker_id="worker-a")
    await retry_service.db.commit()

    follow_up = await retry_service.claim_batch("worker-b", 10)
    assert [c.id for c in follow_up] == [second]


async def test_expired_lease_holder_cannot_touch_reclaimed_item(retry_service, db_session):
    item_id = await retry_service.enqueue("WORK-1", OperationType.CREATE)
    await retry_service.db.commit()
    await retry_service.claim_batch("worker-a", 10)
    await db_session.execute(
        update(DBEmbeddingRetryItem)
        .where(DBEmbeddingRetryItem.id == item_id)
        .values(locked_at=utc_now() - timedelta(seconds=retry_service.lease_seconds + 60))
    )
    await db_session.commit()
    assert [c.id for c in await retry_service.claim_batch("worker-b", 10)] == [item_id]

    late = await retry_service.record_failure(item_id, "timeout", worker_id="worker-a")
    assert not await retry_service.mark_succeeded(item_id, worker_id="worker-a")
    assert not await retry_service.release(item_id, worker_id="worker-a")
    await retry_service.db.commit()

    assert late.locked_by == "worker-b"
    item = await retry_service.store.get(item_id)
    assert item.locked_by == "worker-b"
    assert item.attempt_count == 0
    assert await retry_service.claim_batch("worker-c", 10) == []

    failed = await retry_service.record_failure(item_id, "timeout", worker_id="worker-b")
    await retry_service.db.commit()
    assert failed.attempt_count == 1
    assert failed.status == RetryStatus.RETRYING
    assert (await retry_service.store.get(item_id)).locked_by is None


async def test_concurrent_failures_are_both_counted(retry_service, monkeypatch):
    item_id = await retry_service.enqueue("WORK-1", OperationType.CREATE)
    await retry_service.db.commit()
    before_first_failure = await retry_service.store.get(item_id)
    await retry_service.record_failure(item_id, "first")

    # The second failure starts from a read taken before the first was written
    get = retry_service.store.get
    reads = []

    async def outdated_first_read(requested_id):
        reads.append(requested_id)
        if len(reads) == 1:
            return before_first_failure
        return await get(requested_id)

    monkeypatch.setattr(retry_service.store, "get", outdated_first_read)
    second = await retry_service.record_failure(item_id, "second")
    await retry_service.db.commit()

    assert len(reads) == 2
    assert second.attempt_count == 2
    assert (await get(item_id)).attempt_count == 2


async def test_failures_back_off_then_dead_letter(retry_service):
    item_id = await retry_service.enqueue("WORK-1", OperationType.UPDATE)
    await retry_service.db.commit()
    await retry_service.claim_batch("worker-a", 10)

    before = utc_now()
    first = await retry_service.record_failure(item_id, "timeout")
    assert first.status == RetryStatus.RETRYING
    assert first.attempt_count == 1
    assert first.next_retry_at >= before + timedelta(seconds=2)
    stored = await retry_service.store.get(item_id)
    assert stored.locked_at is None
    assert stored.error_message == "timeout"

    # Not due yet
    assert await retry_service.claim_batch("worker-a", 10) == []

    second = await retry_service.record_failure(item_id, "timeout")
    assert second.status == RetryStatus.RETRYING
    assert second.attempt_count == 2
    assert second.next_retry_at >= before + timedelta(seconds=4)

    third = await retry_service.record_failure(item_id, "still failing")
    await retry_service.db.commit()
    assert third.status == RetryStatus.DEAD_LETTER
    assert third.attempt_count == 3

    stored = await retry_service.store.get(item_id)
    assert stored.status == RetryStatus.DEAD_LETTER
    assert stored.attempt_count == stored.max_attempts
    assert stored.dead_letter_at is not None
    assert stored.next_retry_at is None
    assert stored.error_message == "still failing"


async def test_dead_letter_item_is_never_touched_by_failures(retry_service):
    item_id = await dead_letter(retry_service, "WORK-1")

    result = await retry_service.record_failure(item_id, "late failure")
    await retry_service.db.commit()

    assert result.status == RetryStatus.DEAD_LETTER
    stored = await retry_service.store.get(item_id)
    assert stored.attempt_count == 3
    assert stored.error_message == "failure 3"
    assert await retry_service.claim_batch("worker-a", 10) == []


async def test_error_message_is_truncated(retry_service):
    item_id = await retry_service.enqueue("WORK-1", OperationType.UPDATE)
    await retry_service.record_failure(item_id, "x" * 5000)
    await retry_service.db.commit()

    assert len((await retry_service.store.get(item_id)).error_message) == 2000


async def test_reset_to_pending(retry_service):
    item_id = await dead_letter(retry_service, "WORK-1")

    item = await retry_service.reset_to_pending(item_id)
    await retry_service.db.commit()

    assert item.status == RetryStatus.PENDING
    assert item.dead_letter_at is None
    assert item.attempt_count == 3
    assert item.next_retry_at <= utc_now()
    assert [c.id for c in await retry_service.claim_batch("worker-a", 10)] == [item_id]


async def test_reset_to_pending_can_reset_attempts(retry_service):
    item_id = await dead_letter(retry_service, "WORK-1")

    item = await retry_service.reset_to_pending(item_id, reset_attempts=True)

    assert item.attempt_count == 0


async def test_reset_rejects_non_dead_letter_items(retry_service):
    item_id = await retry_service.enqueue("WORK-1", OperationType.UPDATE)
    await retry_service.db.commit()

    with pytest.raises(InvalidRetryStateError) as exc_info:
        await retry_service.reset_to_pending(item_id)

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail["success"] is False
    assert exc_info.value.detail["status"] == "pending"
    assert "not in dead_letter" in exc_info.value.detail["message"]
    assert (await retry_service.store.get(item_id)).status == RetryStatus.PENDING


async def test_reset_unknown_item(retry_service):
    with pytest.raises(NotFoundError) as exc_info:
        await retry_service.reset_to_pending("RETRY-missing")

    assert exc_info.value.status_code == 404
    assert exc_info.value.error_code == ErrorCode.RETRY_ITEM_NOT_FOUND


async def test_list_dead_letter(retry_service, create_note, db_session):
    kept = await create_note(title="Kept note", content="body")
    older = await dead_letter(retry_service, kept.work_id)
    newer = await dead_letter(retry_service, "WORK-gone", OperationType.DELETE)
    await retry_service.enqueue("WORK-3", OperationType.UPDATE)
    await retry_service.db.commit()

    now = utc_now()
    for item_id, age in ((older, 60), (newer, 10)):
        await db_session.execute(
            update(DBEmbeddingRetryItem)
            .where(DBEmbeddingRetryItem.id == item_id)
            .values(dead_letter_at=now - timedelta(seconds=age))
        )
    await db_session.commit()

    items, total = await retry_service.list_dead_letter(limit=50, offset=0)

    assert total == 2
    assert [i.id for i in items] == [newer, older]
    assert items[0].work_title is None
    assert items[1].work_title == "Kept note"
    assert items[1].attempt_count == 3
    assert items[1].error_message == "failure 3"

    page, total = await retry_service.list_dead_letter(limit=1, offset=1)
    assert total == 2
    assert [i.id for i in page] == [older]


async def test_queue_stats(retry_service):
    await dead_letter(retry_service, "WORK-1")
    await retry_service.enqueue("WORK-2", OperationType.CREATE)
    retrying = await retry_service.enqueue("WORK-3", OperationType.UPDATE)
    await retry_service.record_failure(retrying, "boom")
    await retry_service.db.commit()
    await retry_service.claim_batch("worker-a", 10)

    stats = await retry_service.get_queue_stats()

    assert (stats.pending, stats.retrying, stats.dead_letter, stats.total) == (1, 1, 1, 3)
    assert stats.in_flight == 1


async def test_notes_store_unaffected_by_queue(db_session, create_note, retry_service):
    note = await create_note(content="body")
    await dead_letter(retry_service, note.work_id)

    stored = await WorkNoteStorePostgres(db_session).get(note.work_id)
    assert stored.updated_at == note.updated_at
