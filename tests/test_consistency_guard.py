"""
Tests for the consistency guard: finalize, stale-range cleanup and
rollback when a note is edited or deleted while its job is embedding.
"""

import pytest

from worknote_rag.core.store_postgres import WorkNoteStorePostgres
from worknote_rag.services.chunking import ChunkingService
from worknote_rag.services.consistency_guard import ConsistencyGuard, EmbeddingOutcome
from worknote_rag.services.embedding_processor import EmbeddingProcessor, RecordSnapshot

# 256 characters of note text -> 3 chunks of at most 100
LONG_CONTENT = "x" * 250


@pytest.fixture
def processor(db_session, fake_embedder, vector_index):
    return EmbeddingProcessor(db_session, fake_embedder, vector_index, chunker=ChunkingService(max_chunk_chars=100))


@pytest.fixture
def guard(processor):
    return ConsistencyGuard(processor)


async def load(session_factory, work_id):
    async with session_factory() as session:
        return await WorkNoteStorePostgres(session).get(work_id)


async def test_first_embed_finalizes(guard, vector_index, create_note, session_factory):
    note = await create_note(title="Plan", content=LONG_CONTENT)

    outcome = await guard.embed_snapshot(RecordSnapshot.from_note(note))

    assert outcome == EmbeddingOutcome.FINALIZED
    assert vector_index.ids() == [f"{note.work_id}#chunk{i}" for i in range(3)]
    stored = await load(session_factory, note.work_id)
    assert stored.embedded_at is not None
    assert stored.updated_at == note.updated_at
    assert stored.max_chunk_count == 3


async def test_shrinking_note_deletes_stale_range(guard, processor, vector_index, create_note, edit_note, session_factory):
    """A 3-chunk note re-edited down to 1 chunk keeps only chunk0."""
    note = await create_note(title="Plan", content=LONG_CONTENT)
    await guard.embed_snapshot(RecordSnapshot.from_note(note))

    range_calls = []
    original = processor.delete_chunk_range

    async def spy(work_id, from_index, to_index):
        range_calls.append((work_id, from_index, to_index))
        return await original(work_id, from_index, to_index)

    processor.delete_chunk_range = spy

    edited = await edit_note(note.work_id, "short")
    outcome = await guard.embed_snapshot(RecordSnapshot.from_note(edited))

    assert outcome == EmbeddingOutcome.FINALIZED
    assert range_calls == [(note.work_id, 1, 3)]
    assert vector_index.ids() == [f"{note.work_id}#chunk0"]
    stored = await load(session_factory, note.work_id)
    assert stored.max_chunk_count == 1
    assert stored.embedded_at is not None


async def test_edit_during_embedding_rolls_back(guard, fake_embedder, vector_index, create_note, edit_note, session_factory):
    """An older snapshot never finalizes and removes the chunk IDs it wrote."""
    note = await create_note(title="Plan", content="first version of the note")
    old_snapshot = RecordSnapshot.from_note(note)
    edited = {}

    async def concurrent_edit(texts):
        fake_embedder.before_embed = None
        edited["note"] = await edit_note(note.work_id, "second version of the note")

    fake_embedder.before_embed = concurrent_edit

    outcome = await guard.embed_snapshot(old_snapshot)

    assert outcome == EmbeddingOutcome.STALE
    assert vector_index.ids() == []
    stored = await load(session_factory, note.work_id)
    assert stored.embedded_at is None

    # The newer snapshot's own job is the one that finalizes
    outcome = await guard.embed_snapshot(RecordSnapshot.from_note(edited["note"]))
    assert outcome == EmbeddingOutcome.FINALIZED
    stored = await load(session_factory, note.work_id)
    assert stored.embedded_at is not None
    assert stored.updated_at == edited["note"].updated_at
    assert vector_index.ids() == [f"{note.work_id}#chunk0"]


async def test_edit_before_finalize_rolls_back(guard, vector_index, create_note, edit_note, session_factory):
    note = await create_note(title="Plan", content="first version")
    original = guard.notes.mark_embedded_if_current

    async def edit_then_finalize(work_id, expected_updated_at, chunk_count):
        await edit_note(work_id, "edited right before finalize")
        return await original(work_id, expected_updated_at, chunk_count)

    guard.notes.mark_embedded_if_current = edit_then_finalize

    outcome = await guard.embed_snapshot(RecordSnapshot.from_note(note))

    assert outcome == EmbeddingOutcome.STALE
    assert vector_index.ids() == []
    assert (await load(session_factory, note.work_id)).embedded_at is None


async def test_stale_snapshot_skips_all_writes(guard, fake_embedder, vector_index, create_note, edit_note):
    note = await create_note(content="v1")
    await edit_note(note.work_id, "v2")

    outcome = await guard.embed_snapshot(RecordSnapshot.from_note(note))

    assert outcome == EmbeddingOutcome.STALE
    assert fake_embedder.calls == []
    assert vector_index.ids() == []


async def test_deleted_note_is_not_found(guard, fake_embedder, vector_index, create_note, session_factory):
    note = await create_note(content="v1")
    async with session_factory() as session:
        await WorkNoteStorePostgres(session).delete(note.work_id)
        await session.commit()

    outcome = await guard.embed_snapshot(RecordSnapshot.from_note(note))

    assert outcome == EmbeddingOutcome.NOT_FOUND
    assert fake_embedder.calls == []
    assert vector_index.ids() == []


async def test_delete_during_embedding_rolls_back(guard, fake_embedder, vector_index, create_note, session_factory):
    note = await create_note(content="about to be deleted")

    async def concurrent_delete(texts):
        fake_embedder.before_embed = None
        async with session_factory() as session:
            await WorkNoteStorePostgres(session).delete(note.work_id)
            await session.commit()

    fake_embedder.before_embed = concurrent_delete

    outcome = await guard.embed_snapshot(RecordSnapshot.from_note(note))

    assert outcome == EmbeddingOutcome.NOT_FOUND
    assert vector_index.ids() == []


async def test_rollback_failure_is_swallowed(guard, fake_embedder, vector_index, create_note, edit_note):
    note = await create_note(content="v1")

    async def concurrent_edit(texts):
        fake_embedder.before_embed = None
        await edit_note(note.work_id, "v2")

    async def broken_delete(ids):
        raise ConnectionError("index unavailable")

    fake_embedder.before_embed = concurrent_edit
    vector_index.delete_by_ids = broken_delete

    outcome = await guard.embed_snapshot(RecordSnapshot.from_note(note))

    assert outcome == EmbeddingOutcome.STALE


async def test_upsert_failure_propagates(guard, fake_embedder, create_note, session_factory):
    note = await create_note(content="v1")
    fake_embedder.failures_remaining = 1

    with pytest.raises(ConnectionError):
        await guard.embed_snapshot(RecordSnapshot.from_note(note))

    assert (await load(session_factory, note.work_id)).embedded_at is None


async def test_high_water_mark_recorded_before_upsert(guard, fake_embedder, create_note, session_factory):
    """A crash after the upsert still leaves the written slots tracked."""
    note = await create_note(title="Plan", content=LONG_CONTENT)
    marks = []

    async def observe(texts):
        marks.append((await load(session_factory, note.work_id)).max_chunk_count)
        raise ConnectionError("crash mid-embed")

    fake_embedder.before_embed = observe

    with pytest.raises(ConnectionError):
        await guard.embed_snapshot(RecordSnapshot.from_note(note))

    assert marks == [3]


async def test_delete_record_chunks(guard, vector_index, create_note):
    note = await create_note(title="Plan", content=LONG_CONTENT)
    await guard.embed_snapshot(RecordSnapshot.from_note(note))

    await guard.delete_record_chunks(note.work_id, 3)

    assert vector_index.ids() == []
