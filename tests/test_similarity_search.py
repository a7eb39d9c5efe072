"""
Tests for similarity search: threshold, per-note dedupe, ranking and
hydration of notes and open todos.
"""

from typing import Dict, List, Optional

import pytest
from sqlalchemy import update

from worknote_rag.core.store_postgres import WorkNoteStorePostgres
from worknote_rag.models.db_models import DBTodo, TODO_STATUS_COMPLETED
from worknote_rag.services.consistency_guard import ConsistencyGuard
from worknote_rag.services.embedding_processor import EmbeddingProcessor, RecordSnapshot
from worknote_rag.services.similarity_search import SimilaritySearchService, best_score_per_work_note
from worknote_rag.services.vector_index import VectorIndexClient, VectorMatch


class StubIndex(VectorIndexClient):
    """Returns a fixed list of matches and records the requested top_k."""

    def __init__(self, scores: Dict[str, float]):
        self.scores = scores
        self.requested_top_k: Optional[int] = None

    async def upsert(self, vectors):
        raise AssertionError("search must not write to the index")

    async def query(self, vector, top_k, filter=None) -> List[VectorMatch]:
        self.requested_top_k = top_k
        matches = [VectorMatch(id=i, score=s) for i, s in self.scores.items()]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    async def delete_by_ids(self, ids):
        raise AssertionError("search must not write to the index")


async def embed_note(session_factory, fake_embedder, vector_index, note):
    async with session_factory() as session:
        guard = ConsistencyGuard(EmbeddingProcessor(session, fake_embedder, vector_index))
        await guard.embed_snapshot(RecordSnapshot.from_note(note))


def test_best_score_per_work_note():
    matches = [
        VectorMatch(id="WORK-1#chunk0", score=0.6),
        VectorMatch(id="WORK-1#chunk3", score=0.8),
        VectorMatch(id="WORK-2#chunk0", score=0.3),
        VectorMatch(id="WORK-3#chunk1", score=0.5),
    ]

    assert best_score_per_work_note(matches, 0.5) == {"WORK-1": 0.8, "WORK-3": 0.5}


async def test_blank_query_returns_nothing(db_session, fake_embedder):
    index = StubIndex({"WORK-1#chunk0": 0.9})
    search = SimilaritySearchService(db_session, fake_embedder, index)

    assert await search.find_similar_notes("") == []
    assert await search.find_similar_notes("   \n") == []
    assert fake_embedder.calls == []
    assert index.requested_top_k is None


async def test_zero_top_k_returns_nothing(db_session, fake_embedder):
    index = StubIndex({"WORK-1#chunk0": 0.9})
    search = SimilaritySearchService(db_session, fake_embedder, index)

    assert await search.find_similar_notes("disk full", top_k=0) == []
    assert index.requested_top_k is None


async def test_threshold_filters_low_scores(db_session, fake_embedder, create_note):
    first = await create_note(title="Disk pressure", content="staging cluster")
    second = await create_note(title="Lunch", content="team lunch")
    index = StubIndex({f"{first.work_id}#chunk0": 0.9, f"{second.work_id}#chunk0": 0.4})
    search = SimilaritySearchService(db_session, fake_embedder, index)

    results = await search.find_similar_notes("staging disk", top_k=5, score_threshold=0.5)

    assert [r.work_id for r in results] == [first.work_id]
    assert results[0].similarity_score == pytest.approx(0.9)
    assert results[0].title == "Disk pressure"
    assert results[0].content == "staging cluster"


async def test_one_result_per_note_ranked_and_truncated(db_session, fake_embedder, create_note):
    a = await create_note(title="A")
    b = await create_note(title="B")
    c = await create_note(title="C")
    index = StubIndex({
        f"{a.work_id}#chunk0": 0.55,
        f"{a.work_id}#chunk1": 0.95,
        f"{b.work_id}#chunk0": 0.7,
        f"{b.work_id}#chunk2": 0.65,
        f"{c.work_id}#chunk0": 0.6,
    })
    search = SimilaritySearchService(db_session, fake_embedder, index, oversample_factor=3)

    results = await search.find_similar_notes("anything", top_k=2, score_threshold=0.5)

    assert [(r.work_id, r.similarity_score) for r in results] == [(a.work_id, 0.95), (b.work_id, 0.7)]
    assert index.requested_top_k == 6


async def test_score_threshold_is_inclusive(db_session, fake_embedder, create_note):
    note = await create_note(title="Edge")
    index = StubIndex({f"{note.work_id}#chunk0": 0.5})
    search = SimilaritySearchService(db_session, fake_embedder, index)

    results = await search.find_similar_notes("edge", score_threshold=0.5)

    assert [r.work_id for r in results] == [note.work_id]


async def test_deleted_note_is_dropped(db_session, fake_embedder, create_note):
    kept = await create_note(title="Kept")
    index = StubIndex({"WORK-deleted#chunk0": 0.99, f"{kept.work_id}#chunk0": 0.8})
    search = SimilaritySearchService(db_session, fake_embedder, index)

    results = await search.find_similar_notes("query", top_k=3, score_threshold=0.5)

    assert [r.work_id for r in results] == [kept.work_id]


async def test_open_todos_are_attached(db_session, session_factory, fake_embedder, create_note):
    note = await create_note(title="Release")
    async with session_factory() as session:
        store = WorkNoteStorePostgres(session)
        await store.add_todo(note.work_id, "Write changelog")
        done = await store.add_todo(note.work_id, "Tag the build")
        await session.execute(
            update(DBTodo).where(DBTodo.todo_id == done.todo_id).values(status=TODO_STATUS_COMPLETED)
        )
        await session.commit()

    index = StubIndex({f"{note.work_id}#chunk0": 0.9})
    search = SimilaritySearchService(db_session, fake_embedder, index)

    [result] = await search.find_similar_notes("release", score_threshold=0.5)

    assert [t.title for t in result.todos] == ["Write changelog"]
    assert result.todos[0].status == "open"


async def test_end_to_end_with_embedded_notes(db_session, session_factory, fake_embedder, vector_index, create_note):
    deploy = await create_note(title="Deploy pipeline", content="staging cluster disk full during image builds")
    lunch = await create_note(title="Team lunch", content="pizza friday celebration")
    for note in (deploy, lunch):
        await embed_note(session_factory, fake_embedder, vector_index, note)

    search = SimilaritySearchService(db_session, fake_embedder, vector_index)
    results = await search.find_similar_notes("disk full staging cluster", top_k=3, score_threshold=0.0)

    assert [r.work_id for r in results][0] == deploy.work_id
    assert results[0].similarity_score > 0.5
    scores = [r.similarity_score for r in results]
    assert scores == sorted(scores, reverse=True)
