"""
Pytest fixtures for the embedding pipeline tests.

Provides:
- A fresh SQLite (aiosqlite) database per test, created from Base.metadata
- A deterministic fake embedding client (bag-of-words hash vectors)
- The in-memory vector index
- Helpers to create work notes and queue items directly through the stores
"""

import os
import sys
import hashlib
import math
import re
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

# Test environment - must be set before any worknote_rag import reads settings
os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_app.db"
os.environ["DATABASE_SYNC_URL"] = "sqlite:///./test_app.db"
os.environ["LOG_TO_FILE"] = "false"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["VECTOR_INDEX_BACKEND"] = "memory"
os.environ["EMBEDDING_WORKER_ENABLED"] = "false"
os.environ["SKIP_MIGRATIONS"] = "true"
os.environ["OPENAI_API_KEY"] = "sk-test"

# Ensure the project root is on sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool

from worknote_rag.models import Base, WorkNoteCreate
from worknote_rag.services.embedding_client import EmbeddingClient
from worknote_rag.services.vector_index import InMemoryVectorIndexClient

FAKE_EMBEDDING_DIMENSIONS = 64

_WORD_RE = re.compile(r"\w+")


def bag_of_words_vector(text: str, dimensions: int = FAKE_EMBEDDING_DIMENSIONS) -> List[float]:
    """Deterministic vector: each word increments one hashed bucket, then L2-normalize."""
    vector = [0.0] * dimensions
    for word in _WORD_RE.findall(text.lower()):
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dimensions
        vector[bucket] += 1.0
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0:
        vector[0] = 1.0
        return vector
    return [x / norm for x in vector]


class FakeEmbeddingClient(EmbeddingClient):
    """
    Embedding client for tests.

    - failures_remaining: number of upcoming embed_batch calls that raise
    - before_embed: optional coroutine awaited at the start of every call,
      used to simulate an edit landing while a job is embedding
    """

    model = "fake-bag-of-words"

    def __init__(self):
        self.calls: List[List[str]] = []
        self.failures_remaining = 0
        self.failure: Exception = ConnectionError("embedding backend unavailable")
        self.before_embed: Optional[Callable[[List[str]], Awaitable[None]]] = None

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.before_embed is not None:
            await self.before_embed(texts)
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise self.failure
        return [bag_of_words_vector(text) for text in texts]


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_embedder() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def vector_index() -> InMemoryVectorIndexClient:
    return InMemoryVectorIndexClient()


@pytest.fixture
def create_note(session_factory):
    """Insert a work note directly (no queue item) and return it."""
    from worknote_rag.core.store_postgres import WorkNoteStorePostgres

    async def _create(title: str = "Weekly sync", content: str = "", category: Optional[str] = None):
        async with session_factory() as session:
            note = await WorkNoteStorePostgres(session).create(
                WorkNoteCreate(title=title, content=content, category=category)
            )
            await session.commit()
            return note

    return _create


@pytest.fixture
def edit_note(session_factory):
    """Apply a content edit in its own session, as a concurrent editor would."""
    from worknote_rag.core.store_postgres import WorkNoteStorePostgres
    from worknote_rag.models import WorkNoteUpdate

    async def _edit(work_id: str, content: str):
        async with session_factory() as session:
            note = await WorkNoteStorePostgres(session).update(work_id, WorkNoteUpdate(content=content))
            await session.commit()
            return note

    return _edit
