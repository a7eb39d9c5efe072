"""
SQLAlchemy model for the pgvector-backed vector index.

One row per chunk vector, keyed by the composite chunk ID
("{work_id}#chunk{index}").

IMPORTANT - Vector Index Dimension Limits:
- Vector(None) accepts any embedding dimension so switching embedding
  models does not need a migration
- An ANN index cannot be created on a dimensionless column. Once the
  dimension is fixed, create one manually:
  CREATE INDEX ix_vector_index_entries_embedding ON vector_index_entries
  USING hnsw ((embedding::vector(1536)) vector_cosine_ops);
"""

from sqlalchemy import Column, String, JSON, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from pgvector.sqlalchemy import Vector

from worknote_rag.models.db_models import Base, utc_now


class DBVectorEntry(Base):
    """Chunk vector plus the metadata stored alongside it."""
    __tablename__ = "vector_index_entries"

    id = Column(String(200), primary_key=True)
    work_id = Column(String(64), nullable=False)
    embedding = Column(Vector(None), nullable=False)
    entry_metadata = Column('metadata', JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now, server_default=func.now())

    __table_args__ = (
        Index("ix_vector_index_entries_work_id", "work_id"),
    )
