"""Initial schema: work notes, todos, embedding retry queue, vector index

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables."""

    # Enable pgvector extension
    op.execute('CREATE EXTENSION IF NOT EXISTS vector')

    # Work notes
    op.create_table(
        'work_notes',
        sa.Column('work_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('content_raw', sa.Text(), nullable=False),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('project_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('embedded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('max_chunk_count', sa.Integer(), server_default='0', nullable=False),
        sa.PrimaryKeyConstraint('work_id')
    )
    op.create_index('ix_work_notes_created_at', 'work_notes', ['created_at'])
    op.create_index('ix_work_notes_embedded_at', 'work_notes', ['embedded_at'])

    # Todos attached to work notes
    op.create_table(
        'todos',
        sa.Column('todo_id', sa.String(length=64), nullable=False),
        sa.Column('work_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('status', sa.String(length=20), server_default='open', nullable=False),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['work_id'], ['work_notes.work_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('todo_id')
    )
    op.create_index('ix_todos_work_id_status', 'todos', ['work_id', 'status'])

    # Embedding retry queue (no FK: delete jobs outlive their note)
    op.create_table(
        'embedding_retry_queue',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('work_id', sa.String(length=64), nullable=False),
        sa.Column('operation_type', sa.String(length=10), nullable=False),
        sa.Column('attempt_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default='3', nullable=False),
        sa.Column('status', sa.String(length=20), server_default='pending', nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('chunk_count', sa.Integer(), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_by', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('dead_letter_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_embedding_retry_queue_status_next_retry', 'embedding_retry_queue', ['status', 'next_retry_at'])
    op.create_index('ix_embedding_retry_queue_work_id', 'embedding_retry_queue', ['work_id'])
    op.create_index('ix_embedding_retry_queue_dead_letter_at', 'embedding_retry_queue', ['dead_letter_at'])

    # Chunk vectors (dimensionless so the embedding model can change without a migration)
    op.create_table(
        'vector_index_entries',
        sa.Column('id', sa.String(length=200), nullable=False),
        sa.Column('work_id', sa.String(length=64), nullable=False),
        sa.Column('embedding', Vector(), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_vector_index_entries_work_id', 'vector_index_entries', ['work_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index('ix_vector_index_entries_work_id', table_name='vector_index_entries')
    op.drop_table('vector_index_entries')

    op.drop_index('ix_embedding_retry_queue_dead_letter_at', table_name='embedding_retry_queue')
    op.drop_index('ix_embedding_retry_queue_work_id', table_name='embedding_retry_queue')
    op.drop_index('ix_embedding_retry_queue_status_next_retry', table_name='embedding_retry_queue')
    op.drop_table('embedding_retry_queue')

    op.drop_index('ix_todos_work_id_status', table_name='todos')
    op.drop_table('todos')

    op.drop_index('ix_work_notes_embedded_at', table_name='work_notes')
    op.drop_index('ix_work_notes_created_at', table_name='work_notes')
    op.drop_table('work_notes')
