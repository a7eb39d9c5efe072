"""
Database configuration and connection management for PostgreSQL with pgvector.
Supports both async (FastAPI, embedding worker) and sync (migrations) operations.
"""

import logging
from pathlib import Path
from typing import AsyncGenerator
from sqlalchemy import create_engine, text, pool
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from worknote_rag.core.config import settings
# Importing the models package registers every table with Base.metadata
from worknote_rag.models import Base

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL
DATABASE_SYNC_URL = settings.DATABASE_SYNC_URL

# Create async engine for FastAPI and the embedding worker
async_engine = create_async_engine(
    DATABASE_URL,
    poolclass=pool.NullPool,  # Use NullPool for async to avoid QueuePool issues
    pool_pre_ping=True,
    echo=False,
)

# Create sync engine for migrations and inspection; the only engine sized by
# DATABASE_POOL_SIZE / DATABASE_MAX_OVERFLOW
engine = create_engine(
    DATABASE_SYNC_URL,
    poolclass=pool.QueuePool,
    pool_size=settings.DATABASE_POOL_SIZE,
    max_overflow=settings.DATABASE_MAX_OVERFLOW,
    pool_pre_ping=True,
    echo=False,
)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


REQUIRED_TABLES = (
    "work_notes",
    "todos",
    "embedding_retry_queue",
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Async dependency function to get a database session for FastAPI.

    Usage in FastAPI endpoints:
        async def my_endpoint(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Database session error: {e}")
            raise


def run_migrations() -> bool:
    """
    Run Alembic migrations programmatically ('alembic upgrade head').

    An existing database created with create_all() but without migration
    history is stamped to head instead of being re-created.

    Returns:
        True if migrations ran successfully, False otherwise
    """
    from alembic.config import Config
    from alembic import command
    from sqlalchemy import inspect as sqlalchemy_inspect

    project_dir = Path(__file__).parent.parent.parent
    alembic_ini = project_dir / "alembic.ini"

    if not alembic_ini.exists():
        logger.warning(f"alembic.ini not found at {alembic_ini} - skipping migrations")
        return False

    try:
        inspector = sqlalchemy_inspect(engine)
        existing_tables = inspector.get_table_names()
        has_alembic_version = "alembic_version" in existing_tables
        has_application_tables = "work_notes" in existing_tables

        alembic_cfg = Config(str(alembic_ini))
        alembic_cfg.set_main_option("script_location", str(project_dir / "alembic"))
        alembic_cfg.set_main_option("sqlalchemy.url", DATABASE_SYNC_URL)
        # Keep the application's logging configuration
        alembic_cfg.attributes["configure_logger"] = False

        if has_application_tables and not has_alembic_version:
            logger.info("Existing database without migration history detected - stamping to head")
            command.stamp(alembic_cfg, "head")
            return True

        logger.info("Running Alembic migrations (upgrade head)...")
        command.upgrade(alembic_cfg, "head")
        logger.info("Alembic migrations completed successfully")
        return True

    except Exception as e:
        logger.error(f"Alembic migration failed: {e}")
        logger.error("The application will continue with create_all() as fallback.")
        return False


async def init_db() -> bool:
    """
    Initialize the database:
    - Enable the pgvector extension on PostgreSQL
    - Create all tables that do not exist yet
    - Validate that the required tables exist

    Raises:
        RuntimeError: If tables cannot be created or validated
    """
    if async_engine.dialect.name == "postgresql":
        try:
            async with async_engine.begin() as conn:
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            logger.info("pgvector extension enabled")
        except Exception as e:
            logger.warning(
                f"pgvector extension not available: {e}. "
                "Set VECTOR_INDEX_BACKEND=memory to run without it."
            )

    try:
        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"CRITICAL ERROR: Failed to create database tables: {e}")
        raise RuntimeError(f"Database table creation failed: {e}")

    def _table_names(sync_conn):
        from sqlalchemy import inspect as sqlalchemy_inspect
        return sqlalchemy_inspect(sync_conn).get_table_names()

    async with async_engine.connect() as conn:
        existing_tables = await conn.run_sync(_table_names)

    missing_tables = [t for t in REQUIRED_TABLES if t not in existing_tables]
    if missing_tables:
        logger.error(f"CRITICAL ERROR: Required tables are missing: {missing_tables}")
        raise RuntimeError(f"Required tables missing: {missing_tables}")

    logger.info(f"All required tables validated: {', '.join(REQUIRED_TABLES)}")
    return True


def test_connection() -> bool:
    """Test if database connection is working."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        return False


async def close_db():
    """
    Close database connections.
    Call this on application shutdown.
    """
    await async_engine.dispose()
    engine.dispose()
    logger.info("Database connections closed")
