"""
Work Note RAG - Backend Entry Point

Keeps a vector index of work notes in sync with the relational store and
serves similarity search over it.

- Work note writes commit immediately and queue an embedding job
- A background worker embeds queued notes, guarded against concurrent edits
- Failed jobs are retried with exponential backoff and end up in a
  dead-letter list that operators can inspect and retry
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

# Import configuration FIRST for centralized settings
from worknote_rag.core.config import settings, init_settings, ConfigValidationError

# Import and configure structured logging BEFORE any other logging calls
from worknote_rag.core.logging_config import setup_logging, get_logger

setup_logging(
    log_level=settings.LOG_LEVEL,
    log_to_file=settings.LOG_TO_FILE,
    log_to_console=True,
    json_format=settings.LOG_FORMAT == "json",
    console_colors=not settings.is_production,
    log_dir=settings.logs_path,
)

logger = get_logger(__name__)

from worknote_rag import __version__
from worknote_rag.api.admin import router as admin_router
from worknote_rag.api.search import router as search_router
from worknote_rag.api.work_notes import router as work_notes_router
from worknote_rag.core.errors import AppError, app_exception_handler, generic_exception_handler
from worknote_rag.core.middleware import RequestTracingMiddleware


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    logger.info("Starting Work Note RAG...")
    logger.info("=" * 80)

    try:
        init_settings(validate=True)
        logger.info(f"✅ Configuration validated (environment: {settings.ENVIRONMENT.value})")
    except ConfigValidationError as e:
        logger.error("=" * 80)
        logger.error("❌ CONFIGURATION ERROR")
        logger.error("=" * 80)
        logger.error(str(e))
        logger.error("See .env.example for the complete list of configuration options.")
        logger.error("=" * 80)
        # In production, fail hard on config errors
        if settings.is_production:
            raise RuntimeError(f"Configuration validation failed: {e}")
        logger.warning("Continuing with invalid configuration (development mode only)")

    from worknote_rag.core.database import init_db, run_migrations, test_connection, close_db

    if not test_connection():
        logger.error("=" * 80)
        logger.error("❌ CRITICAL ERROR: database connection failed")
        logger.error("Check DATABASE_URL / DATABASE_SYNC_URL and that the server is running.")
        logger.error("=" * 80)
        raise RuntimeError("Database connection failed - cannot start application")

    if settings.SKIP_MIGRATIONS:
        logger.info("⏭️  Skipping Alembic migrations (SKIP_MIGRATIONS=true)")
    elif run_migrations():
        logger.info("✅ Alembic migrations applied successfully")
    else:
        logger.warning("⚠️  Alembic migrations failed or skipped - falling back to create_all()")

    await init_db()
    logger.info("✅ Database initialized successfully")

    from worknote_rag.services.queue_worker import init_embedding_worker, stop_embedding_worker
    from worknote_rag.services.embedding_client import close_embedding_client

    if settings.EMBEDDING_WORKER_ENABLED:
        worker = await init_embedding_worker()
        logger.info(f"✅ Embedding queue worker started ({worker.worker_id})")
    else:
        logger.info("⏭️  Embedding queue worker disabled (EMBEDDING_WORKER_ENABLED=false)")

    logger.info("=" * 80)
    logger.info("✅ Application ready")
    logger.info("=" * 80)

    yield

    logger.info("Shutting down Work Note RAG...")
    await stop_embedding_worker()
    await close_embedding_client()
    await close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Work Note RAG API",
    description="""
    Embedding synchronization and similarity search for work notes.

    Features:
    - Background embedding of edited work notes
    - Race-safe finalization against concurrent edits
    - Retry queue with dead-letter administration
    - Similar work note search with open todos
    """,
    version=__version__,
    lifespan=lifespan
)

# Register standardized error handlers
app.add_exception_handler(AppError, app_exception_handler)
# Generic handler for all unhandled exceptions (catch-all, provides user-friendly message)
app.add_exception_handler(Exception, generic_exception_handler)

# In production, use CORS_ORIGINS strictly; in development, allow all methods/headers
cors_allow_methods = ["GET", "POST", "PUT", "DELETE", "OPTIONS"] if settings.is_production else ["*"]
cors_allow_headers = ["Content-Type", "Authorization", "X-Request-ID", "Accept", "Origin"] if settings.is_production else ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=cors_allow_methods,
    allow_headers=cors_allow_headers,
    expose_headers=["X-Request-ID"],  # Allow clients to read request ID
)

# Generates request IDs, logs request lifecycle
app.add_middleware(RequestTracingMiddleware)


@app.get("/api/health")
async def health_check():
    """Liveness plus the embedding worker's state."""
    from worknote_rag.services.queue_worker import get_embedding_worker

    worker = get_embedding_worker()
    return {
        "status": "ok",
        "version": __version__,
        "environment": settings.ENVIRONMENT.value,
        "vector_index_backend": settings.VECTOR_INDEX_BACKEND,
        "embedding_model": settings.DEFAULT_EMBEDDING_MODEL,
        "embedding_worker_running": bool(worker and worker.running),
    }


app.include_router(work_notes_router, prefix="/api/work-notes", tags=["Work Notes"])
app.include_router(search_router, prefix="/api/search", tags=["Search"])
app.include_router(admin_router, prefix="/api/admin", tags=["Admin"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("worknote_rag.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
