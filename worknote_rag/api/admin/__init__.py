"""
Admin API package.

All endpoints are combined into a single `router` export. The prefix
`/api/admin` is applied in main.py; sub-routers use no prefix.
"""

from fastapi import APIRouter

from .embedding_failures import router as embedding_failures_router
from .reindex import router as reindex_router

router = APIRouter()
router.include_router(embedding_failures_router)
router.include_router(reindex_router)
