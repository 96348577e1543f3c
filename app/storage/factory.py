"""
Process-wide store selection: SqlStore when DATABASE_URL is set,
MemoryStore otherwise.
"""
from __future__ import annotations

from functools import lru_cache

import structlog

from app.core.config import get_settings
from app.storage.base import VerificationStore

logger = structlog.get_logger()


@lru_cache
def get_store() -> VerificationStore:
    settings = get_settings()
    if not settings.database_url:
        from app.storage.memory import MemoryStore
        logger.info("store_selected", backend="memory")
        return MemoryStore()

    from app.models.database import get_session_factory
    from app.storage.sql import SqlStore
    logger.info("store_selected", backend="sql")
    return SqlStore(get_session_factory())
