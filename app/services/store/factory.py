"""Entity store selection based on DATABASE_URL."""

from __future__ import annotations

import logging

from app.config import settings
from app.services.store.base import EntityStore
from app.services.store.memory import InMemoryEntityStore
from app.services.store.sql import SqlEntityStore

logger = logging.getLogger(__name__)


def build_entity_store(database_url: str | None = None) -> EntityStore:
    """Instantiate an EntityStore using DATABASE_URL when available."""
    resolved_url = database_url or settings.database_url
    if not resolved_url:
        logger.info("store.initialized", extra={"backend": "memory"})
        return InMemoryEntityStore()
    try:
        store = SqlEntityStore(
            resolved_url,
            pool_min_size=settings.db_pool_min_size,
            pool_max_size=settings.db_pool_max_size,
            auto_create_schema=settings.db_auto_create_schema,
        )
        logger.info("store.initialized", extra={"backend": store.metrics_tags["backend"]})
        return store
    except Exception:
        logger.exception("store.init_failed", extra={"backend": "database"})
        raise
