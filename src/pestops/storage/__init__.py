"""Storage layer: table definitions, database context and initialisation."""

import asyncio
import logging

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine

# Import table modules so their tables register on the shared metadata
from pestops.storage import activity, integrations, workflows  # noqa: F401
from pestops.storage.base import (
    create_engine_with_sqlite_optimizations,
    ensure_utc,
    metadata,
)
from pestops.storage.context import DatabaseContext, get_db_context

logger = logging.getLogger(__name__)


async def init_db(engine: AsyncEngine, max_retries: int = 5) -> None:
    """Create any missing tables, retrying while the database comes up."""
    base_delay = 1.0
    for attempt in range(max_retries):
        try:
            logger.info(f"Initialising database schema (attempt {attempt + 1})...")
            async with engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
            logger.info("Database initialization successful.")
            return
        except (DBAPIError, OperationalError) as e:
            if attempt == max_retries - 1:
                logger.error(
                    f"Database initialization failed after {max_retries} attempts: {e!r}"
                )
                raise
            delay = base_delay * (2**attempt)
            logger.warning(
                f"Database error during init_db (attempt {attempt + 1}/{max_retries}): "
                f"{e!r}. Retrying in {delay:.1f}s..."
            )
            await asyncio.sleep(delay)


__all__ = [
    "DatabaseContext",
    "create_engine_with_sqlite_optimizations",
    "ensure_utc",
    "get_db_context",
    "init_db",
    "metadata",
]
