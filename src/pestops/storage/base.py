"""
Base module for database connection and metadata.

This module defines the SQLAlchemy metadata object shared across the table
modules and the engine factory used by the application and tests.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, MetaData, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy.pool.base import _ConnectionRecord

logger = logging.getLogger(__name__)

# Define shared metadata object
metadata = MetaData()

# JSON column type that upgrades to JSONB on PostgreSQL
JSONType = JSON().with_variant(JSONB, "postgresql")


def create_engine_with_sqlite_optimizations(database_url: str) -> AsyncEngine:
    """Create engine with SQLite optimizations if applicable."""
    is_sqlite = database_url.startswith("sqlite")
    # StaticPool keeps one SQLite connection; NullPool avoids event loop
    # affinity issues with asyncpg.
    pool_class = StaticPool if is_sqlite else NullPool

    engine = create_async_engine(
        database_url,
        echo=False,
        connect_args={"timeout": 30, "check_same_thread": False} if is_sqlite else {},
        pool_pre_ping=pool_class != NullPool,
        poolclass=pool_class,
    )

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(
            dbapi_connection: Any,  # noqa: ANN401 # DBAPI connection type varies
            connection_record: _ConnectionRecord,  # noqa: ARG001
        ) -> None:
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA busy_timeout=30000")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA foreign_keys=ON")
                logger.debug("Applied SQLite optimizations")
            except Exception as e:  # noqa: BLE001 # driver-specific error types
                logger.warning(f"Could not apply SQLite pragmas: {e}")
            finally:
                cursor.close()

    return engine


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
