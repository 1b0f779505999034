"""
Database context manager for storage operations.

This module provides a context manager and utilities for database operations,
enabling dependency injection for testing and centralizing retry logic.
"""

import asyncio
import logging
import random
from types import TracebackType
from typing import TYPE_CHECKING, Any

from sqlalchemy import TextClause
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import DBAPIError, IntegrityError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Delete, Insert, Select, Update

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from pestops.storage.repositories import (
        ActivityRepository,
        CredentialsRepository,
        EntityStatusRepository,
        ExecutionsRepository,
        ExternalRecordsRepository,
        MetricsRepository,
        NotificationsRepository,
        TriggersRepository,
    )

logger = logging.getLogger(__name__)


class DatabaseContext:
    """
    Context manager for database operations with retry logic.

    Each ``async with`` block runs in a single transaction which is committed
    on normal exit and rolled back when the block raises.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        max_retries: int = 3,
        base_delay: float = 0.5,
    ) -> None:
        self.engine = engine
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.conn: AsyncConnection | None = None
        self._transaction_cm: AbstractAsyncContextManager[AsyncConnection] | None = None

        # Repository instances (lazy-loaded)
        self._triggers: TriggersRepository | None = None
        self._executions: ExecutionsRepository | None = None
        self._credentials: CredentialsRepository | None = None
        self._activity: ActivityRepository | None = None
        self._statuses: EntityStatusRepository | None = None
        self._metrics: MetricsRepository | None = None
        self._notifications: NotificationsRepository | None = None
        self._external_records: ExternalRecordsRepository | None = None

    async def __aenter__(self) -> "DatabaseContext":
        """Enter the async context manager, starting a transaction."""
        if self._transaction_cm is not None:
            raise RuntimeError("DatabaseContext is not reentrant")

        self._transaction_cm = self.engine.begin()
        self.conn = await self._transaction_cm.__aenter__()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit the async context manager, committing or rolling back the transaction."""
        if self._transaction_cm is None:
            return

        try:
            await self._transaction_cm.__aexit__(exc_type, exc_val, exc_tb)
        finally:
            self.conn = None
            self._transaction_cm = None

    async def execute_with_retry(
        self,
        query: Select | Insert | Update | Delete | TextClause,
        params: dict[str, Any] | None = None,
    ) -> CursorResult:
        """
        Execute a query with retry logic for transient database errors.

        Programming and integrity errors are raised immediately; other DBAPI
        errors (locked database, dropped connection) are retried with
        exponential backoff and jitter.

        Raises:
            RuntimeError: If there is no active database connection.
            DBAPIError: If the error is not retryable or retries are exhausted.
        """
        if self.conn is None:
            raise RuntimeError("No active database connection")

        for attempt in range(self.max_retries):
            try:
                if params:
                    return await self.conn.execute(query, params)
                return await self.conn.execute(query)
            except (ProgrammingError, IntegrityError) as e:
                logger.error(f"Non-retryable database error encountered: {e}")
                raise
            except DBAPIError as e:
                logger.warning(
                    f"Retryable DBAPIError (attempt {attempt + 1}/{self.max_retries}): {e}."
                )
                if attempt == self.max_retries - 1:
                    logger.error(
                        "Max retries exceeded for retryable error. Raising error."
                    )
                    raise

                delay = self.base_delay * (2**attempt) + random.uniform(
                    0, self.base_delay
                )
                logger.info(f"Retrying in {delay:.2f} seconds...")
                await asyncio.sleep(delay)

        raise RuntimeError("Database operation failed after multiple retries")

    async def fetch_all(
        self, query: Select | TextClause, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute a query and fetch all results as dictionaries."""
        result = await self.execute_with_retry(query, params)
        return [dict(row_mapping) for row_mapping in result.mappings().all()]

    async def fetch_one(
        self, query: Select | TextClause, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute a query and fetch one result as a dictionary, or None."""
        result = await self.execute_with_retry(query, params)
        row_mapping = result.mappings().one_or_none()
        return dict(row_mapping) if row_mapping else None

    @property
    def triggers(self) -> "TriggersRepository":
        """Get the workflow triggers repository instance."""
        if self._triggers is None:
            from pestops.storage.repositories import TriggersRepository

            self._triggers = TriggersRepository(self)
        return self._triggers

    @property
    def executions(self) -> "ExecutionsRepository":
        """Get the workflow executions repository instance."""
        if self._executions is None:
            from pestops.storage.repositories import ExecutionsRepository

            self._executions = ExecutionsRepository(self)
        return self._executions

    @property
    def credentials(self) -> "CredentialsRepository":
        """Get the integration credentials repository instance."""
        if self._credentials is None:
            from pestops.storage.repositories import CredentialsRepository

            self._credentials = CredentialsRepository(self)
        return self._credentials

    @property
    def activity(self) -> "ActivityRepository":
        if self._activity is None:
            from pestops.storage.repositories import ActivityRepository

            self._activity = ActivityRepository(self)
        return self._activity

    @property
    def statuses(self) -> "EntityStatusRepository":
        if self._statuses is None:
            from pestops.storage.repositories import EntityStatusRepository

            self._statuses = EntityStatusRepository(self)
        return self._statuses

    @property
    def metrics(self) -> "MetricsRepository":
        if self._metrics is None:
            from pestops.storage.repositories import MetricsRepository

            self._metrics = MetricsRepository(self)
        return self._metrics

    @property
    def notifications(self) -> "NotificationsRepository":
        if self._notifications is None:
            from pestops.storage.repositories import NotificationsRepository

            self._notifications = NotificationsRepository(self)
        return self._notifications

    @property
    def external_records(self) -> "ExternalRecordsRepository":
        if self._external_records is None:
            from pestops.storage.repositories import ExternalRecordsRepository

            self._external_records = ExternalRecordsRepository(self)
        return self._external_records


def get_db_context(
    engine: AsyncEngine, max_retries: int = 3, base_delay: float = 0.5
) -> DatabaseContext:
    """
    Creates an instance of DatabaseContext.

    Example:
        ```python
        async with get_db_context(engine) as db:
            triggers = await db.triggers.list_active_for("clock_out")
        ```
    """
    return DatabaseContext(engine, max_retries, base_delay)
