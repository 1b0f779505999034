"""Shared write helpers for the pestops repositories."""

import logging
from typing import Any

from sqlalchemy import Table, insert, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import Delete, Insert, Update

from pestops.storage.context import DatabaseContext


class BaseRepository:
    def __init__(self, db_context: DatabaseContext) -> None:
        self._db = db_context
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def _is_postgres(self) -> bool:
        return self._db.engine.dialect.name == "postgresql"

    async def _execute_with_logging(
        self, operation_name: str, statement: Insert | Update | Delete
    ) -> "CursorResult[Any]":
        """Run a write, logging a database error under ``operation_name``.

        Raises:
            SQLAlchemyError: re-raised after logging
        """
        try:
            return await self._db.execute_with_retry(statement)
        except SQLAlchemyError as e:
            self._logger.error(
                f"Database error in {operation_name}: {e}", exc_info=True
            )
            raise

    async def _upsert(
        self,
        operation_name: str,
        table: Table,
        keys: dict[str, Any],
        values: dict[str, Any],
    ) -> None:
        """Write ``values`` onto the row identified by ``keys``, inserting it if absent.

        ``keys`` must name exactly the columns of a unique constraint on ``table``.
        """
        if self._is_postgres:
            from sqlalchemy.dialects.postgresql import insert as pg_insert

            stmt = pg_insert(table).values(**keys, **values)
            stmt = stmt.on_conflict_do_update(index_elements=list(keys), set_=values)
            await self._execute_with_logging(operation_name, stmt)
            return

        # SQLite: UPDATE first, INSERT when nothing matched
        update_stmt = (
            update(table)
            .where(*(table.c[column] == value for column, value in keys.items()))
            .values(**values)
        )
        result = await self._execute_with_logging(operation_name, update_stmt)
        if result.rowcount == 0:  # type: ignore[attr-defined]
            await self._execute_with_logging(
                operation_name, insert(table).values(**keys, **values)
            )
