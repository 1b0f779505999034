"""Repository for the append-only workflow execution log."""

from datetime import datetime
from typing import Any

from sqlalchemy import insert, select

from pestops.storage.repositories.base import BaseRepository
from pestops.storage.workflows import workflow_executions_table


class ExecutionsRepository(BaseRepository):
    """Insert and read execution records. There is deliberately no update method."""

    async def add(
        self,
        trigger_id: int | None,
        trigger_name: str,
        event_name: str,
        actor_id: str | None,
        status: str,
        outcomes: list[dict[str, Any]],
        started_at: datetime,
        finished_at: datetime,
        trigger_data: dict[str, Any] | None = None,
    ) -> int:
        stmt = (
            insert(workflow_executions_table)
            .values(
                trigger_id=trigger_id,
                trigger_name=trigger_name,
                event_name=event_name,
                actor_id=actor_id,
                status=status,
                outcomes=outcomes,
                trigger_data=trigger_data,
                started_at=started_at,
                finished_at=finished_at,
            )
            .returning(workflow_executions_table.c.id)
        )
        result = await self._execute_with_logging("add_execution", stmt)
        return result.scalar_one()

    async def list_recent(
        self,
        limit: int = 50,
        trigger_id: int | None = None,
        event_name: str | None = None,
    ) -> list[dict[str, Any]]:
        stmt = select(workflow_executions_table)
        if trigger_id is not None:
            stmt = stmt.where(workflow_executions_table.c.trigger_id == trigger_id)
        if event_name is not None:
            stmt = stmt.where(workflow_executions_table.c.event_name == event_name)
        stmt = stmt.order_by(workflow_executions_table.c.id.desc()).limit(limit)
        return await self._db.fetch_all(stmt)

    async def get(self, execution_id: int) -> dict[str, Any] | None:
        stmt = select(workflow_executions_table).where(
            workflow_executions_table.c.id == execution_id
        )
        return await self._db.fetch_one(stmt)
