"""Repository for the workflow trigger catalogue."""

from datetime import datetime
from typing import Any

from sqlalchemy import insert, select, update

from pestops.storage.repositories.base import BaseRepository
from pestops.storage.workflows import workflow_triggers_table


class TriggersRepository(BaseRepository):
    """Rows are returned as plain dicts; the registry turns them into Triggers."""

    async def add(
        self,
        name: str,
        trigger_event: str,
        actions: list[dict[str, Any]],
        conditions: dict[str, Any] | None = None,
        description: str | None = None,
        priority: int = 100,
        is_active: bool = True,
        created_by: str | None = None,
    ) -> int:
        """Insert a trigger and return its id."""
        stmt = (
            insert(workflow_triggers_table)
            .values(
                name=name,
                description=description,
                trigger_event=trigger_event,
                conditions=conditions,
                actions=actions,
                priority=priority,
                is_active=is_active,
                created_by=created_by,
            )
            .returning(workflow_triggers_table.c.id)
        )
        result = await self._execute_with_logging("add_trigger", stmt)
        trigger_id = result.scalar_one()
        self._logger.info(f"Created workflow trigger {trigger_id} '{name}'")
        return trigger_id

    async def get(self, trigger_id: int) -> dict[str, Any] | None:
        stmt = select(workflow_triggers_table).where(
            workflow_triggers_table.c.id == trigger_id
        )
        return await self._db.fetch_one(stmt)

    async def get_by_name(self, name: str) -> dict[str, Any] | None:
        stmt = select(workflow_triggers_table).where(
            workflow_triggers_table.c.name == name
        )
        return await self._db.fetch_one(stmt)

    async def list_active_for(self, trigger_event: str) -> list[dict[str, Any]]:
        """Active triggers for an event, lowest priority number first.

        Ties fall back to insertion order.
        """
        stmt = (
            select(workflow_triggers_table)
            .where(
                workflow_triggers_table.c.trigger_event == trigger_event,
                workflow_triggers_table.c.is_active.is_(True),
            )
            .order_by(
                workflow_triggers_table.c.priority.asc(),
                workflow_triggers_table.c.id.asc(),
            )
        )
        return await self._db.fetch_all(stmt)

    async def list_all(self, include_inactive: bool = True) -> list[dict[str, Any]]:
        stmt = select(workflow_triggers_table).order_by(
            workflow_triggers_table.c.priority.asc(),
            workflow_triggers_table.c.id.asc(),
        )
        if not include_inactive:
            stmt = stmt.where(workflow_triggers_table.c.is_active.is_(True))
        return await self._db.fetch_all(stmt)

    async def update(
        self, trigger_id: int, updated_at: datetime, **values: Any
    ) -> bool:  # noqa: ANN401
        """Update columns of an existing trigger. Returns False if it does not exist."""
        stmt = (
            update(workflow_triggers_table)
            .where(workflow_triggers_table.c.id == trigger_id)
            .values(updated_at=updated_at, **values)
        )
        result = await self._execute_with_logging("update_trigger", stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def set_active(
        self, trigger_id: int, is_active: bool, updated_at: datetime
    ) -> bool:
        return await self.update(trigger_id, updated_at, is_active=is_active)
