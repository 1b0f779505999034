"""Repositories for activity logs, in-app notifications and entity statuses."""

from datetime import datetime
from typing import Any

from sqlalchemy import insert, select, update

from pestops.storage.activity import (
    activity_logs_table,
    entity_statuses_table,
    notifications_table,
)
from pestops.storage.repositories.base import BaseRepository


class ActivityRepository(BaseRepository):
    """Append-only activity feed."""

    async def add(
        self,
        activity_type: str,
        description: str,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> int:
        values: dict[str, Any] = {
            "activity_type": activity_type,
            "description": description,
            "user_id": user_id,
            "details": details,
        }
        if created_at is not None:
            values["created_at"] = created_at
        stmt = (
            insert(activity_logs_table)
            .values(**values)
            .returning(activity_logs_table.c.id)
        )
        result = await self._execute_with_logging("add_activity", stmt)
        return result.scalar_one()

    async def list_recent(
        self, limit: int = 50, user_id: str | None = None
    ) -> list[dict[str, Any]]:
        stmt = select(activity_logs_table)
        if user_id is not None:
            stmt = stmt.where(activity_logs_table.c.user_id == user_id)
        stmt = stmt.order_by(activity_logs_table.c.id.desc()).limit(limit)
        return await self._db.fetch_all(stmt)


class NotificationsRepository(BaseRepository):
    """In-app notification inbox."""

    async def add(
        self,
        message: str,
        level: str = "info",
        recipient: str | None = None,
        source: str | None = None,
        created_at: datetime | None = None,
    ) -> int:
        values: dict[str, Any] = {
            "message": message,
            "level": level,
            "recipient": recipient,
            "source": source,
        }
        if created_at is not None:
            values["created_at"] = created_at
        stmt = (
            insert(notifications_table)
            .values(**values)
            .returning(notifications_table.c.id)
        )
        result = await self._execute_with_logging("add_notification", stmt)
        return result.scalar_one()

    async def list_for(
        self, recipient: str | None = None, unread_only: bool = False
    ) -> list[dict[str, Any]]:
        """Notifications addressed to a recipient plus broadcast ones."""
        stmt = select(notifications_table)
        if recipient is not None:
            stmt = stmt.where(
                (notifications_table.c.recipient == recipient)
                | notifications_table.c.recipient.is_(None)
            )
        if unread_only:
            stmt = stmt.where(notifications_table.c.is_read.is_(False))
        stmt = stmt.order_by(notifications_table.c.id.desc())
        return await self._db.fetch_all(stmt)

    async def mark_read(self, notification_id: int) -> bool:
        stmt = (
            update(notifications_table)
            .where(notifications_table.c.id == notification_id)
            .values(is_read=True)
        )
        result = await self._execute_with_logging("mark_notification_read", stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]


class EntityStatusRepository(BaseRepository):
    """Current status of domain entities (jobs, materials, time entries)."""

    async def set_status(
        self,
        entity: str,
        entity_id: str,
        status: str,
        updated_at: datetime,
        updated_by: str | None = None,
    ) -> None:
        await self._upsert(
            "set_entity_status",
            entity_statuses_table,
            {"entity": entity, "entity_id": entity_id},
            {"status": status, "updated_at": updated_at, "updated_by": updated_by},
        )

    async def get_status(self, entity: str, entity_id: str) -> str | None:
        stmt = select(entity_statuses_table.c.status).where(
            entity_statuses_table.c.entity == entity,
            entity_statuses_table.c.entity_id == entity_id,
        )
        row = await self._db.fetch_one(stmt)
        return row["status"] if row else None
