"""Repository for records pulled from QuickBooks and Google Calendar."""

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select

from pestops.storage.integrations import external_records_table
from pestops.storage.repositories.base import BaseRepository


class ExternalRecordsRepository(BaseRepository):
    async def upsert(
        self,
        provider: str,
        resource_type: str,
        external_id: str,
        data: dict[str, Any],
        synced_at: datetime,
        user_id: str | None = None,
    ) -> None:
        """Store the latest copy of a provider record keyed by its external id."""
        values = {"data": data, "synced_at": synced_at, "user_id": user_id}
        await self._upsert(
            "upsert_external_record",
            external_records_table,
            {
                "provider": provider,
                "resource_type": resource_type,
                "external_id": external_id,
            },
            values,
        )

    async def delete(self, provider: str, resource_type: str, external_id: str) -> bool:
        stmt = delete(external_records_table).where(
            external_records_table.c.provider == provider,
            external_records_table.c.resource_type == resource_type,
            external_records_table.c.external_id == external_id,
        )
        result = await self._execute_with_logging("delete_external_record", stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def get(
        self, provider: str, resource_type: str, external_id: str
    ) -> dict[str, Any] | None:
        stmt = select(external_records_table).where(
            external_records_table.c.provider == provider,
            external_records_table.c.resource_type == resource_type,
            external_records_table.c.external_id == external_id,
        )
        return await self._db.fetch_one(stmt)

    async def count(self, provider: str, resource_type: str | None = None) -> int:
        stmt = select(func.count()).select_from(external_records_table)  # pylint: disable=not-callable
        stmt = stmt.where(external_records_table.c.provider == provider)
        if resource_type is not None:
            stmt = stmt.where(external_records_table.c.resource_type == resource_type)
        result = await self._db.execute_with_retry(stmt)
        return result.scalar_one()
