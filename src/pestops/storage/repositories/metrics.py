"""Repository for counters and totals bucketed by period."""

from datetime import datetime

from sqlalchemy import insert, select, update

from pestops.storage.activity import metrics_table
from pestops.storage.repositories.base import BaseRepository


class MetricsRepository(BaseRepository):
    async def adjust(
        self, name: str, period: str, delta: float, updated_at: datetime
    ) -> float:
        """Add delta to a metric bucket, creating it at zero first. Returns the new value."""
        if self._is_postgres:
            from sqlalchemy.dialects.postgresql import insert as pg_insert

            stmt = pg_insert(metrics_table).values(
                name=name, period=period, value=delta, updated_at=updated_at
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["name", "period"],
                set_={
                    "value": metrics_table.c.value + stmt.excluded.value,
                    "updated_at": updated_at,
                },
            ).returning(metrics_table.c.value)
            result = await self._execute_with_logging("adjust_metric", stmt)
            return result.scalar_one()

        update_stmt = (
            update(metrics_table)
            .where(metrics_table.c.name == name, metrics_table.c.period == period)
            .values(value=metrics_table.c.value + delta, updated_at=updated_at)
        )
        result = await self._execute_with_logging("adjust_metric", update_stmt)
        if result.rowcount == 0:  # type: ignore[attr-defined]
            await self._execute_with_logging(
                "adjust_metric",
                insert(metrics_table).values(
                    name=name, period=period, value=delta, updated_at=updated_at
                ),
            )
        return await self.get(name, period) or 0.0

    async def set_value(
        self, name: str, period: str, value: float, updated_at: datetime
    ) -> float:
        await self._upsert(
            "set_metric",
            metrics_table,
            {"name": name, "period": period},
            {"value": value, "updated_at": updated_at},
        )
        return value

    async def get(self, name: str, period: str) -> float | None:
        stmt = select(metrics_table.c.value).where(
            metrics_table.c.name == name, metrics_table.c.period == period
        )
        row = await self._db.fetch_one(stmt)
        return row["value"] if row else None
