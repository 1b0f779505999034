"""Executors that write business records: activity log, entity status, metrics."""

import logging
from collections.abc import Callable
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError

from pestops.actions.base import render_template, storage_failure
from pestops.storage import DatabaseContext
from pestops.workflows.conditions import MISSING, as_number, get_nested_value
from pestops.workflows.models import (
    ActionResult,
    LogActivityConfig,
    TriggerEvent,
    UpdateMetricConfig,
    UpdateStatusConfig,
)

logger = logging.getLogger(__name__)


class LogActivityExecutor:
    def __init__(self, get_db_context_func: Callable[[], DatabaseContext]) -> None:
        self.get_db_context_func = get_db_context_func

    async def execute(
        self, config: LogActivityConfig, event: TriggerEvent
    ) -> ActionResult:
        description = render_template(config.description, event.payload) or (
            f"Workflow event {event.event_name}"
        )
        try:
            async with self.get_db_context_func() as db:
                activity_id = await db.activity.add(
                    activity_type=config.activity_type,
                    description=description,
                    user_id=event.actor_id,
                    details={
                        "event": event.event_name,
                        "payload": event.payload,
                        **({"metadata": event.metadata} if event.metadata else {}),
                    },
                    created_at=event.occurred_at,
                )
        except SQLAlchemyError as e:
            return storage_failure("log_activity", e)
        return ActionResult.ok(f"activity {activity_id} logged")


class UpdateStatusExecutor:
    def __init__(self, get_db_context_func: Callable[[], DatabaseContext]) -> None:
        self.get_db_context_func = get_db_context_func

    async def execute(
        self, config: UpdateStatusConfig, event: TriggerEvent
    ) -> ActionResult:
        entity_id = get_nested_value(event.payload, config.id_field)
        if entity_id is MISSING or entity_id is None:
            return ActionResult.failed(
                f"payload has no '{config.id_field}' for {config.entity}"
            )
        try:
            async with self.get_db_context_func() as db:
                await db.statuses.set_status(
                    entity=config.entity,
                    entity_id=str(entity_id),
                    status=config.status,
                    updated_at=event.occurred_at,
                    updated_by=event.actor_id,
                )
        except SQLAlchemyError as e:
            return storage_failure("update_status", e)
        return ActionResult.ok(f"{config.entity} {entity_id} -> {config.status}")


class UpdateMetricExecutor:
    """Maintains counters bucketed by business day, month or all time."""

    def __init__(
        self,
        get_db_context_func: Callable[[], DatabaseContext],
        timezone: str = "UTC",
    ) -> None:
        self.get_db_context_func = get_db_context_func
        self.timezone = ZoneInfo(timezone)

    def period_key(self, config: UpdateMetricConfig, event: TriggerEvent) -> str:
        local = event.occurred_at.astimezone(self.timezone)
        if config.period == "day":
            return local.strftime("%Y-%m-%d")
        if config.period == "month":
            return local.strftime("%Y-%m")
        return "total"

    def _amount(self, config: UpdateMetricConfig, event: TriggerEvent) -> float | None:
        if config.value_field:
            return as_number(get_nested_value(event.payload, config.value_field))
        if config.value is not None:
            return config.value
        return 1.0 if config.operation == "increment" else None

    async def execute(
        self, config: UpdateMetricConfig, event: TriggerEvent
    ) -> ActionResult:
        amount = self._amount(config, event)
        if amount is None:
            return ActionResult.failed(
                f"no numeric value for metric {config.metric} "
                f"(field '{config.value_field}')"
            )
        period = self.period_key(config, event)
        try:
            async with self.get_db_context_func() as db:
                if config.operation == "set":
                    value = await db.metrics.set_value(
                        config.metric, period, amount, updated_at=event.occurred_at
                    )
                else:
                    value = await db.metrics.adjust(
                        config.metric, period, amount, updated_at=event.occurred_at
                    )
        except SQLAlchemyError as e:
            return storage_failure("update_metric", e)
        return ActionResult.ok(f"{config.metric}[{period}] = {value:g}")
