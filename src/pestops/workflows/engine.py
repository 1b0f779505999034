"""The workflow engine: matches triggers to events and runs their actions."""

import asyncio
import logging
import random
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from pestops.actions.base import ActionExecutor
from pestops.config_models import WorkflowConfig
from pestops.exceptions import ConfigurationError
from pestops.storage import DatabaseContext
from pestops.utils.clock import Clock, SystemClock
from pestops.workflows.conditions import ConditionEvaluator
from pestops.workflows.models import (
    ActionOutcome,
    ActionResult,
    ActionSpec,
    ActionStatus,
    ExecutionRecord,
    Trigger,
    TriggerEvent,
    UnrecognizedAction,
)
from pestops.workflows.registry import TriggerRegistry

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Evaluates triggers for domain events and executes their actions.

    Triggers matching one event run one after another in priority order and
    the actions of a trigger run in the order they are listed. A failing
    action never stops its siblings. ``trigger()`` reports everything that
    happened through the returned execution records instead of raising.
    """

    def __init__(
        self,
        registry: TriggerRegistry,
        executors: Mapping[str, ActionExecutor],
        get_db_context_func: Callable[[], DatabaseContext],
        config: WorkflowConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        if not executors:
            raise ConfigurationError("WorkflowEngine needs at least one action executor")
        self.registry = registry
        self.executors = dict(executors)
        self.get_db_context_func = get_db_context_func
        self.config = config or WorkflowConfig()
        self.clock = clock or SystemClock()
        self.evaluator = ConditionEvaluator(self.config.timezone)

    async def trigger(
        self,
        event_name: str,
        payload: dict[str, Any] | None = None,
        actor_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> list[ExecutionRecord]:
        """Fire an event and return one record per matching trigger.

        An event with no matching active trigger returns an empty list and
        has no side effects.
        """
        event = TriggerEvent(
            event_name=event_name,
            payload=payload or {},
            actor_id=actor_id,
            metadata=metadata or {},
            occurred_at=occurred_at or self.clock.now(),
        )

        try:
            candidates = await self.registry.list_active_for(event_name)
        except SQLAlchemyError as e:
            logger.error(
                f"Could not load triggers for event '{event_name}': {e}", exc_info=True
            )
            return []

        records: list[ExecutionRecord] = []
        for trigger in candidates:
            if not self.evaluator.matches(trigger.conditions, event):
                logger.debug(
                    f"Trigger '{trigger.name}' conditions not met for '{event_name}'"
                )
                continue
            logger.info(
                f"Running trigger '{trigger.name}' (priority {trigger.priority}) "
                f"for event '{event_name}'"
            )
            record = await self._run_trigger(trigger, event)
            records.append(await self._persist(record, event))
        return records

    async def _run_trigger(self, trigger: Trigger, event: TriggerEvent) -> ExecutionRecord:
        started_at = self.clock.now()
        outcomes = []
        for index, action in enumerate(trigger.actions):
            outcome = await self._run_action(
                trigger, action, event.for_action(trigger.id, index)
            )
            if outcome.status is ActionStatus.FAILED:
                logger.warning(
                    f"Action {outcome.action_type} of trigger '{trigger.name}' failed "
                    f"after {outcome.attempts} attempt(s): {outcome.error}"
                )
            outcomes.append(outcome)
        return ExecutionRecord(
            trigger_id=trigger.id,
            trigger_name=trigger.name,
            event_name=event.event_name,
            actor_id=event.actor_id,
            outcomes=tuple(outcomes),
            started_at=started_at,
            finished_at=self.clock.now(),
        )

    async def _run_action(
        self,
        trigger: Trigger,
        action: ActionSpec | UnrecognizedAction,
        event: TriggerEvent,
    ) -> ActionOutcome:
        executor = None
        if not isinstance(action, UnrecognizedAction):
            executor = self.executors.get(action.type)
        if executor is None:
            logger.error(
                f"Trigger '{trigger.name}' uses action type '{action.type}' "
                "which has no registered executor"
            )
            return ActionOutcome(
                action_type=action.type,
                status=ActionStatus.FAILED,
                attempts=0,
                error=f"configuration error: no executor for action type '{action.type}'",
            )

        max_attempts = self.config.max_attempts if action.retry_on_fail else 1
        timeout = action.timeout_seconds or self.config.action_timeout_seconds
        result = ActionResult.failed("not executed")
        attempt = 0
        while attempt < max_attempts:
            attempt += 1
            result = await self._attempt(executor, action, event, timeout)
            if result.succeeded or not result.transient:
                break
            if attempt < max_attempts:
                delay = self._backoff_delay(attempt)
                logger.info(
                    f"Retrying {action.type} for trigger '{trigger.name}' in "
                    f"{delay:.2f}s (attempt {attempt + 1}/{max_attempts})"
                )
                await self.clock.sleep(delay)

        if result.succeeded:
            return ActionOutcome(
                action_type=action.type,
                status=ActionStatus.SUCCESS,
                attempts=attempt,
                detail=result.detail,
            )
        return ActionOutcome(
            action_type=action.type,
            status=ActionStatus.FAILED,
            attempts=attempt,
            transient=result.transient,
            error=result.detail,
        )

    async def _attempt(
        self,
        executor: ActionExecutor,
        action: ActionSpec,
        event: TriggerEvent,
        timeout: float,
    ) -> ActionResult:
        """Run one attempt, turning timeouts and stray exceptions into results."""
        try:
            return await asyncio.wait_for(
                executor.execute(action.config, event), timeout=timeout
            )
        except asyncio.TimeoutError:
            return ActionResult.failed(
                f"{action.type} timed out after {timeout:g}s", transient=True
            )
        except Exception as e:
            logger.error(
                f"Unexpected error executing {action.type}: {e}", exc_info=True
            )
            return ActionResult.failed(f"unexpected error: {e}")

    def _backoff_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        base = self.config.base_delay_seconds
        delay = base * (2 ** (attempt - 1)) + random.uniform(0, base * 0.1)
        return min(delay, self.config.max_delay_seconds)

    async def _persist(
        self, record: ExecutionRecord, event: TriggerEvent
    ) -> ExecutionRecord:
        """Append the record to the execution log. Storage errors are logged only."""
        try:
            async with self.get_db_context_func() as db:
                execution_id = await db.executions.add(
                    trigger_id=record.trigger_id,
                    trigger_name=record.trigger_name,
                    event_name=record.event_name,
                    actor_id=record.actor_id,
                    status=record.status,
                    outcomes=[o.to_dict() for o in record.outcomes],
                    started_at=record.started_at,
                    finished_at=record.finished_at,
                    trigger_data={
                        "payload": event.payload,
                        "metadata": event.metadata,
                        "occurred_at": event.occurred_at.isoformat(),
                    },
                )
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to store execution record for trigger '{record.trigger_name}': {e}",
                exc_info=True,
            )
            return record
        return replace(record, id=execution_id)

    async def list_executions(
        self,
        limit: int = 50,
        trigger_id: int | None = None,
        event_name: str | None = None,
    ) -> list[dict[str, Any]]:
        async with self.get_db_context_func() as db:
            return await db.executions.list_recent(
                limit=limit, trigger_id=trigger_id, event_name=event_name
            )
