"""Persisted catalogue of workflow triggers."""

import logging
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from pestops.exceptions import PestOpsError, TriggerValidationError
from pestops.storage import DatabaseContext, ensure_utc
from pestops.utils.clock import Clock, SystemClock
from pestops.workflows.defaults import TRIGGER_EVENTS, default_trigger_specs
from pestops.workflows.models import (
    ActionSpec,
    Trigger,
    TriggerConditions,
    TriggerSpec,
    UnrecognizedAction,
    action_spec_adapter,
)

logger = logging.getLogger(__name__)

# Columns an operator may change on a default trigger without bootstrap undoing it
_OPERATOR_OWNED_COLUMNS = frozenset({"name", "is_active", "created_by"})


def _format_validation_error(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        messages.append(f"{location}: {item['msg']}" if location else item["msg"])
    return messages


def parse_stored_action(raw: dict[str, Any]) -> ActionSpec | UnrecognizedAction:
    """Load a stored action, keeping unknown or now-invalid ones as UnrecognizedAction."""
    try:
        return action_spec_adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(
            f"Stored action {raw.get('type')!r} could not be loaded: "
            f"{'; '.join(_format_validation_error(e))}"
        )
        return UnrecognizedAction.model_validate({
            "type": str(raw.get("type", "")),
            "config": raw.get("config") or {},
            "retry_on_fail": bool(raw.get("retry_on_fail", False)),
        })


def row_to_trigger(row: dict[str, Any]) -> Trigger:
    conditions = None
    if row.get("conditions"):
        try:
            conditions = TriggerConditions.model_validate(row["conditions"])
        except ValidationError as e:
            # A stored condition that no longer validates must not match everything.
            logger.error(
                f"Trigger {row['id']} has invalid stored conditions; "
                f"it will be skipped: {e}"
            )
            conditions = None
            row = {**row, "is_active": False}
    return Trigger(
        id=row["id"],
        name=row["name"],
        description=row.get("description"),
        trigger_event=row["trigger_event"],
        conditions=conditions,
        actions=[parse_stored_action(a) for a in row.get("actions") or []],
        priority=row["priority"],
        active=bool(row["is_active"]),
        created_by=row.get("created_by"),
        created_at=ensure_utc(row.get("created_at")),
    )


def _spec_to_columns(spec: TriggerSpec) -> dict[str, Any]:
    return {
        "name": spec.name,
        "description": spec.description,
        "trigger_event": spec.trigger_event,
        "conditions": (
            spec.conditions.model_dump(mode="json", exclude_none=True)
            if spec.conditions
            else None
        ),
        "actions": [a.model_dump(mode="json", exclude_none=True) for a in spec.actions],
        "priority": spec.priority,
        "is_active": spec.active,
        "created_by": spec.created_by,
    }


def _duplicate_name(name: str) -> TriggerValidationError:
    return TriggerValidationError(
        f"A trigger named '{name}' already exists",
        [f"name: '{name}' already exists"],
    )


class TriggerRegistry:
    """Creates, lists and deactivates triggers.

    Every read goes to the database so a deactivation is visible to the very
    next ``trigger()`` call.
    """

    def __init__(
        self,
        get_db_context_func: Callable[[], DatabaseContext],
        clock: Clock | None = None,
    ) -> None:
        self.get_db_context_func = get_db_context_func
        self.clock = clock or SystemClock()

    @staticmethod
    def validate(spec: TriggerSpec | dict[str, Any]) -> TriggerSpec:
        """Return a validated TriggerSpec or raise TriggerValidationError."""
        if isinstance(spec, TriggerSpec):
            # Re-validate so invariants hold for specs built with model_construct
            spec = spec.model_dump(mode="json")
        try:
            validated = TriggerSpec.model_validate(spec)
        except ValidationError as e:
            errors = _format_validation_error(e)
            raise TriggerValidationError(
                f"Invalid trigger definition: {'; '.join(errors)}", errors
            ) from e
        if validated.trigger_event not in TRIGGER_EVENTS:
            logger.warning(
                f"Trigger '{validated.name}' listens for unknown event "
                f"'{validated.trigger_event}'"
            )
        return validated

    async def create_trigger(self, spec: TriggerSpec | dict[str, Any]) -> Trigger:
        validated = self.validate(spec)
        columns = _spec_to_columns(validated)
        try:
            async with self.get_db_context_func() as db:
                if await db.triggers.get_by_name(validated.name):
                    raise _duplicate_name(validated.name)
                trigger_id = await db.triggers.add(**columns)
                row = await db.triggers.get(trigger_id)
        except IntegrityError as e:
            # A concurrent create took the name between the lookup and the insert
            raise _duplicate_name(validated.name) from e
        if row is None:
            raise PestOpsError(
                f"Trigger {trigger_id} could not be read back after insert"
            )
        return row_to_trigger(row)

    async def list_active_for(self, event_name: str) -> list[Trigger]:
        async with self.get_db_context_func() as db:
            rows = await db.triggers.list_active_for(event_name)
        triggers = [row_to_trigger(row) for row in rows]
        return [t for t in triggers if t.active]

    async def list_triggers(self, include_inactive: bool = True) -> list[Trigger]:
        async with self.get_db_context_func() as db:
            rows = await db.triggers.list_all(include_inactive=include_inactive)
        return [row_to_trigger(row) for row in rows]

    async def get_trigger(self, trigger_id: int) -> Trigger | None:
        async with self.get_db_context_func() as db:
            row = await db.triggers.get(trigger_id)
        return row_to_trigger(row) if row else None

    async def deactivate(self, trigger_id: int) -> bool:
        """Deactivate a trigger. Returns False when no such trigger exists."""
        async with self.get_db_context_func() as db:
            updated = await db.triggers.set_active(
                trigger_id, False, updated_at=self.clock.now()
            )
        if updated:
            logger.info(f"Deactivated workflow trigger {trigger_id}")
        else:
            logger.warning(f"Cannot deactivate unknown trigger {trigger_id}")
        return updated

    async def bootstrap_defaults(
        self, specs: list[TriggerSpec] | None = None
    ) -> dict[str, int]:
        """Upsert the default catalogue by name.

        Missing triggers are created and changed ones are updated in place,
        so running this repeatedly never creates duplicates.

        Returns:
            Counts of created, updated and unchanged triggers.
        """
        counts = {"created": 0, "updated": 0, "unchanged": 0}
        specs = specs if specs is not None else default_trigger_specs()
        async with self.get_db_context_func() as db:
            for spec in specs:
                validated = self.validate(spec)
                columns = _spec_to_columns(validated)
                existing = await db.triggers.get_by_name(validated.name)
                if existing is None:
                    await db.triggers.add(**columns)
                    counts["created"] += 1
                    continue
                changed = {
                    key: value
                    for key, value in columns.items()
                    if key not in _OPERATOR_OWNED_COLUMNS and existing.get(key) != value
                }
                if changed:
                    await db.triggers.update(
                        existing["id"], updated_at=self.clock.now(), **changed
                    )
                    counts["updated"] += 1
                    logger.info(
                        f"Updated default trigger '{validated.name}': "
                        f"{sorted(changed)}"
                    )
                else:
                    counts["unchanged"] += 1
        logger.info(f"Default triggers bootstrapped: {counts}")
        return counts
