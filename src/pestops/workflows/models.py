"""Data types for workflow triggers, actions, events and execution records.

Declarative input (trigger definitions, action configs, conditions) is
validated with pydantic. Runtime records produced by the engine are plain
dataclasses.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


class ActionType(str, Enum):
    """Kinds of side effects a trigger can run."""

    SYNC_QUICKBOOKS = "sync_quickbooks"
    SYNC_GOOGLE_CALENDAR = "sync_google_calendar"
    SEND_EMAIL = "send_email"
    SEND_NOTIFICATION = "send_notification"
    LOG_ACTIVITY = "log_activity"
    UPDATE_STATUS = "update_status"
    UPDATE_METRIC = "update_metric"


class ActionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ComparisonOperator(str, Enum):
    EQUALS = "equals"
    LESS_THAN = "lessThan"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"


class _ConfigModel(BaseModel):
    """Base for action configs: snake_case or camelCase keys, unknown keys rejected."""

    model_config = ConfigDict(
        extra="forbid", alias_generator=to_camel, populate_by_name=True
    )


# --- Action configs ---


class SyncQuickBooksConfig(_ConfigModel):
    sync_type: Literal[
        "invoice", "time_entry", "daily_timesheet", "customers", "items", "full"
    ] = "invoice"


class SyncGoogleCalendarConfig(_ConfigModel):
    operation: Literal["create_event", "update_event", "delete_event"] = (
        "create_event"
    )
    calendar_id: str = "primary"
    send_invites: bool = False
    # Status tag written onto the event on update (e.g. "in_progress")
    update_status: str | None = None


class SendEmailConfig(_ConfigModel):
    to: str = Field(min_length=3)
    subject: str
    # Template with {field} placeholders filled from the event payload
    body: str = ""
    from_address: str | None = None


class SendNotificationConfig(_ConfigModel):
    message: str
    level: Literal["info", "success", "warning", "error"] = Field(
        default="info", alias="type"
    )
    recipients: list[str] = Field(default_factory=list)
    webhook_url: str | None = None


class LogActivityConfig(_ConfigModel):
    description: str = ""
    activity_type: str = Field(default="workflow", alias="type")


class UpdateStatusConfig(_ConfigModel):
    entity: str
    status: str
    id_field: str = "id"


class UpdateMetricConfig(_ConfigModel):
    metric: str
    operation: Literal["increment", "set", "add"] = "increment"
    value: float | None = None
    value_field: str | None = None
    period: Literal["day", "month", "total"] = "day"

    @model_validator(mode="after")
    def _needs_a_value(self) -> UpdateMetricConfig:
        if self.operation in ("set", "add") and (
            self.value is None and self.value_field is None
        ):
            raise ValueError(f"'{self.operation}' needs either value or value_field")
        return self


# --- Action specs (tagged union on "type") ---


class _ActionBase(BaseModel):
    model_config = ConfigDict(
        extra="forbid", alias_generator=to_camel, populate_by_name=True
    )

    retry_on_fail: bool = False
    timeout_seconds: float | None = Field(default=None, gt=0)


class SyncQuickBooksAction(_ActionBase):
    type: Literal["sync_quickbooks"] = "sync_quickbooks"
    config: SyncQuickBooksConfig = Field(default_factory=SyncQuickBooksConfig)


class SyncGoogleCalendarAction(_ActionBase):
    type: Literal["sync_google_calendar"] = "sync_google_calendar"
    config: SyncGoogleCalendarConfig = Field(default_factory=SyncGoogleCalendarConfig)


class SendEmailAction(_ActionBase):
    type: Literal["send_email"] = "send_email"
    config: SendEmailConfig


class SendNotificationAction(_ActionBase):
    type: Literal["send_notification"] = "send_notification"
    config: SendNotificationConfig


class LogActivityAction(_ActionBase):
    type: Literal["log_activity"] = "log_activity"
    config: LogActivityConfig = Field(default_factory=LogActivityConfig)


class UpdateStatusAction(_ActionBase):
    type: Literal["update_status"] = "update_status"
    config: UpdateStatusConfig


class UpdateMetricAction(_ActionBase):
    type: Literal["update_metric"] = "update_metric"
    config: UpdateMetricConfig


ActionSpec = Annotated[
    SyncQuickBooksAction
    | SyncGoogleCalendarAction
    | SendEmailAction
    | SendNotificationAction
    | LogActivityAction
    | UpdateStatusAction
    | UpdateMetricAction,
    Field(discriminator="type"),
]

action_spec_adapter: TypeAdapter[ActionSpec] = TypeAdapter(ActionSpec)


class UnrecognizedAction(BaseModel):
    """A stored action whose type this build does not know how to run."""

    model_config = ConfigDict(extra="allow")

    type: str
    config: dict[str, Any] = Field(default_factory=dict)
    retry_on_fail: bool = False
    timeout_seconds: float | None = None


# --- Conditions ---


class FieldCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Dot path into the event payload, e.g. "material.totalCost"
    field: str = Field(min_length=1)
    operator: ComparisonOperator = ComparisonOperator.EQUALS
    value: Any = None


class TimeWindow(BaseModel):
    """Inclusive hour-of-day range. start > end wraps past midnight."""

    model_config = ConfigDict(extra="forbid")

    start: int = Field(ge=0, le=23)
    end: int = Field(ge=0, le=23)


class TriggerConditions(BaseModel):
    """Flat AND of field comparisons, an optional time window and an optional actor."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    field_conditions: list[FieldCondition] = Field(default_factory=list)
    time_window: TimeWindow | None = Field(default=None, alias="timeWindow")
    actor_id: str | None = Field(default=None, alias="userId")

    @model_validator(mode="before")
    @classmethod
    def _accept_data_conditions_mapping(cls, data: Any) -> Any:  # noqa: ANN401
        """Translate the ``dataConditions`` mapping form into field conditions.

        ``{"totalCost": {"operator": "lessThan", "value": 100}}`` and
        ``{"status": "approved"}`` (plain equality) are both accepted.
        """
        if not isinstance(data, dict) or "dataConditions" not in data:
            return data
        data = dict(data)
        mapping = data.pop("dataConditions") or {}
        if not isinstance(mapping, dict):
            raise ValueError("dataConditions must be a mapping of field to condition")
        converted = list(data.get("field_conditions", []))
        for field_name, condition in mapping.items():
            if isinstance(condition, dict) and "operator" in condition:
                converted.append({
                    "field": field_name,
                    "operator": condition["operator"],
                    "value": condition.get("value"),
                })
            else:
                converted.append({"field": field_name, "value": condition})
        data["field_conditions"] = converted
        return data

    @model_validator(mode="after")
    def _at_least_one_clause(self) -> TriggerConditions:
        if not self.field_conditions and self.time_window is None and not self.actor_id:
            raise ValueError("conditions must contain at least one clause")
        return self


# --- Trigger definitions ---


class TriggerSpec(BaseModel):
    """Validated input for creating or bootstrapping a trigger."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    trigger_event: str
    conditions: TriggerConditions | None = None
    actions: list[ActionSpec] = Field(default_factory=list)
    priority: int = 100
    active: bool = True
    created_by: str | None = None

    @field_validator("trigger_event")
    @classmethod
    def _event_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("trigger_event must not be empty")
        return value

    @model_validator(mode="after")
    def _active_needs_actions(self) -> TriggerSpec:
        if self.active and not self.actions:
            raise ValueError("an active trigger needs at least one action")
        return self


@dataclass(frozen=True)
class Trigger:
    """A stored trigger as seen by the engine."""

    id: int
    name: str
    trigger_event: str
    actions: list[ActionSpec | UnrecognizedAction]
    conditions: TriggerConditions | None = None
    description: str | None = None
    priority: int = 100
    active: bool = True
    created_by: str | None = None
    created_at: datetime | None = None


# --- Runtime records ---


# Metadata key carrying the idempotency key of the action being executed
IDEMPOTENCY_KEY = "idempotency_key"

_IDEMPOTENCY_NAMESPACE = uuid.UUID("5b0c2f6e-8a4d-4a61-9b1e-7d3c6f0a2e91")


@dataclass(frozen=True)
class TriggerEvent:
    event_name: str
    payload: dict[str, Any]
    actor_id: str | None
    occurred_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def idempotency_key(self, trigger_id: int, action_index: int) -> str:
        """Stable key for one action of one trigger run on this event.

        Every attempt of the action gets the same key, so providers that
        deduplicate on it apply the effect once.
        """
        material = json.dumps(
            [
                trigger_id,
                action_index,
                self.event_name,
                self.occurred_at.isoformat(),
                self.actor_id,
                self.metadata.get("event_id"),
                self.payload,
            ],
            sort_keys=True,
            default=str,
        )
        return str(uuid.uuid5(_IDEMPOTENCY_NAMESPACE, material))

    def for_action(self, trigger_id: int, action_index: int) -> TriggerEvent:
        """The event as one action sees it, with its idempotency key attached."""
        return replace(
            self,
            metadata={
                **self.metadata,
                IDEMPOTENCY_KEY: self.idempotency_key(trigger_id, action_index),
            },
        )


@dataclass(frozen=True)
class ActionResult:
    """What an executor reports for a single attempt."""

    status: ActionStatus
    transient: bool = False
    detail: str | None = None

    @classmethod
    def ok(cls, detail: str | None = None) -> ActionResult:
        return cls(ActionStatus.SUCCESS, False, detail)

    @classmethod
    def failed(cls, detail: str, transient: bool = False) -> ActionResult:
        return cls(ActionStatus.FAILED, transient, detail)

    @property
    def succeeded(self) -> bool:
        return self.status is ActionStatus.SUCCESS


@dataclass(frozen=True)
class ActionOutcome:
    """Final result of one action after any retries."""

    action_type: str
    status: ActionStatus
    attempts: int = 1
    transient: bool = False
    error: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_type": self.action_type,
            "status": self.status.value,
            "attempts": self.attempts,
            "transient": self.transient,
            "error": self.error,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class ExecutionRecord:
    trigger_id: int
    trigger_name: str
    event_name: str
    actor_id: str | None
    outcomes: tuple[ActionOutcome, ...]
    started_at: datetime
    finished_at: datetime
    id: int | None = None

    @property
    def status(self) -> str:
        if all(o.status is ActionStatus.SUCCESS for o in self.outcomes):
            return "completed"
        return "completed_with_errors"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trigger_id": self.trigger_id,
            "trigger_name": self.trigger_name,
            "event_name": self.event_name,
            "actor_id": self.actor_id,
            "status": self.status,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
        }
