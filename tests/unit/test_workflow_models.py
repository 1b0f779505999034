"""Tests for trigger, action and condition models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from pestops.workflows.defaults import default_trigger_specs
from pestops.workflows.models import (
    ActionOutcome,
    ActionStatus,
    ComparisonOperator,
    IDEMPOTENCY_KEY,
    ExecutionRecord,
    SendNotificationAction,
    SyncGoogleCalendarAction,
    TriggerConditions,
    TriggerEvent,
    TriggerSpec,
    UpdateMetricAction,
    action_spec_adapter,
)


class TestActionSpecs:
    def test_discriminated_on_type(self) -> None:
        action = action_spec_adapter.validate_python({
            "type": "send_notification",
            "config": {"message": "Hello", "type": "warning", "recipients": ["manager"]},
        })
        assert isinstance(action, SendNotificationAction)
        assert action.config.level == "warning"
        assert action.retry_on_fail is False

    def test_camel_case_keys_accepted(self) -> None:
        action = action_spec_adapter.validate_python({
            "type": "sync_google_calendar",
            "retryOnFail": True,
            "config": {"operation": "update_event", "updateStatus": "in_progress"},
        })
        assert isinstance(action, SyncGoogleCalendarAction)
        assert action.retry_on_fail is True
        assert action.config.update_status == "in_progress"
        assert action.config.calendar_id == "primary"

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            action_spec_adapter.validate_python({"type": "launch_rocket", "config": {}})

    def test_unknown_config_key_rejected(self) -> None:
        with pytest.raises(ValidationError):
            action_spec_adapter.validate_python({
                "type": "log_activity",
                "config": {"description": "x", "colour": "blue"},
            })

    def test_metric_set_needs_value(self) -> None:
        with pytest.raises(ValidationError, match="needs either value or value_field"):
            action_spec_adapter.validate_python({
                "type": "update_metric",
                "config": {"metric": "revenue", "operation": "set"},
            })

    def test_metric_increment_defaults(self) -> None:
        action = action_spec_adapter.validate_python({
            "type": "update_metric",
            "config": {"metric": "jobs_completed"},
        })
        assert isinstance(action, UpdateMetricAction)
        assert action.config.operation == "increment"
        assert action.config.period == "day"


class TestTriggerConditions:
    def test_data_conditions_mapping(self) -> None:
        parsed = TriggerConditions.model_validate({
            "dataConditions": {
                "totalCost": {"operator": "lessThan", "value": 100},
                "status": "approved",
            }
        })
        fields = {c.field: c for c in parsed.field_conditions}
        assert fields["totalCost"].operator is ComparisonOperator.LESS_THAN
        assert fields["totalCost"].value == 100
        assert fields["status"].operator is ComparisonOperator.EQUALS
        assert fields["status"].value == "approved"

    def test_empty_conditions_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least one clause"):
            TriggerConditions.model_validate({})

    def test_unknown_operator_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TriggerConditions.model_validate({
                "field_conditions": [{"field": "x", "operator": "roughly", "value": 1}]
            })

    def test_time_window_bounds(self) -> None:
        with pytest.raises(ValidationError):
            TriggerConditions.model_validate({"timeWindow": {"start": 17, "end": 24}})


class TestTriggerSpec:
    def test_active_trigger_needs_actions(self) -> None:
        with pytest.raises(ValidationError, match="at least one action"):
            TriggerSpec.model_validate({"name": "Empty", "trigger_event": "clock_in"})

    def test_inactive_trigger_may_have_no_actions(self) -> None:
        spec = TriggerSpec.model_validate({
            "name": "Draft",
            "trigger_event": "clock_in",
            "active": False,
        })
        assert spec.actions == []

    def test_blank_event_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TriggerSpec.model_validate({
                "name": "Blank",
                "trigger_event": "  ",
                "actions": [{"type": "log_activity"}],
            })

    def test_default_catalogue_is_valid(self) -> None:
        specs = default_trigger_specs()
        assert len(specs) == 7
        assert len({spec.name for spec in specs}) == 7
        assert all(spec.actions for spec in specs)


def test_execution_record_status() -> None:
    now = datetime(2025, 3, 4, tzinfo=UTC)
    ok = ActionOutcome(action_type="log_activity", status=ActionStatus.SUCCESS)
    failed = ActionOutcome(
        action_type="send_email",
        status=ActionStatus.FAILED,
        attempts=3,
        transient=True,
        error="email API returned 503",
    )
    record = ExecutionRecord(
        trigger_id=1,
        trigger_name="t",
        event_name="clock_in",
        actor_id=None,
        outcomes=(ok,),
        started_at=now,
        finished_at=now,
    )
    assert record.status == "completed"

    with_error = ExecutionRecord(
        trigger_id=1,
        trigger_name="t",
        event_name="clock_in",
        actor_id=None,
        outcomes=(ok, failed),
        started_at=now,
        finished_at=now,
    )
    assert with_error.status == "completed_with_errors"
    data = with_error.to_dict()
    assert data["outcomes"][1] == {
        "action_type": "send_email",
        "status": "failed",
        "attempts": 3,
        "transient": True,
        "error": "email API returned 503",
        "detail": None,
    }


class TestIdempotencyKey:
    @pytest.fixture
    def event(self) -> TriggerEvent:
        return TriggerEvent(
            event_name="invoice_created",
            payload={"customerId": "7", "total": 80},
            actor_id="u1",
            occurred_at=datetime(2025, 3, 4, 17, 0, tzinfo=UTC),
            metadata={"source": "web"},
        )

    def test_stable_for_the_same_action(self, event: TriggerEvent) -> None:
        assert event.idempotency_key(3, 0) == event.idempotency_key(3, 0)
        # Key order in the payload does not matter
        reordered = TriggerEvent(
            event_name=event.event_name,
            payload={"total": 80, "customerId": "7"},
            actor_id=event.actor_id,
            occurred_at=event.occurred_at,
        )
        assert reordered.idempotency_key(3, 0) == event.idempotency_key(3, 0)

    def test_differs_per_action_trigger_and_payload(self, event: TriggerEvent) -> None:
        keys = {
            event.idempotency_key(3, 0),
            event.idempotency_key(3, 1),
            event.idempotency_key(4, 0),
            TriggerEvent(
                event_name=event.event_name,
                payload={"customerId": "8", "total": 80},
                actor_id=event.actor_id,
                occurred_at=event.occurred_at,
            ).idempotency_key(3, 0),
        }
        assert len(keys) == 4
        # QuickBooks caps requestid at 50 characters
        assert all(len(key) <= 50 for key in keys)

    def test_for_action_keeps_caller_metadata(self, event: TriggerEvent) -> None:
        scoped = event.for_action(3, 1)
        assert scoped.metadata == {
            "source": "web",
            IDEMPOTENCY_KEY: event.idempotency_key(3, 1),
        }
        assert event.metadata == {"source": "web"}
