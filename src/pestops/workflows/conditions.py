"""Condition evaluation for workflow triggers.

Evaluation fails closed: a missing field, an incomparable value or an
unknown operator makes the clause false. Nothing here raises.
"""

import logging
import operator
from collections.abc import Callable
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from pestops.workflows.models import (
    ComparisonOperator,
    FieldCondition,
    TimeWindow,
    TriggerConditions,
    TriggerEvent,
)

logger = logging.getLogger(__name__)

MISSING = object()

_ORDERING: dict[ComparisonOperator, Callable[[Any, Any], bool]] = {
    ComparisonOperator.LESS_THAN: operator.lt,
    ComparisonOperator.GREATER_THAN: operator.gt,
    ComparisonOperator.GREATER_THAN_OR_EQUAL: operator.ge,
    ComparisonOperator.LESS_THAN_OR_EQUAL: operator.le,
}


def get_nested_value(data: Any, key_path: str) -> Any:  # noqa: ANN401
    """Get value from nested dict using dot notation (e.g., 'material.totalCost').

    Returns the module sentinel when any segment is absent, so that a field
    explicitly set to None is still distinguishable from a missing one.
    """
    value = data
    for key in key_path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return MISSING
    return value


def as_number(value: Any) -> float | None:  # noqa: ANN401
    """Numbers and numeric strings become floats; anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


class ConditionEvaluator:
    """Evaluates TriggerConditions against a TriggerEvent."""

    def __init__(self, timezone: str = "UTC") -> None:
        self.timezone = ZoneInfo(timezone)

    def matches(
        self, conditions: TriggerConditions | None, event: TriggerEvent
    ) -> bool:
        """True when every clause holds. No conditions means match."""
        if conditions is None:
            return True

        if conditions.actor_id is not None and conditions.actor_id != event.actor_id:
            return False

        if conditions.time_window is not None and not self.in_time_window(
            conditions.time_window, event.occurred_at
        ):
            return False

        return all(
            self.check_field(condition, event.payload)
            for condition in conditions.field_conditions
        )

    def in_time_window(self, window: TimeWindow, occurred_at: datetime) -> bool:
        hour = occurred_at.astimezone(self.timezone).hour
        if window.start <= window.end:
            return window.start <= hour <= window.end
        # Window wraps past midnight, e.g. 22-5
        return hour >= window.start or hour <= window.end

    def check_field(self, condition: FieldCondition, payload: dict[str, Any]) -> bool:
        actual = get_nested_value(payload, condition.field)
        if actual is MISSING:
            logger.debug(
                f"Field '{condition.field}' missing from payload; condition does not match"
            )
            return False

        expected = condition.value
        if condition.operator is ComparisonOperator.EQUALS:
            if actual == expected:
                return True
            actual_num, expected_num = as_number(actual), as_number(expected)
            return (
                actual_num is not None
                and expected_num is not None
                and actual_num == expected_num
            )

        compare = _ORDERING.get(condition.operator)
        if compare is None:
            logger.warning(f"Unsupported operator {condition.operator!r}")
            return False

        actual_num, expected_num = as_number(actual), as_number(expected)
        if actual_num is not None and expected_num is not None:
            return compare(actual_num, expected_num)
        if isinstance(actual, str) and isinstance(expected, str):
            return compare(actual, expected)

        logger.debug(
            f"Cannot compare {actual!r} with {expected!r} for field '{condition.field}'"
        )
        return False
