"""Executor protocol shared by all workflow actions."""

import logging
from typing import Any, Protocol

from sqlalchemy.exc import DBAPIError, IntegrityError, ProgrammingError

from pestops.workflows.models import ActionResult, TriggerEvent

logger = logging.getLogger(__name__)


class ActionExecutor(Protocol):
    """Performs one kind of side effect for the workflow engine.

    Implementations report expected failures through ``ActionResult`` with
    ``transient`` set when a retry could help. Exceptions escaping
    ``execute`` are treated by the engine as permanent failures.
    """

    async def execute(self, config: Any, event: TriggerEvent) -> ActionResult:  # noqa: ANN401
        ...


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_template(template: str, payload: dict[str, Any]) -> str:
    """Fill ``{field}`` placeholders from the payload, leaving unknown ones as-is."""
    if not template:
        return template
    try:
        return template.format_map(_TemplateValues(payload))
    except (ValueError, IndexError, AttributeError, KeyError) as e:
        logger.debug(f"Template not rendered ({e}); using it verbatim")
        return template


def storage_failure(operation: str, error: Exception) -> ActionResult:
    """Classify a storage error: operational problems are worth retrying."""
    transient = isinstance(error, DBAPIError) and not isinstance(
        error, IntegrityError | ProgrammingError
    )
    logger.warning(f"{operation} failed (transient={transient}): {error}")
    return ActionResult.failed(f"{operation} failed: {error}", transient=transient)
