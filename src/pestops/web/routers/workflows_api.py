"""API endpoints for workflow triggers, events and execution history."""

import logging
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from pestops.exceptions import TriggerValidationError
from pestops.storage import ensure_utc
from pestops.web.dependencies import get_trigger_registry, get_workflow_engine
from pestops.workflows.engine import WorkflowEngine
from pestops.workflows.models import Trigger
from pestops.workflows.registry import TriggerRegistry

logger = logging.getLogger(__name__)

workflows_api_router = APIRouter(prefix="/workflows", tags=["Workflows"])


class TriggerResponse(BaseModel):
    id: int
    name: str
    description: str | None
    trigger_event: str
    conditions: dict[str, Any] | None
    actions: list[dict[str, Any]]
    priority: int
    active: bool
    created_by: str | None
    created_at: datetime | None

    @classmethod
    def from_trigger(cls, trigger: Trigger) -> "TriggerResponse":
        return cls(
            id=trigger.id,
            name=trigger.name,
            description=trigger.description,
            trigger_event=trigger.trigger_event,
            conditions=(
                trigger.conditions.model_dump(mode="json", exclude_none=True)
                if trigger.conditions
                else None
            ),
            actions=[action.model_dump(mode="json") for action in trigger.actions],
            priority=trigger.priority,
            active=trigger.active,
            created_by=trigger.created_by,
            created_at=trigger.created_at,
        )


class TriggersListResponse(BaseModel):
    triggers: list[TriggerResponse]
    total_count: int


class FireEventRequest(BaseModel):
    """A domain event to run through the workflow engine."""

    event_name: str = Field(..., min_length=1, description="e.g. clock_out")
    payload: dict[str, Any] = Field(default_factory=dict)
    actor_id: str | None = Field(None, description="User who caused the event")
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime | None = None


class FireEventResponse(BaseModel):
    event_name: str
    matched_triggers: int
    executions: list[dict[str, Any]]


class ExecutionsListResponse(BaseModel):
    executions: list[dict[str, Any]]


@workflows_api_router.get("/triggers", response_model=TriggersListResponse)
async def list_triggers(
    registry: Annotated[TriggerRegistry, Depends(get_trigger_registry)],
    include_inactive: bool = True,
) -> TriggersListResponse:
    triggers = await registry.list_triggers(include_inactive=include_inactive)
    return TriggersListResponse(
        triggers=[TriggerResponse.from_trigger(t) for t in triggers],
        total_count=len(triggers),
    )


@workflows_api_router.post(
    "/triggers",
    response_model=TriggerResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_trigger(
    registry: Annotated[TriggerRegistry, Depends(get_trigger_registry)],
    definition: Annotated[dict[str, Any], Body(...)],
) -> TriggerResponse:
    """Create a trigger from a JSON definition.

    Validation problems are returned as 422 with one message per problem.
    """
    try:
        trigger = await registry.create_trigger(definition)
    except TriggerValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={"message": str(e), "errors": e.errors},
        ) from e
    logger.info(f"Created workflow trigger '{trigger.name}' ({trigger.id})")
    return TriggerResponse.from_trigger(trigger)


@workflows_api_router.get("/triggers/{trigger_id}", response_model=TriggerResponse)
async def get_trigger(
    trigger_id: int,
    registry: Annotated[TriggerRegistry, Depends(get_trigger_registry)],
) -> TriggerResponse:
    trigger = await registry.get_trigger(trigger_id)
    if trigger is None:
        raise HTTPException(status_code=404, detail="Trigger not found")
    return TriggerResponse.from_trigger(trigger)


@workflows_api_router.post(
    "/triggers/{trigger_id}/deactivate", response_model=TriggerResponse
)
async def deactivate_trigger(
    trigger_id: int,
    registry: Annotated[TriggerRegistry, Depends(get_trigger_registry)],
) -> TriggerResponse:
    if not await registry.deactivate(trigger_id):
        raise HTTPException(status_code=404, detail="Trigger not found")
    trigger = await registry.get_trigger(trigger_id)
    assert trigger is not None
    return TriggerResponse.from_trigger(trigger)


@workflows_api_router.post("/events", response_model=FireEventResponse)
async def fire_event(
    request: FireEventRequest,
    engine: Annotated[WorkflowEngine, Depends(get_workflow_engine)],
) -> FireEventResponse:
    records = await engine.trigger(
        request.event_name,
        request.payload,
        actor_id=request.actor_id,
        metadata=request.metadata,
        occurred_at=ensure_utc(request.occurred_at),
    )
    return FireEventResponse(
        event_name=request.event_name,
        matched_triggers=len(records),
        executions=[record.to_dict() for record in records],
    )


@workflows_api_router.get("/executions", response_model=ExecutionsListResponse)
async def list_executions(
    engine: Annotated[WorkflowEngine, Depends(get_workflow_engine)],
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    trigger_id: int | None = None,
    event_name: str | None = None,
) -> ExecutionsListResponse:
    rows = await engine.list_executions(
        limit=limit, trigger_id=trigger_id, event_name=event_name
    )
    return ExecutionsListResponse(executions=rows)
