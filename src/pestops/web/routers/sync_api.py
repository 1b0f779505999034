"""Manual sync triggers and scheduler status."""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from pestops.integrations.credentials import CredentialStore
from pestops.sync.scheduler import SyncRunStatus, SyncScheduler
from pestops.web.dependencies import get_credential_store, get_scheduler

logger = logging.getLogger(__name__)

sync_api_router = APIRouter(prefix="/sync", tags=["Sync"])


class SyncRunResponse(BaseModel):
    job_name: str
    status: str
    trigger: str
    started_at: str
    finished_at: str
    duration_seconds: float
    detail: Any = None
    error: str | None = None


class SyncStatusResponse(BaseModel):
    scheduler_running: bool
    jobs: list[dict[str, Any]]
    metrics: dict[str, dict[str, Any]]
    integrations: list[dict[str, Any]]


class SyncHistoryResponse(BaseModel):
    runs: list[SyncRunResponse]


@sync_api_router.post("/trigger-{job_name}", response_model=SyncRunResponse)
async def trigger_sync(
    job_name: str,
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
) -> SyncRunResponse:
    """Run a sync job now and wait for it to finish."""
    result = await scheduler.trigger_now(job_name)
    if result.status is SyncRunStatus.UNKNOWN_JOB:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=result.error
        )
    if result.status is SyncRunStatus.ALREADY_RUNNING:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.error)
    return SyncRunResponse(**result.to_dict())


@sync_api_router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
    credential_store: Annotated[CredentialStore, Depends(get_credential_store)],
) -> SyncStatusResponse:
    summaries = await credential_store.summaries()
    return SyncStatusResponse(
        scheduler_running=scheduler.is_started,
        jobs=[state.to_dict() for state in scheduler.get_status()],
        metrics=scheduler.get_metrics(),
        integrations=[summary.to_dict() for summary in summaries],
    )


@sync_api_router.get("/history", response_model=SyncHistoryResponse)
async def sync_history(
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    job_name: str | None = None,
) -> SyncHistoryResponse:
    runs = scheduler.get_history(limit=limit, job_name=job_name)
    return SyncHistoryResponse(runs=[SyncRunResponse(**run.to_dict()) for run in runs])


class SyncJobUpdateRequest(BaseModel):
    interval_seconds: float | None = Field(default=None, gt=0)
    enabled: bool | None = None


@sync_api_router.patch("/jobs/{job_name}")
async def update_sync_job(
    job_name: str,
    request: SyncJobUpdateRequest,
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
) -> dict[str, Any]:
    """Change a job's interval or switch its timer on or off."""
    try:
        state = await scheduler.update_job(
            job_name, interval_seconds=request.interval_seconds, enabled=request.enabled
        )
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"no sync job named '{job_name}'",
        ) from None
    return state.to_dict()
