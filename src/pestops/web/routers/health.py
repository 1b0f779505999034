import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)
health_router = APIRouter(tags=["Health"])


@health_router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(request: Request) -> JSONResponse:
    """Checks database reachability and whether the sync scheduler is running."""
    engine = getattr(request.app.state, "database_engine", None)
    if engine is None:
        return JSONResponse(
            content={"status": "unhealthy", "reason": "Database not initialized"},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning(f"Health check failing, database unreachable: {e}")
        return JSONResponse(
            content={"status": "unhealthy", "reason": "Database unreachable"},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    scheduler = getattr(request.app.state, "sync_scheduler", None)
    return JSONResponse(
        content={
            "status": "ok",
            "scheduler_running": bool(scheduler and scheduler.is_started),
        },
        status_code=status.HTTP_200_OK,
    )
