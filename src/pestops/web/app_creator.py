import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

from fastapi import FastAPI

from pestops import __version__
from pestops.web.routers.health import health_router
from pestops.web.routers.integrations_api import integrations_api_router
from pestops.web.routers.sync_api import sync_api_router
from pestops.web.routers.webhooks import webhooks_router
from pestops.web.routers.workflows_api import workflows_api_router

logger = logging.getLogger(__name__)


def create_app(
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[Any]] | None = None,
    **state: Any,  # noqa: ANN401
) -> FastAPI:
    """Build the FastAPI app.

    Keyword arguments are placed on ``app.state`` (``database_engine``,
    ``workflow_engine``, ``sync_scheduler`` and so on), where the
    dependencies in ``pestops.web.dependencies`` look them up.
    """
    app = FastAPI(
        title="PestOps Workflow & Integration Service",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )
    for name, value in state.items():
        setattr(app.state, name, value)

    app.include_router(health_router)
    app.include_router(workflows_api_router)
    app.include_router(sync_api_router)
    app.include_router(webhooks_router)
    app.include_router(integrations_api_router)
    logger.debug(f"FastAPI app created with state: {sorted(state)}")
    return app


