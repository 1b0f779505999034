import logging
from collections.abc import AsyncGenerator
from typing import Any

from fastapi import HTTPException, Request, status

from pestops.config_models import AppConfig
from pestops.integrations.credentials import CredentialStore
from pestops.integrations.quickbooks_webhooks import QuickBooksWebhookHandler
from pestops.integrations.tokens import TokenLifecycleManager
from pestops.storage import DatabaseContext, get_db_context
from pestops.sync.scheduler import SyncScheduler
from pestops.utils.crypto import TokenCipher
from pestops.workflows.engine import WorkflowEngine
from pestops.workflows.registry import TriggerRegistry

logger = logging.getLogger(__name__)


def _from_state(request: Request, attribute: str) -> Any:  # noqa: ANN401
    component = getattr(request.app.state, attribute, None)
    if component is None:
        logger.error(f"{attribute} not found in app state.")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{attribute} not configured or available.",
        )
    return component


async def get_db(request: Request) -> AsyncGenerator[DatabaseContext]:
    """FastAPI dependency to get a DatabaseContext."""
    engine = _from_state(request, "database_engine")
    async with get_db_context(engine) as db_context:
        yield db_context


async def get_config(request: Request) -> AppConfig:
    return _from_state(request, "config")


async def get_workflow_engine(request: Request) -> WorkflowEngine:
    return _from_state(request, "workflow_engine")


async def get_trigger_registry(request: Request) -> TriggerRegistry:
    return _from_state(request, "trigger_registry")


async def get_scheduler(request: Request) -> SyncScheduler:
    return _from_state(request, "sync_scheduler")


async def get_token_manager(request: Request) -> TokenLifecycleManager:
    return _from_state(request, "token_manager")


async def get_credential_store(request: Request) -> CredentialStore:
    return _from_state(request, "credential_store")


async def get_cipher(request: Request) -> TokenCipher:
    return _from_state(request, "token_cipher")


async def get_quickbooks_webhooks(request: Request) -> QuickBooksWebhookHandler:
    return _from_state(request, "quickbooks_webhooks")
