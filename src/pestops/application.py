"""Wiring and lifecycle of the whole service."""

import asyncio
import logging
from collections.abc import Callable

import httpx
import uvicorn
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine

from pestops.actions.base import ActionExecutor
from pestops.actions.integrations import (
    SyncGoogleCalendarExecutor,
    SyncQuickBooksExecutor,
)
from pestops.actions.notifications import SendEmailExecutor, SendNotificationExecutor
from pestops.actions.records import (
    LogActivityExecutor,
    UpdateMetricExecutor,
    UpdateStatusExecutor,
)
from pestops.config_models import AppConfig
from pestops.integrations.credentials import CredentialStore
from pestops.integrations.google_calendar import GoogleCalendarClient
from pestops.integrations.mailer import EmailSender
from pestops.integrations.oauth import providers_from_config
from pestops.integrations.quickbooks import QuickBooksClient
from pestops.integrations.quickbooks_webhooks import QuickBooksWebhookHandler
from pestops.integrations.tokens import TokenLifecycleManager
from pestops.storage import (
    DatabaseContext,
    create_engine_with_sqlite_optimizations,
    get_db_context,
    init_db,
)
from pestops.sync.jobs import GoogleCalendarPullJob, QuickBooksPullJob
from pestops.sync.scheduler import SyncScheduler
from pestops.utils.clock import Clock, SystemClock
from pestops.utils.crypto import TokenCipher
from pestops.web.app_creator import create_app
from pestops.workflows.engine import WorkflowEngine
from pestops.workflows.models import ActionType
from pestops.workflows.registry import TriggerRegistry

logger = logging.getLogger(__name__)


def build_executors(
    config: AppConfig,
    get_db_context_func: Callable[[], DatabaseContext],
    http_client: httpx.AsyncClient,
    quickbooks: QuickBooksClient,
    google_calendar: GoogleCalendarClient,
    clock: Clock,
) -> dict[str, ActionExecutor]:
    """One executor per action type tag."""
    timezone = config.workflow.timezone
    owner = config.workflow.integration_user_id
    return {
        ActionType.SYNC_QUICKBOOKS.value: SyncQuickBooksExecutor(
            quickbooks, get_db_context_func, timezone, owner, clock
        ),
        ActionType.SYNC_GOOGLE_CALENDAR.value: SyncGoogleCalendarExecutor(
            google_calendar, get_db_context_func, timezone, owner, clock
        ),
        ActionType.SEND_EMAIL.value: SendEmailExecutor(
            EmailSender(
                http_client,
                config.email,
                timeout=config.tokens.request_timeout_seconds,
            )
        ),
        ActionType.SEND_NOTIFICATION.value: SendNotificationExecutor(
            get_db_context_func, http_client
        ),
        ActionType.LOG_ACTIVITY.value: LogActivityExecutor(get_db_context_func),
        ActionType.UPDATE_STATUS.value: UpdateStatusExecutor(get_db_context_func),
        ActionType.UPDATE_METRIC.value: UpdateMetricExecutor(
            get_db_context_func, timezone
        ),
    }


class Application:
    """
    Owns every long-lived component: database engine, shared HTTP client,
    token manager, provider clients, trigger registry, workflow engine and
    sync scheduler. ``setup()`` builds them, ``start()``/``stop()`` control
    the background scheduler and ``serve()`` runs the web server until
    shutdown is requested.
    """

    def __init__(
        self,
        config: AppConfig,
        clock: Clock | None = None,
        http_client: httpx.AsyncClient | None = None,
        database_engine: AsyncEngine | None = None,
    ) -> None:
        self.config = config
        self.clock = clock or SystemClock()
        self.shutdown_event = asyncio.Event()
        self._owns_http_client = http_client is None
        self._owns_database_engine = database_engine is None
        self.http_client = http_client
        self.database_engine = database_engine

        self.cipher: TokenCipher | None = None
        self.credential_store: CredentialStore | None = None
        self.token_manager: TokenLifecycleManager | None = None
        self.quickbooks: QuickBooksClient | None = None
        self.google_calendar: GoogleCalendarClient | None = None
        self.quickbooks_webhooks: QuickBooksWebhookHandler | None = None
        self.registry: TriggerRegistry | None = None
        self.workflow_engine: WorkflowEngine | None = None
        self.scheduler: SyncScheduler | None = None
        self.fastapi_app: FastAPI | None = None
        self._is_shutdown_complete = False

    def get_db_context(self) -> DatabaseContext:
        if self.database_engine is None:
            raise RuntimeError("Application.setup() has not been run")
        return get_db_context(self.database_engine)

    async def setup(self, bootstrap_triggers: bool | None = None) -> None:
        """Initializes the database and wires up all components."""
        config = self.config
        if self.database_engine is None:
            self.database_engine = create_engine_with_sqlite_optimizations(
                config.database_url
            )
        await init_db(self.database_engine)

        if self.http_client is None:
            self.http_client = httpx.AsyncClient()
            logger.info("Shared httpx.AsyncClient created.")

        self.cipher = TokenCipher(config.token_encryption_key)
        self.credential_store = CredentialStore(
            self.get_db_context, self.cipher, self.clock
        )
        providers = providers_from_config(config)
        if not providers:
            logger.warning("No OAuth providers configured; integrations are disabled")
        self.token_manager = TokenLifecycleManager(
            self.credential_store,
            self.http_client,
            providers,
            config.tokens,
            self.clock,
        )
        timeout = config.tokens.request_timeout_seconds
        self.quickbooks = QuickBooksClient(
            self.http_client,
            self.token_manager,
            api_base_url=config.quickbooks.api_base_url,
            minor_version=config.quickbooks.minor_version,
            timeout=timeout,
        )
        self.google_calendar = GoogleCalendarClient(
            self.http_client, self.token_manager, timeout=timeout
        )
        self.quickbooks_webhooks = QuickBooksWebhookHandler(
            self.quickbooks, self.credential_store, self.get_db_context, self.clock
        )

        self.registry = TriggerRegistry(self.get_db_context, self.clock)
        self.workflow_engine = WorkflowEngine(
            self.registry,
            build_executors(
                config,
                self.get_db_context,
                self.http_client,
                self.quickbooks,
                self.google_calendar,
                self.clock,
            ),
            self.get_db_context,
            config.workflow,
            self.clock,
        )
        if bootstrap_triggers is None:
            bootstrap_triggers = config.workflow.bootstrap_default_triggers
        if bootstrap_triggers:
            await self.registry.bootstrap_defaults()

        self.scheduler = self._build_scheduler()
        self.fastapi_app = create_app(
            config=config,
            database_engine=self.database_engine,
            token_cipher=self.cipher,
            credential_store=self.credential_store,
            token_manager=self.token_manager,
            trigger_registry=self.registry,
            workflow_engine=self.workflow_engine,
            sync_scheduler=self.scheduler,
            quickbooks_webhooks=self.quickbooks_webhooks,
        )
        logger.info("Application setup complete.")

    def _build_scheduler(self) -> SyncScheduler:
        assert self.credential_store and self.quickbooks and self.google_calendar
        scheduler_config = self.config.scheduler
        scheduler = SyncScheduler(
            clock=self.clock,
            business_hours=scheduler_config.business_hours,
            timezone=self.config.workflow.timezone,
            history_limit=scheduler_config.history_limit,
        )
        job_functions = {
            "quickbooks": QuickBooksPullJob(
                self.quickbooks, self.credential_store, self.get_db_context, self.clock
            ),
            "google_calendar": GoogleCalendarPullJob(
                self.google_calendar,
                self.credential_store,
                self.get_db_context,
                self.clock,
            ),
        }
        for name, job_config in scheduler_config.jobs.items():
            run_fn = job_functions.get(name)
            if run_fn is None:
                logger.warning(f"No sync job implementation named '{name}'; skipping")
                continue
            scheduler.register_job(
                name,
                job_config.interval_seconds,
                run_fn,
                business_hours_only=job_config.business_hours_only,
                enabled=job_config.enabled,
            )
        return scheduler

    async def start(self) -> None:
        if self.scheduler is None:
            raise RuntimeError("Application.setup() has not been run")
        if self.config.scheduler.enabled:
            await self.scheduler.start()
        else:
            logger.info("Sync scheduler disabled by configuration")

    async def serve(self) -> None:
        """Run the web server and scheduler until shutdown is requested."""
        if self.fastapi_app is None:
            raise RuntimeError("Application.setup() has not been run")
        await self.start()
        server = uvicorn.Server(
            uvicorn.Config(
                self.fastapi_app,
                host=self.config.server.host,
                port=self.config.server.port,
                log_level="info",
            )
        )
        # Signals are handled by the application, not by uvicorn
        server.install_signal_handlers = lambda: None  # type: ignore[method-assign]
        server_task = asyncio.create_task(server.serve())
        logger.info(
            f"Web server running on http://{self.config.server.host}:"
            f"{self.config.server.port}"
        )

        shutdown_wait = asyncio.create_task(self.shutdown_event.wait())
        await asyncio.wait(
            {server_task, shutdown_wait}, return_when=asyncio.FIRST_COMPLETED
        )
        logger.info("Shutdown requested. Stopping services...")
        server.should_exit = True
        await server_task
        shutdown_wait.cancel()
        await self.stop()

    def initiate_shutdown(self, signal_name: str) -> None:
        """Sets the shutdown event to begin graceful shutdown."""
        if not self.shutdown_event.is_set():
            logger.warning(f"Received signal {signal_name}. Initiating shutdown...")
            self.shutdown_event.set()
        else:
            logger.warning(
                f"Shutdown already in progress. Signal {signal_name} received again."
            )

    async def stop(self) -> None:
        """Gracefully stops all managed services."""
        if self._is_shutdown_complete:
            return
        self.shutdown_event.set()
        if self.scheduler:
            await self.scheduler.stop()
        if self.http_client and self._owns_http_client:
            await self.http_client.aclose()
            logger.info("Shared httpx client closed.")
        if self.database_engine and self._owns_database_engine:
            await self.database_engine.dispose()
        self._is_shutdown_complete = True
        logger.info("Application stopped.")

    def is_shutdown_complete(self) -> bool:
        return self._is_shutdown_complete
