"""Executors that push workflow events to QuickBooks and Google Calendar."""

import logging
from collections.abc import Callable
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError

from pestops.actions.base import storage_failure
from pestops.exceptions import (
    ConfigurationError,
    IntegrationError,
    ReauthorizationRequiredError,
    TransientIntegrationError,
)
from pestops.integrations.credentials import Provider
from pestops.integrations.google_calendar import (
    CalendarEventSpec,
    GoogleCalendarClient,
)
from pestops.integrations.quickbooks import InvoiceDraft, QuickBooksClient, TimeEntry
from pestops.storage import DatabaseContext
from pestops.sync.jobs import pull_quickbooks_records
from pestops.utils.clock import Clock, SystemClock
from pestops.workflows.models import (
    IDEMPOTENCY_KEY,
    ActionResult,
    SyncGoogleCalendarConfig,
    SyncQuickBooksConfig,
    TriggerEvent,
)

logger = logging.getLogger(__name__)

PULL_RESOURCES: dict[str, tuple[str, ...]] = {
    "customers": ("customers",),
    "items": ("items",),
    "full": ("customers", "items", "invoices"),
}

# Payload keys that may carry the Google event id of an existing appointment
CALENDAR_EVENT_ID_FIELDS = ("calendarEventId", "googleEventId", "googleCalendarEventId")


def integration_failure(action: str, error: Exception) -> ActionResult:
    """Map an integration exception onto a retry-aware action result."""
    if isinstance(error, ReauthorizationRequiredError):
        logger.warning(f"{action}: {error.provider} needs to be reconnected: {error}")
        return ActionResult.failed(f"reauthorization required: {error}")
    if isinstance(error, TransientIntegrationError):
        logger.info(f"{action}: transient {error.provider} failure: {error}")
        return ActionResult.failed(str(error), transient=True)
    if isinstance(error, IntegrationError):
        logger.warning(f"{action}: {error.provider} rejected the request: {error}")
        return ActionResult.failed(str(error))
    if isinstance(error, ConfigurationError):
        return ActionResult.failed(f"configuration error: {error}")
    return ActionResult.failed(f"invalid payload: {error}")


class _IntegrationExecutor:
    def __init__(
        self,
        get_db_context_func: Callable[[], DatabaseContext],
        integration_user_id: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.get_db_context_func = get_db_context_func
        self.integration_user_id = integration_user_id
        self.clock = clock or SystemClock()

    def resolve_user(self, event: TriggerEvent) -> str | None:
        """Whose provider connection to act through."""
        return (
            self.integration_user_id
            or event.metadata.get("integration_user_id")
            or event.actor_id
            or event.payload.get("userId")
        )

    async def _remember(
        self,
        provider: Provider,
        resource_type: str,
        record: dict[str, Any],
        id_key: str,
        user_id: str,
    ) -> None:
        if record.get(id_key) is None:
            return
        async with self.get_db_context_func() as db:
            await db.external_records.upsert(
                provider=provider.value,
                resource_type=resource_type,
                external_id=str(record[id_key]),
                data=record,
                synced_at=self.clock.now(),
                user_id=user_id,
            )


class SyncQuickBooksExecutor(_IntegrationExecutor):
    """Pushes invoices and timesheets, or pulls reference data on demand."""

    def __init__(
        self,
        client: QuickBooksClient,
        get_db_context_func: Callable[[], DatabaseContext],
        timezone: str = "UTC",
        integration_user_id: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(get_db_context_func, integration_user_id, clock)
        self.client = client
        self.timezone = ZoneInfo(timezone)

    async def execute(
        self, config: SyncQuickBooksConfig, event: TriggerEvent
    ) -> ActionResult:
        user_id = self.resolve_user(event)
        if not user_id:
            return ActionResult.failed("no user to sync QuickBooks for")
        try:
            return await self._run(config, event, user_id)
        except (IntegrationError, ConfigurationError, ValueError) as e:
            return integration_failure("sync_quickbooks", e)
        except SQLAlchemyError as e:
            return storage_failure("sync_quickbooks", e)

    async def _run(
        self, config: SyncQuickBooksConfig, event: TriggerEvent, user_id: str
    ) -> ActionResult:
        if config.sync_type == "invoice":
            draft = InvoiceDraft.from_payload(event.payload)
            created = await self.client.create_invoice(
                user_id, draft, request_id=event.metadata.get(IDEMPOTENCY_KEY)
            )
            await self._remember(Provider.QUICKBOOKS, "Invoice", created, "Id", user_id)
            return ActionResult.ok(f"QuickBooks invoice {created.get('Id')} created")

        if config.sync_type in ("time_entry", "daily_timesheet"):
            entry = TimeEntry.from_payload(
                event.payload, event.occurred_at.astimezone(self.timezone)
            )
            created = await self.client.create_time_activity(
                user_id, entry, request_id=event.metadata.get(IDEMPOTENCY_KEY)
            )
            await self._remember(
                Provider.QUICKBOOKS, "TimeActivity", created, "Id", user_id
            )
            return ActionResult.ok(
                f"QuickBooks time activity {created.get('Id')} "
                f"({entry.hours:g}h on {entry.txn_date.isoformat()})"
            )

        counts = await pull_quickbooks_records(
            self.client,
            self.get_db_context_func,
            user_id,
            PULL_RESOURCES[config.sync_type],
            self.clock,
        )
        summary = ", ".join(f"{count} {name}" for name, count in counts.items())
        return ActionResult.ok(f"pulled {summary}")


class SyncGoogleCalendarExecutor(_IntegrationExecutor):
    """Creates, tags and removes appointments on the connected calendar."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        get_db_context_func: Callable[[], DatabaseContext],
        timezone: str = "UTC",
        integration_user_id: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(get_db_context_func, integration_user_id, clock)
        self.client = client
        self.timezone = timezone

    @staticmethod
    def linked_event_id(payload: dict[str, Any]) -> str | None:
        for key in CALENDAR_EVENT_ID_FIELDS:
            if payload.get(key):
                return str(payload[key])
        return None

    async def execute(
        self, config: SyncGoogleCalendarConfig, event: TriggerEvent
    ) -> ActionResult:
        user_id = self.resolve_user(event)
        if not user_id:
            return ActionResult.failed("no user to sync Google Calendar for")
        try:
            if config.operation == "create_event":
                return await self._create(config, event, user_id)
            if config.operation == "update_event":
                return await self._update(config, event, user_id)
            return await self._delete(config, event, user_id)
        except (IntegrationError, ConfigurationError, ValueError) as e:
            return integration_failure("sync_google_calendar", e)
        except SQLAlchemyError as e:
            return storage_failure("sync_google_calendar", e)

    async def _create(
        self, config: SyncGoogleCalendarConfig, event: TriggerEvent, user_id: str
    ) -> ActionResult:
        spec = CalendarEventSpec.from_payload(event.payload, self.timezone)
        created = await self.client.create_event(
            user_id, spec, config.calendar_id, send_invites=config.send_invites
        )
        await self._remember(Provider.GOOGLE, "event", created, "id", user_id)
        return ActionResult.ok(f"calendar event {created.get('id')} created")

    async def _update(
        self, config: SyncGoogleCalendarConfig, event: TriggerEvent, user_id: str
    ) -> ActionResult:
        event_id = self.linked_event_id(event.payload)
        if not event_id:
            return ActionResult.ok("skipped: no calendar event linked")
        changes: dict[str, Any] = {}
        if config.update_status:
            changes["extendedProperties"] = {
                "private": {"status": config.update_status}
            }
        if not changes:
            return ActionResult.ok(f"calendar event {event_id} unchanged")
        updated = await self.client.update_event(
            user_id, event_id, changes, config.calendar_id
        )
        await self._remember(Provider.GOOGLE, "event", updated, "id", user_id)
        return ActionResult.ok(
            f"calendar event {event_id} marked {config.update_status}"
        )

    async def _delete(
        self, config: SyncGoogleCalendarConfig, event: TriggerEvent, user_id: str
    ) -> ActionResult:
        event_id = self.linked_event_id(event.payload)
        if not event_id:
            return ActionResult.failed("payload has no calendar event id to delete")
        await self.client.delete_event(user_id, event_id, config.calendar_id)
        return ActionResult.ok(f"calendar event {event_id} deleted")
