"""Pull jobs that mirror provider data into ``external_records``.

Each job walks every active credential for its provider. One user's failure
does not stop the others; the run only fails when no user could be synced.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import timedelta
from typing import Any

from pestops.exceptions import IntegrationError
from pestops.integrations.credentials import CredentialStore, Provider
from pestops.integrations.google_calendar import GoogleCalendarClient
from pestops.integrations.quickbooks import QuickBooksClient
from pestops.storage import DatabaseContext
from pestops.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

QUICKBOOKS_RESOURCES: dict[str, str] = {
    "customers": "Customer",
    "items": "Item",
    "invoices": "Invoice",
}


class SyncJobError(IntegrationError):
    """Every connected user failed during a pull job."""


async def pull_quickbooks_records(
    client: QuickBooksClient,
    get_db_context_func: Callable[[], DatabaseContext],
    user_id: str,
    resources: Iterable[str],
    clock: Clock,
) -> dict[str, int]:
    """Fetch the named QuickBooks resources and upsert them by ``Id``.

    Returns the number of records stored per resource name.
    """
    counts: dict[str, int] = {}
    for resource in resources:
        entity = QUICKBOOKS_RESOURCES[resource]
        records = await client.query(user_id, entity)
        synced_at = clock.now()
        async with get_db_context_func() as db:
            for record in records:
                if record.get("Id") is None:
                    continue
                await db.external_records.upsert(
                    provider=Provider.QUICKBOOKS.value,
                    resource_type=entity,
                    external_id=str(record["Id"]),
                    data=record,
                    synced_at=synced_at,
                    user_id=user_id,
                )
        counts[resource] = len(records)
        logger.debug(f"Pulled {len(records)} QuickBooks {entity} records for {user_id}")
    return counts


class _ProviderPullJob:
    provider: Provider

    def __init__(
        self,
        credential_store: CredentialStore,
        get_db_context_func: Callable[[], DatabaseContext],
        clock: Clock | None = None,
    ) -> None:
        self.credential_store = credential_store
        self.get_db_context_func = get_db_context_func
        self.clock = clock or SystemClock()

    async def pull_user(self, user_id: str) -> dict[str, int]:
        raise NotImplementedError

    async def __call__(self) -> dict[str, Any]:
        user_ids = await self.credential_store.list_active(self.provider)
        if not user_ids:
            logger.info(f"No active {self.provider.value} connections to sync")
            return {"users": 0, "synced": {}, "failed": {}}

        synced: dict[str, dict[str, int]] = {}
        failed: dict[str, str] = {}
        for user_id in user_ids:
            try:
                synced[user_id] = await self.pull_user(user_id)
            except IntegrationError as e:
                logger.warning(
                    f"{self.provider.value} sync failed for user {user_id}: {e}"
                )
                failed[user_id] = str(e)
                continue
            await self.credential_store.mark_synced(user_id, self.provider)

        if not synced:
            raise SyncJobError(
                f"{self.provider.value} sync failed for all {len(failed)} users",
                self.provider.value,
            )
        return {"users": len(user_ids), "synced": synced, "failed": failed}


class QuickBooksPullJob(_ProviderPullJob):
    """Mirrors customers, items and invoices of each connected company."""

    provider = Provider.QUICKBOOKS

    def __init__(
        self,
        client: QuickBooksClient,
        credential_store: CredentialStore,
        get_db_context_func: Callable[[], DatabaseContext],
        clock: Clock | None = None,
    ) -> None:
        super().__init__(credential_store, get_db_context_func, clock)
        self.client = client

    async def pull_user(self, user_id: str) -> dict[str, int]:
        return await pull_quickbooks_records(
            self.client,
            self.get_db_context_func,
            user_id,
            QUICKBOOKS_RESOURCES,
            self.clock,
        )


class GoogleCalendarPullJob(_ProviderPullJob):
    """Mirrors upcoming events from each connected primary calendar."""

    provider = Provider.GOOGLE

    def __init__(
        self,
        client: GoogleCalendarClient,
        credential_store: CredentialStore,
        get_db_context_func: Callable[[], DatabaseContext],
        clock: Clock | None = None,
        calendar_id: str = "primary",
        lookahead: timedelta = timedelta(days=30),
    ) -> None:
        super().__init__(credential_store, get_db_context_func, clock)
        self.client = client
        self.calendar_id = calendar_id
        self.lookahead = lookahead

    async def pull_user(self, user_id: str) -> dict[str, int]:
        now = self.clock.now()
        events = await self.client.list_events(
            user_id,
            self.calendar_id,
            time_min=now,
            time_max=now + self.lookahead,
        )
        async with self.get_db_context_func() as db:
            for event in events:
                if not event.get("id"):
                    continue
                await db.external_records.upsert(
                    provider=Provider.GOOGLE.value,
                    resource_type="event",
                    external_id=str(event["id"]),
                    data=event,
                    synced_at=now,
                    user_id=user_id,
                )
        return {"events": len(events)}
