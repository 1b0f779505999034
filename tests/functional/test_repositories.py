"""Functional tests for the insert-or-update paths shared by the repositories."""

from collections.abc import Callable

from pestops.integrations.credentials import CredentialStore, Provider
from pestops.storage import DatabaseContext
from pestops.utils.clock import MockClock
from tests.helpers import seed_credential


async def test_entity_status_is_inserted_then_updated(
    get_db_context_func: Callable[[], DatabaseContext], mock_clock: MockClock
) -> None:
    async with get_db_context_func() as db:
        await db.statuses.set_status("job", "j-1", "scheduled", mock_clock.now())
        await db.statuses.set_status("job", "j-1", "completed", mock_clock.now(), "tech-1")
        await db.statuses.set_status("job", "j-2", "scheduled", mock_clock.now())

    async with get_db_context_func() as db:
        assert await db.statuses.get_status("job", "j-1") == "completed"
        assert await db.statuses.get_status("job", "j-2") == "scheduled"


async def test_metric_value_is_replaced(
    get_db_context_func: Callable[[], DatabaseContext], mock_clock: MockClock
) -> None:
    async with get_db_context_func() as db:
        await db.metrics.set_value("open_invoices", "2025-03", 4, mock_clock.now())
        await db.metrics.set_value("open_invoices", "2025-03", 2, mock_clock.now())
        assert await db.metrics.get("open_invoices", "2025-03") == 2
        assert await db.metrics.get("open_invoices", "2025-04") is None


async def test_external_record_upsert_and_delete(
    get_db_context_func: Callable[[], DatabaseContext], mock_clock: MockClock
) -> None:
    async with get_db_context_func() as db:
        for name in ("Acme", "Acme Pest Co"):
            await db.external_records.upsert(
                provider="quickbooks",
                resource_type="Customer",
                external_id="58",
                data={"Id": "58", "DisplayName": name},
                synced_at=mock_clock.now(),
            )
        assert await db.external_records.count("quickbooks", "Customer") == 1
        row = await db.external_records.get("quickbooks", "Customer", "58")
        assert row is not None and row["data"]["DisplayName"] == "Acme Pest Co"

        assert await db.external_records.delete("quickbooks", "Customer", "58") is True
        assert await db.external_records.delete("quickbooks", "Customer", "58") is False


async def test_credentials_found_by_realm(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    await seed_credential(credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now())
    await seed_credential(
        credential_store, "u2", Provider.QUICKBOOKS, mock_clock.now(), realm_id="realm-2"
    )
    await seed_credential(credential_store, "u3", Provider.QUICKBOOKS, mock_clock.now())
    await credential_store.deactivate("u3", Provider.QUICKBOOKS, "disconnected by user")

    assert await credential_store.users_for_realm(Provider.QUICKBOOKS, "realm-1") == ["u1"]
    assert await credential_store.users_for_realm(Provider.QUICKBOOKS, "realm-9") == []
