"""Tests for token refresh, single-flight and reauthorization handling."""

import asyncio
from datetime import timedelta

import httpx
import pytest
from cryptography.fernet import Fernet

from pestops.integrations.credentials import CredentialStore, Provider
from pestops.integrations.oauth import GOOGLE_TOKEN_URL, QUICKBOOKS_TOKEN_URL
from pestops.integrations.tokens import (
    AccessGranted,
    ReauthorizationRequired,
    TokenUnavailable,
)
from pestops.utils.clock import MockClock
from pestops.utils.crypto import TokenCipher
from tests.helpers import (
    ScriptedTransport,
    json_reply,
    make_token_manager,
    request_form,
    seed_credential,
    wait_for,
)

REFRESHED = {
    "access_token": "new-access",
    "refresh_token": "rotated-refresh",
    "expires_in": 3600,
    "token_type": "bearer",
}


async def test_fresh_token_is_returned_without_io(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    transport = ScriptedTransport()
    await seed_credential(
        credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now(), timedelta(minutes=10)
    )
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        result = await manager.get_valid_access_token("u1", Provider.QUICKBOOKS)

    assert result == AccessGranted("stored-access", "realm-1")
    assert transport.requests == []


async def test_token_inside_margin_is_refreshed(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    """A token with less than five minutes left counts as expired."""
    transport = ScriptedTransport()
    transport.add("POST", QUICKBOOKS_TOKEN_URL, json_reply(200, REFRESHED))
    await seed_credential(
        credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now(), timedelta(minutes=4)
    )
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        result = await manager.get_valid_access_token("u1", "quickbooks")

    assert result == AccessGranted("new-access", "realm-1")
    (request,) = transport.requests_to(QUICKBOOKS_TOKEN_URL)
    assert request_form(request) == {
        "grant_type": "refresh_token",
        "refresh_token": "stored-refresh",
    }
    # QuickBooks takes client credentials as HTTP Basic auth
    assert request.headers["Authorization"].startswith("Basic ")

    stored = await credential_store.get("u1", Provider.QUICKBOOKS)
    assert stored is not None
    assert stored.access_token == "new-access"
    assert stored.refresh_token == "rotated-refresh"
    assert stored.expires_at == mock_clock.now() + timedelta(seconds=3600)


async def test_concurrent_callers_share_one_refresh(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    """Two callers seeing the same expired token cause exactly one token request."""
    transport = ScriptedTransport(delay=0.05)
    transport.add("POST", QUICKBOOKS_TOKEN_URL, json_reply(200, REFRESHED))
    await seed_credential(
        credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now(), timedelta(seconds=-30)
    )
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        first, second = await asyncio.gather(
            manager.get_valid_access_token("u1", Provider.QUICKBOOKS),
            manager.get_valid_access_token("u1", Provider.QUICKBOOKS),
        )

    assert first == second == AccessGranted("new-access", "realm-1")
    assert len(transport.requests_to(QUICKBOOKS_TOKEN_URL)) == 1


async def test_invalid_grant_deactivates_without_retry(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    transport = ScriptedTransport()
    transport.add(
        "POST",
        QUICKBOOKS_TOKEN_URL,
        json_reply(400, {"error": "invalid_grant", "error_description": "expired"}),
    )
    await seed_credential(
        credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now(), timedelta(0)
    )
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        result = await manager.get_valid_access_token("u1", Provider.QUICKBOOKS)
        assert isinstance(result, ReauthorizationRequired)
        assert "invalid_grant" in result.reason
        assert mock_clock.sleeps == []
        assert len(transport.requests) == 1

        stored = await credential_store.get("u1", Provider.QUICKBOOKS)
        assert stored is not None
        assert stored.is_active is False
        assert stored.last_error and "invalid_grant" in stored.last_error

        # Later calls answer from storage without contacting the provider
        again = await manager.get_valid_access_token("u1", Provider.QUICKBOOKS)
        assert isinstance(again, ReauthorizationRequired)
        assert len(transport.requests) == 1


async def test_transient_failures_back_off_then_succeed(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    transport = ScriptedTransport()
    transport.add(
        "POST",
        QUICKBOOKS_TOKEN_URL,
        json_reply(503),
        json_reply(503),
        json_reply(200, REFRESHED),
    )
    await seed_credential(
        credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now(), timedelta(0)
    )
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        result = await manager.get_valid_access_token("u1", Provider.QUICKBOOKS)

    assert isinstance(result, AccessGranted)
    assert len(transport.requests) == 3
    assert mock_clock.sleeps == [1.0, 2.0]


async def test_transient_failures_exhaust_attempts(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    transport = ScriptedTransport()
    transport.add(
        "POST", QUICKBOOKS_TOKEN_URL, httpx.ConnectError("connection refused")
    )
    await seed_credential(
        credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now(), timedelta(0)
    )
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        result = await manager.get_valid_access_token("u1", Provider.QUICKBOOKS)

    assert isinstance(result, TokenUnavailable)
    assert result.transient is True
    assert len(transport.requests) == 3
    # The credential is still usable once the provider recovers
    stored = await credential_store.get("u1", Provider.QUICKBOOKS)
    assert stored is not None and stored.is_active


async def test_other_rejection_is_not_transient(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    transport = ScriptedTransport()
    transport.add("POST", QUICKBOOKS_TOKEN_URL, json_reply(400, {"error": "invalid_request"}))
    await seed_credential(
        credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now(), timedelta(0)
    )
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        result = await manager.get_valid_access_token("u1", Provider.QUICKBOOKS)

    assert result == TokenUnavailable(
        "quickbooks token endpoint returned 400 (invalid_request)", transient=False
    )
    assert len(transport.requests) == 1


async def test_google_refresh_keeps_refresh_token(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    """Google omits refresh_token on refresh; the stored one must survive."""
    transport = ScriptedTransport()
    transport.add(
        "POST",
        GOOGLE_TOKEN_URL,
        json_reply(200, {"access_token": "g-new", "expires_in": 3599}),
    )
    await seed_credential(
        credential_store, "u1", Provider.GOOGLE, mock_clock.now(), timedelta(0)
    )
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        result = await manager.get_valid_access_token("u1", Provider.GOOGLE)

    assert result == AccessGranted("g-new", None)
    (request,) = transport.requests
    form = request_form(request)
    assert form["client_id"] == "google-client"
    assert form["client_secret"] == "google-secret"
    stored = await credential_store.get("u1", Provider.GOOGLE)
    assert stored is not None
    assert stored.refresh_token == "stored-refresh"


async def test_missing_credential_requires_connection(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    transport = ScriptedTransport()
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        result = await manager.get_valid_access_token("nobody", Provider.GOOGLE)
    assert result == ReauthorizationRequired("google is not connected")


async def test_credential_without_refresh_token_is_deactivated(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    transport = ScriptedTransport()
    await seed_credential(
        credential_store,
        "u1",
        Provider.GOOGLE,
        mock_clock.now(),
        timedelta(0),
        refresh_token=None,
    )
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        result = await manager.get_valid_access_token("u1", Provider.GOOGLE)

    assert isinstance(result, ReauthorizationRequired)
    assert transport.requests == []
    stored = await credential_store.get("u1", Provider.GOOGLE)
    assert stored is not None and not stored.is_active


async def test_force_refresh_ignores_expiry(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    transport = ScriptedTransport()
    transport.add("POST", QUICKBOOKS_TOKEN_URL, json_reply(200, REFRESHED))
    await seed_credential(
        credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now(), timedelta(hours=1)
    )
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        result = await manager.force_refresh("u1", Provider.QUICKBOOKS)

    assert result == AccessGranted("new-access", "realm-1")
    assert len(transport.requests) == 1


class TestCallback:
    async def test_quickbooks_code_exchange_stores_realm(
        self, credential_store: CredentialStore, mock_clock: MockClock
    ) -> None:
        transport = ScriptedTransport()
        transport.add("POST", QUICKBOOKS_TOKEN_URL, json_reply(200, REFRESHED))
        async with transport.client() as client:
            manager = make_token_manager(credential_store, client, mock_clock)
            result = await manager.handle_callback(
                Provider.QUICKBOOKS, "auth-code", "u1", realm_id="realm-9"
            )

        assert result == AccessGranted("new-access", "realm-9")
        form = request_form(transport.requests[0])
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"
        assert form["redirect_uri"] == "http://test/integrations/quickbooks/callback"

        stored = await credential_store.get("u1", Provider.QUICKBOOKS)
        assert stored is not None
        assert stored.realm_id == "realm-9"
        assert stored.refresh_token == "rotated-refresh"
        assert stored.is_active

    async def test_quickbooks_callback_needs_realm(
        self, credential_store: CredentialStore, mock_clock: MockClock
    ) -> None:
        transport = ScriptedTransport()
        async with transport.client() as client:
            manager = make_token_manager(credential_store, client, mock_clock)
            result = await manager.handle_callback(Provider.QUICKBOOKS, "code", "u1")

        assert isinstance(result, TokenUnavailable)
        assert result.transient is False
        assert transport.requests == []

    async def test_rejected_code_is_not_retried(
        self, credential_store: CredentialStore, mock_clock: MockClock
    ) -> None:
        transport = ScriptedTransport()
        transport.add("POST", GOOGLE_TOKEN_URL, json_reply(400, {"error": "invalid_grant"}))
        async with transport.client() as client:
            manager = make_token_manager(credential_store, client, mock_clock)
            result = await manager.handle_callback(Provider.GOOGLE, "used-code", "u1")

        assert isinstance(result, ReauthorizationRequired)
        assert len(transport.requests) == 1
        assert await credential_store.get("u1", Provider.GOOGLE) is None


async def test_disconnect_deactivates(
    credential_store: CredentialStore, mock_clock: MockClock
) -> None:
    transport = ScriptedTransport()
    await seed_credential(credential_store, "u1", Provider.GOOGLE, mock_clock.now())
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        assert await manager.disconnect("u1", Provider.GOOGLE) is True
        assert await manager.disconnect("u2", Provider.GOOGLE) is False
        result = await manager.get_valid_access_token("u1", Provider.GOOGLE)

    assert result == ReauthorizationRequired("disconnected by user")
    assert await credential_store.list_active(Provider.GOOGLE) == []


class TestRefreshRacingOtherWriters:
    """A slow refresh must not undo a disconnect or a reconnect that lands meanwhile."""

    async def test_disconnect_during_refresh_stays_disconnected(
        self, credential_store: CredentialStore, mock_clock: MockClock
    ) -> None:
        transport = ScriptedTransport(delay=0.1)
        transport.add("POST", QUICKBOOKS_TOKEN_URL, json_reply(200, REFRESHED))
        await seed_credential(
            credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now(), timedelta(0)
        )
        async with transport.client() as client:
            manager = make_token_manager(credential_store, client, mock_clock)
            refresh = asyncio.create_task(
                manager.get_valid_access_token("u1", Provider.QUICKBOOKS)
            )
            await wait_for(lambda: len(transport.requests) == 1)

            assert await manager.disconnect("u1", Provider.QUICKBOOKS) is True
            await refresh
            later = await manager.get_valid_access_token("u1", Provider.QUICKBOOKS)

        assert later == ReauthorizationRequired("disconnected by user")
        stored = await credential_store.get("u1", Provider.QUICKBOOKS)
        assert stored is not None and stored.is_active is False
        assert len(transport.requests) == 1

    async def test_refresh_result_dropped_when_row_deactivated_mid_flight(
        self, credential_store: CredentialStore, mock_clock: MockClock
    ) -> None:
        transport = ScriptedTransport(delay=0.1)
        transport.add("POST", QUICKBOOKS_TOKEN_URL, json_reply(200, REFRESHED))
        await seed_credential(
            credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now(), timedelta(0)
        )
        async with transport.client() as client:
            manager = make_token_manager(credential_store, client, mock_clock)
            refresh = asyncio.create_task(
                manager.get_valid_access_token("u1", Provider.QUICKBOOKS)
            )
            await wait_for(lambda: len(transport.requests) == 1)
            await credential_store.deactivate("u1", Provider.QUICKBOOKS, "revoked in admin")
            result = await refresh

        assert result == ReauthorizationRequired("revoked in admin")
        stored = await credential_store.get("u1", Provider.QUICKBOOKS)
        assert stored is not None
        assert stored.is_active is False
        assert stored.access_token == "stored-access"

    async def test_reconnect_during_refresh_keeps_callback_tokens(
        self, credential_store: CredentialStore, mock_clock: MockClock
    ) -> None:
        def token_reply(request: httpx.Request) -> httpx.Response:
            if request_form(request)["grant_type"] == "refresh_token":
                return httpx.Response(200, json=REFRESHED)
            return httpx.Response(
                200,
                json={
                    "access_token": "callback-access",
                    "refresh_token": "callback-refresh",
                    "expires_in": 3600,
                },
            )

        transport = ScriptedTransport(delay=0.1)
        transport.add("POST", QUICKBOOKS_TOKEN_URL, token_reply)
        await seed_credential(
            credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now(), timedelta(0)
        )
        async with transport.client() as client:
            manager = make_token_manager(credential_store, client, mock_clock)
            refresh = asyncio.create_task(
                manager.get_valid_access_token("u1", Provider.QUICKBOOKS)
            )
            await wait_for(lambda: len(transport.requests) == 1)
            connected = await manager.handle_callback(
                Provider.QUICKBOOKS, "auth-code", "u1", realm_id="realm-1"
            )
            await refresh

        assert connected == AccessGranted("callback-access", "realm-1")
        stored = await credential_store.get("u1", Provider.QUICKBOOKS)
        assert stored is not None
        assert stored.access_token == "callback-access"
        assert stored.refresh_token == "callback-refresh"


async def test_tokens_are_encrypted_at_rest(
    credential_store: CredentialStore,
    mock_clock: MockClock,
    get_db_context_func,  # noqa: ANN001
) -> None:
    await seed_credential(credential_store, "u1", Provider.GOOGLE, mock_clock.now())
    async with get_db_context_func() as db:
        row = await db.credentials.get("u1", "google")
    assert row is not None
    assert row["access_token"] != "stored-access"
    assert row["refresh_token"] != "stored-refresh"

    other_key = CredentialStore(
        get_db_context_func, TokenCipher(Fernet.generate_key().decode()), mock_clock
    )
    unreadable = await other_key.get("u1", Provider.GOOGLE)
    assert unreadable is not None
    assert unreadable.is_active is False


@pytest.mark.parametrize("status_code", [401, 403])
async def test_auth_status_requires_reauthorization(
    credential_store: CredentialStore, mock_clock: MockClock, status_code: int
) -> None:
    transport = ScriptedTransport()
    transport.add("POST", QUICKBOOKS_TOKEN_URL, json_reply(status_code))
    await seed_credential(
        credential_store, "u1", Provider.QUICKBOOKS, mock_clock.now(), timedelta(0)
    )
    async with transport.client() as client:
        manager = make_token_manager(credential_store, client, mock_clock)
        result = await manager.get_valid_access_token("u1", Provider.QUICKBOOKS)
    assert isinstance(result, ReauthorizationRequired)
