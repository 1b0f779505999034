"""Per-user, per-provider OAuth credentials and their encrypted storage."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pestops.storage import DatabaseContext, ensure_utc
from pestops.utils.clock import Clock, SystemClock
from pestops.utils.crypto import InvalidToken, TokenCipher

logger = logging.getLogger(__name__)


class Provider(str, Enum):
    QUICKBOOKS = "quickbooks"
    GOOGLE = "google"


@dataclass(frozen=True)
class Credential:
    user_id: str
    provider: Provider
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    realm_id: str | None = None
    company_id: str | None = None
    is_active: bool = True
    last_error: str | None = None
    last_sync_at: datetime | None = None

    def is_fresh(self, now: datetime, margin: timedelta) -> bool:
        """True when the access token stays valid for at least ``margin``."""
        return self.expires_at is not None and self.expires_at - now > margin


@dataclass(frozen=True)
class CredentialSummary:
    """Token-free view of a credential for status pages."""

    user_id: str
    provider: str
    is_active: bool
    realm_id: str | None
    expires_at: datetime | None
    last_sync_at: datetime | None
    last_error: str | None

    @property
    def needs_reconnect(self) -> bool:
        return not self.is_active

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "provider": self.provider,
            "connected": True,
            "is_active": self.is_active,
            "needs_reconnect": self.needs_reconnect,
            "realm_id": self.realm_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "last_sync_at": (
                self.last_sync_at.isoformat() if self.last_sync_at else None
            ),
            "last_error": self.last_error,
        }


class CredentialStore:
    """get/put/clear for credentials, with tokens encrypted at rest.

    Only the token lifecycle manager should write through this store.
    """

    def __init__(
        self,
        get_db_context_func: Callable[[], DatabaseContext],
        cipher: TokenCipher,
        clock: Clock | None = None,
    ) -> None:
        self.get_db_context_func = get_db_context_func
        self.cipher = cipher
        self.clock = clock or SystemClock()

    def _row_to_credential(self, row: dict[str, Any]) -> Credential:
        is_active = bool(row["is_active"])
        last_error = row.get("last_error")
        try:
            access_token = self.cipher.decrypt(row["access_token"])
            refresh_token = (
                self.cipher.decrypt(row["refresh_token"])
                if row.get("refresh_token")
                else None
            )
        except InvalidToken:
            logger.error(
                f"Stored {row['provider']} tokens for user {row['user_id']} cannot be "
                "decrypted with the configured key; treating as disconnected"
            )
            access_token, refresh_token = "", None
            is_active = False
            last_error = "stored tokens could not be decrypted"
        return Credential(
            user_id=row["user_id"],
            provider=Provider(row["provider"]),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=ensure_utc(row.get("expires_at")),
            realm_id=row.get("realm_id"),
            company_id=row.get("company_id"),
            is_active=is_active,
            last_error=last_error,
            last_sync_at=ensure_utc(row.get("last_sync_at")),
        )

    async def get(self, user_id: str, provider: Provider) -> Credential | None:
        async with self.get_db_context_func() as db:
            row = await db.credentials.get(user_id, provider.value)
        return self._row_to_credential(row) if row else None

    async def put(self, credential: Credential) -> None:
        values = {
            "access_token": self.cipher.encrypt(credential.access_token),
            "refresh_token": (
                self.cipher.encrypt(credential.refresh_token)
                if credential.refresh_token
                else None
            ),
            "expires_at": credential.expires_at,
            "realm_id": credential.realm_id,
            "company_id": credential.company_id,
            "is_active": credential.is_active,
            "last_error": credential.last_error,
        }
        async with self.get_db_context_func() as db:
            await db.credentials.upsert(
                credential.user_id, credential.provider.value, values, self.clock.now()
            )

    async def clear(self, user_id: str, provider: Provider) -> bool:
        async with self.get_db_context_func() as db:
            return await db.credentials.delete(user_id, provider.value)

    async def deactivate(self, user_id: str, provider: Provider, reason: str) -> bool:
        async with self.get_db_context_func() as db:
            return await db.credentials.update_fields(
                user_id,
                provider.value,
                self.clock.now(),
                is_active=False,
                last_error=reason,
            )

    async def mark_synced(self, user_id: str, provider: Provider) -> None:
        async with self.get_db_context_func() as db:
            await db.credentials.update_fields(
                user_id, provider.value, self.clock.now(), last_sync_at=self.clock.now()
            )

    async def list_active(self, provider: Provider) -> list[str]:
        """User ids with an active credential for the provider."""
        async with self.get_db_context_func() as db:
            rows = await db.credentials.list_all(provider.value, active_only=True)
        return [row["user_id"] for row in rows]

    async def users_for_realm(self, provider: Provider, realm_id: str) -> list[str]:
        """User ids actively connected to one QuickBooks company."""
        async with self.get_db_context_func() as db:
            rows = await db.credentials.find_by_realm(provider.value, realm_id)
        return [row["user_id"] for row in rows]

    async def summaries(self) -> list[CredentialSummary]:
        async with self.get_db_context_func() as db:
            rows = await db.credentials.list_all()
        return [
            CredentialSummary(
                user_id=row["user_id"],
                provider=row["provider"],
                is_active=bool(row["is_active"]),
                realm_id=row.get("realm_id"),
                expires_at=ensure_utc(row.get("expires_at")),
                last_sync_at=ensure_utc(row.get("last_sync_at")),
                last_error=row.get("last_error"),
            )
            for row in rows
        ]
