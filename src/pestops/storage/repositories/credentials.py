"""Repository for per-user, per-provider OAuth credentials.

Token columns hold ciphertext; encryption happens in
``pestops.integrations.credentials.CredentialStore``.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update

from pestops.storage.integrations import integration_credentials_table
from pestops.storage.repositories.base import BaseRepository


class CredentialsRepository(BaseRepository):
    async def get(self, user_id: str, provider: str) -> dict[str, Any] | None:
        stmt = select(integration_credentials_table).where(
            integration_credentials_table.c.user_id == user_id,
            integration_credentials_table.c.provider == provider,
        )
        return await self._db.fetch_one(stmt)

    async def list_all(
        self, provider: str | None = None, active_only: bool = False
    ) -> list[dict[str, Any]]:
        stmt = select(integration_credentials_table)
        if provider is not None:
            stmt = stmt.where(integration_credentials_table.c.provider == provider)
        if active_only:
            stmt = stmt.where(integration_credentials_table.c.is_active.is_(True))
        stmt = stmt.order_by(integration_credentials_table.c.id.asc())
        return await self._db.fetch_all(stmt)

    async def upsert(
        self, user_id: str, provider: str, values: dict[str, Any], now: datetime
    ) -> None:
        """Insert or replace the credential for (user_id, provider)."""
        await self._upsert(
            "upsert_credential",
            integration_credentials_table,
            {"user_id": user_id, "provider": provider},
            {**values, "updated_at": now},
        )

    async def find_by_realm(self, provider: str, realm_id: str) -> list[dict[str, Any]]:
        stmt = (
            select(integration_credentials_table)
            .where(
                integration_credentials_table.c.provider == provider,
                integration_credentials_table.c.realm_id == realm_id,
                integration_credentials_table.c.is_active.is_(True),
            )
            .order_by(integration_credentials_table.c.id.asc())
        )
        return await self._db.fetch_all(stmt)

    async def update_fields(
        self, user_id: str, provider: str, now: datetime, **values: Any
    ) -> bool:  # noqa: ANN401
        stmt = (
            update(integration_credentials_table)
            .where(
                integration_credentials_table.c.user_id == user_id,
                integration_credentials_table.c.provider == provider,
            )
            .values(updated_at=now, **values)
        )
        result = await self._execute_with_logging("update_credential", stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def delete(self, user_id: str, provider: str) -> bool:
        stmt = delete(integration_credentials_table).where(
            integration_credentials_table.c.user_id == user_id,
            integration_credentials_table.c.provider == provider,
        )
        result = await self._execute_with_logging("delete_credential", stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]
