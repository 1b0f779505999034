"""Table definitions for provider credentials and records pulled from providers."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from pestops.storage.base import JSONType, metadata

# Access and refresh tokens are stored encrypted (see utils.crypto.TokenCipher).
integration_credentials_table = Table(
    "integrations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(100), nullable=False, index=True),
    Column("provider", String(50), nullable=False),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text, nullable=True),
    Column("realm_id", String(100), nullable=True),
    Column("company_id", String(100), nullable=True),
    Column("expires_at", DateTime(timezone=True), nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("last_error", Text, nullable=True),
    Column("last_sync_at", DateTime(timezone=True), nullable=True),
    Column("settings", JSONType, nullable=True),
    Column(
        "created_at",
        DateTime(timezone=True),
        server_default=func.now(),  # pylint: disable=not-callable
        nullable=False,
    ),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    UniqueConstraint("user_id", "provider", name="uq_integrations_user_provider"),
)

external_records_table = Table(
    "external_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider", String(50), nullable=False),
    Column("resource_type", String(50), nullable=False),
    Column("external_id", String(100), nullable=False),
    Column("user_id", String(100), nullable=True),
    Column("data", JSONType, nullable=False),
    Column("synced_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint(
        "provider",
        "resource_type",
        "external_id",
        name="uq_external_records_identity",
    ),
)
