"""Table definitions for the records workflow actions write to."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from pestops.storage.base import JSONType, metadata

activity_logs_table = Table(
    "activity_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(100), nullable=True, index=True),
    Column("activity_type", String(100), nullable=False),
    Column("description", Text, nullable=False),
    Column("details", JSONType, nullable=True),
    Column(
        "created_at",
        DateTime(timezone=True),
        server_default=func.now(),  # pylint: disable=not-callable
        nullable=False,
    ),
    Index("idx_activity_logs_created", "created_at"),
)

entity_statuses_table = Table(
    "entity_statuses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entity", String(100), nullable=False),
    Column("entity_id", String(100), nullable=False),
    Column("status", String(50), nullable=False),
    Column("updated_by", String(100), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("entity", "entity_id", name="uq_entity_statuses_entity"),
)

metrics_table = Table(
    "metrics",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("period", String(20), nullable=False),
    Column("value", Float, nullable=False, default=0.0),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("name", "period", name="uq_metrics_name_period"),
)

notifications_table = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # NULL recipient means the notification is visible to everyone
    Column("recipient", String(100), nullable=True, index=True),
    Column("level", String(20), nullable=False),
    Column("message", Text, nullable=False),
    Column("source", String(200), nullable=True),
    Column("is_read", Boolean, nullable=False, default=False),
    Column(
        "created_at",
        DateTime(timezone=True),
        server_default=func.now(),  # pylint: disable=not-callable
        nullable=False,
    ),
)
