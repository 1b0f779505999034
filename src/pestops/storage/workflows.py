"""Table definitions for the workflow trigger catalogue and execution log."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.sql import func

from pestops.storage.base import JSONType, metadata

workflow_triggers_table = Table(
    "workflow_triggers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False, unique=True),
    Column("description", Text, nullable=True),
    Column("trigger_event", String(100), nullable=False, index=True),
    Column("conditions", JSONType, nullable=True),
    Column("actions", JSONType, nullable=False),
    Column("priority", Integer, nullable=False, default=100),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_by", String(100), nullable=True),
    Column(
        "created_at",
        DateTime(timezone=True),
        server_default=func.now(),  # pylint: disable=not-callable
        nullable=False,
    ),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    Index("idx_workflow_triggers_event_active", "trigger_event", "is_active"),
)

# Append-only: rows are inserted once per trigger evaluation and never updated.
workflow_executions_table = Table(
    "workflow_executions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "trigger_id",
        Integer,
        ForeignKey("workflow_triggers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    ),
    Column("trigger_name", String(200), nullable=False),
    Column("event_name", String(100), nullable=False, index=True),
    Column("actor_id", String(100), nullable=True),
    Column("status", String(50), nullable=False),
    Column("trigger_data", JSONType, nullable=True),
    Column("outcomes", JSONType, nullable=False),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("finished_at", DateTime(timezone=True), nullable=False),
    Index("idx_workflow_executions_started", "started_at"),
)
