"""Repository classes for storage operations."""

from pestops.storage.repositories.activity import (
    ActivityRepository,
    EntityStatusRepository,
    NotificationsRepository,
)
from pestops.storage.repositories.base import BaseRepository
from pestops.storage.repositories.credentials import CredentialsRepository
from pestops.storage.repositories.executions import ExecutionsRepository
from pestops.storage.repositories.external_records import ExternalRecordsRepository
from pestops.storage.repositories.metrics import MetricsRepository
from pestops.storage.repositories.triggers import TriggersRepository

__all__ = [
    "ActivityRepository",
    "BaseRepository",
    "CredentialsRepository",
    "EntityStatusRepository",
    "ExecutionsRepository",
    "ExternalRecordsRepository",
    "MetricsRepository",
    "NotificationsRepository",
    "TriggersRepository",
]
