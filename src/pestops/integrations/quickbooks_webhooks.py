"""QuickBooks change notifications.

Intuit signs each delivery with an HMAC-SHA256 of the raw request body, keyed
by the app's webhook verifier token and sent base64-encoded in the
``intuit-signature`` header. A notification only says which records changed;
the records themselves are read back through ``QuickBooksClient`` and stored
in ``external_records`` the same way the scheduled pull job stores them.
"""

import base64
import hashlib
import hmac
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pestops.exceptions import PestOpsError, ProviderRequestError
from pestops.integrations.credentials import CredentialStore, Provider
from pestops.integrations.quickbooks import QuickBooksClient
from pestops.storage import DatabaseContext
from pestops.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "intuit-signature"

# Lower-cased notification name -> QuickBooks entity stored in external_records
SYNCED_ENTITIES: dict[str, str] = {
    "customer": "Customer",
    "item": "Item",
    "invoice": "Invoice",
}


class WebhookPayloadError(PestOpsError):
    """The delivery body is not a QuickBooks notification."""


class ChangedEntity(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    id: str = Field(min_length=1)
    operation: str = Field(min_length=1)
    last_updated: str | None = Field(default=None, alias="lastUpdated")


class DataChangeEvent(BaseModel):
    entities: list[ChangedEntity]


class EventNotification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    realm_id: str = Field(alias="realmId", min_length=1)
    name: str | None = None
    id: str | None = None
    data_change_event: DataChangeEvent | None = Field(
        default=None, alias="dataChangeEvent"
    )


class WebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_notifications: list[EventNotification] = Field(alias="eventNotifications")

    @property
    def is_test(self) -> bool:
        """Intuit's "send test notification" button."""
        return any(
            n.name == "Test" or n.id == "test-event" for n in self.event_notifications
        )


def sign_payload(body: bytes, verifier_token: str) -> str:
    """The ``intuit-signature`` value Intuit would send for ``body``."""
    digest = hmac.new(verifier_token.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_signature(body: bytes, signature: str, verifier_token: str) -> bool:
    """Check ``signature`` against the raw body in constant time.

    Base64 is what Intuit sends; a hex digest, optionally prefixed with
    ``sha256=``, is also accepted.
    """
    candidate = signature.strip().removeprefix("sha256=").encode()
    if not candidate:
        return False
    digest = hmac.new(verifier_token.encode(), body, hashlib.sha256).digest()
    return hmac.compare_digest(candidate, base64.b64encode(digest)) or (
        hmac.compare_digest(candidate.lower(), digest.hex().encode())
    )


def parse_payload(body: bytes) -> WebhookPayload:
    """Decode and validate a delivery.

    Raises:
        WebhookPayloadError: the body is not JSON or lacks required fields.
    """
    try:
        return WebhookPayload.model_validate_json(body)
    except ValidationError as e:
        raise WebhookPayloadError(
            f"Invalid QuickBooks webhook payload: {e.error_count()} errors"
        ) from e


def change_key(notification: EventNotification, entity: ChangedEntity) -> str:
    """Identifies one change so a repeated delivery is applied once."""
    components = [notification.realm_id]
    if notification.id:
        components.append(notification.id)
    components += [entity.name, entity.id, entity.operation, entity.last_updated or ""]
    return hashlib.sha256(":".join(components).encode()).hexdigest()


@dataclass
class WebhookResult:
    applied: list[str] = field(default_factory=list)
    ignored: int = 0


class QuickBooksWebhookHandler:
    """Applies verified change notifications to ``external_records``."""

    def __init__(
        self,
        client: QuickBooksClient,
        credential_store: CredentialStore,
        get_db_context_func: Callable[[], DatabaseContext],
        clock: Clock | None = None,
    ) -> None:
        self.client = client
        self.credential_store = credential_store
        self.get_db_context_func = get_db_context_func
        self.clock = clock or SystemClock()

    async def handle(self, payload: WebhookPayload) -> WebhookResult:
        """Apply every entity change in the payload.

        Raises:
            IntegrationError: reading a changed record failed. Nothing after
                the failing record is applied, so the delivery should be retried.
        """
        result = WebhookResult()
        for notification in payload.event_notifications:
            if notification.data_change_event is None:
                continue
            entities = notification.data_change_event.entities
            user_ids = await self.credential_store.users_for_realm(
                Provider.QUICKBOOKS, notification.realm_id
            )
            if not user_ids:
                logger.warning(
                    f"QuickBooks notification for unconnected realm "
                    f"{notification.realm_id}; ignoring {len(entities)} changes"
                )
                result.ignored += len(entities)
                continue

            for entity in entities:
                key = change_key(notification, entity)
                resource_type = SYNCED_ENTITIES.get(entity.name.lower())
                if resource_type is None or key in result.applied:
                    logger.debug(f"Skipping {entity.operation} of {entity.name} {entity.id}")
                    result.ignored += 1
                    continue
                await self._apply(user_ids[0], resource_type, entity)
                result.applied.append(key)

        logger.info(
            f"QuickBooks webhook applied {len(result.applied)} changes, "
            f"ignored {result.ignored}"
        )
        return result

    async def _apply(self, user_id: str, resource_type: str, entity: ChangedEntity) -> None:
        record = None
        if entity.operation != "Delete":
            try:
                record = await self.client.get_entity(user_id, resource_type, entity.id)
            except ProviderRequestError as e:
                if e.status_code not in (400, 404):
                    raise
                logger.info(
                    f"QuickBooks {resource_type} {entity.id} is gone ({e.status_code})"
                )

        async with self.get_db_context_func() as db:
            if not record:
                await db.external_records.delete(
                    Provider.QUICKBOOKS.value, resource_type, entity.id
                )
                return
            await db.external_records.upsert(
                provider=Provider.QUICKBOOKS.value,
                resource_type=resource_type,
                external_id=entity.id,
                data=record,
                synced_at=self.clock.now(),
                user_id=user_id,
            )
        logger.debug(f"Stored QuickBooks {resource_type} {entity.id} ({entity.operation})")
