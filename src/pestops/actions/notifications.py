"""Executors that tell people about events: email and in-app notifications."""

import logging
from collections.abc import Callable

import httpx
from sqlalchemy.exc import SQLAlchemyError

from pestops.actions.base import render_template, storage_failure
from pestops.exceptions import (
    ConfigurationError,
    ProviderRequestError,
    TransientIntegrationError,
)
from pestops.integrations.mailer import EmailMessage, EmailSender
from pestops.integrations.oauth import is_transient_status
from pestops.storage import DatabaseContext
from pestops.workflows.models import (
    ActionResult,
    SendEmailConfig,
    SendNotificationConfig,
    TriggerEvent,
)

logger = logging.getLogger(__name__)


class SendEmailExecutor:
    def __init__(self, sender: EmailSender) -> None:
        self.sender = sender

    async def execute(self, config: SendEmailConfig, event: TriggerEvent) -> ActionResult:
        message = EmailMessage(
            to=render_template(config.to, event.payload),
            subject=render_template(config.subject, event.payload),
            html=render_template(config.body, event.payload),
            from_address=config.from_address,
        )
        try:
            await self.sender.send(message)
        except ConfigurationError as e:
            return ActionResult.failed(f"configuration error: {e}")
        except TransientIntegrationError as e:
            return ActionResult.failed(str(e), transient=True)
        except ProviderRequestError as e:
            return ActionResult.failed(str(e))
        return ActionResult.ok(f"email sent to {message.to}")


class SendNotificationExecutor:
    """Stores one inbox row per recipient and optionally posts to a webhook.

    With no recipients the notification is a broadcast row (recipient NULL).
    The webhook is posted before any inbox row is written.
    """

    def __init__(
        self,
        get_db_context_func: Callable[[], DatabaseContext],
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.get_db_context_func = get_db_context_func
        self.http_client = http_client
        self.timeout = timeout

    async def _post_webhook(
        self, url: str, message: str, config: SendNotificationConfig, event: TriggerEvent
    ) -> ActionResult | None:
        if self.http_client is None:
            return ActionResult.failed(
                "configuration error: webhook configured but no HTTP client available"
            )
        try:
            response = await self.http_client.post(
                url,
                json={
                    "text": message,
                    "level": config.level,
                    "event": event.event_name,
                },
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            logger.info(f"Notification webhook unreachable: {e!r}")
            return ActionResult.failed(f"webhook unreachable: {e!r}", transient=True)
        if is_transient_status(response.status_code):
            return ActionResult.failed(
                f"webhook returned {response.status_code}", transient=True
            )
        if response.status_code >= 400:
            return ActionResult.failed(f"webhook rejected: {response.status_code}")
        return None

    async def execute(
        self, config: SendNotificationConfig, event: TriggerEvent
    ) -> ActionResult:
        message = render_template(config.message, event.payload)
        if config.webhook_url:
            webhook_failure = await self._post_webhook(
                config.webhook_url, message, config, event
            )
            if webhook_failure is not None:
                return webhook_failure

        recipients: list[str | None] = list(config.recipients) or [None]
        try:
            async with self.get_db_context_func() as db:
                for recipient in recipients:
                    await db.notifications.add(
                        message=message,
                        level=config.level,
                        recipient=recipient,
                        source=event.event_name,
                        created_at=event.occurred_at,
                    )
        except SQLAlchemyError as e:
            return storage_failure("send_notification", e)
        return ActionResult.ok(f"{len(recipients)} notification(s) stored")
