"""Transactional email through a SendGrid v3 compatible HTTP API."""

import logging
from dataclasses import dataclass

import httpx

from pestops.config_models import EmailConfig
from pestops.exceptions import (
    ConfigurationError,
    ProviderRequestError,
    TransientIntegrationError,
)
from pestops.integrations.oauth import is_transient_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    from_address: str | None = None
    text: str | None = None


class EmailSender:
    """Sends one message per call; retrying is left to the caller."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        config: EmailConfig,
        timeout: float = 30.0,
    ) -> None:
        self.http_client = http_client
        self.config = config
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    def _body(self, message: EmailMessage) -> dict:
        content = []
        if message.text:
            content.append({"type": "text/plain", "value": message.text})
        content.append({"type": "text/html", "value": message.html or message.subject})
        return {
            "personalizations": [{"to": [{"email": message.to}]}],
            "from": {"email": message.from_address or self.config.from_address},
            "subject": message.subject,
            "content": content,
        }

    async def send(self, message: EmailMessage) -> None:
        """Raises:
        ConfigurationError: no API key is configured.
        TransientIntegrationError: network failure, 429 or 5xx.
        ProviderRequestError: the message was rejected.
        """
        if not self.config.api_key:
            raise ConfigurationError("email API key is not configured")
        try:
            response = await self.http_client.post(
                self.config.api_url,
                json=self._body(message),
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            raise TransientIntegrationError(
                f"email API unreachable: {e!r}", "email"
            ) from e
        if is_transient_status(response.status_code):
            raise TransientIntegrationError(
                f"email API returned {response.status_code}",
                "email",
                response.status_code,
            )
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"email API rejected message: {response.status_code} {response.text[:300]}",
                "email",
                response.status_code,
            )
        logger.info(f"Email sent to {message.to}: {message.subject}")
