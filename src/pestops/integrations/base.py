"""Shared request path for provider API clients."""

import logging
from typing import Any

import httpx

from pestops.exceptions import ProviderRequestError, TransientIntegrationError
from pestops.integrations.credentials import Provider
from pestops.integrations.oauth import is_transient_status
from pestops.integrations.tokens import (
    AccessGranted,
    TokenLifecycleManager,
    require_access,
)

logger = logging.getLogger(__name__)


class ProviderClient:
    """Base for stateless API clients.

    A token is fetched from the lifecycle manager for every request and is
    never kept on the client. A 401 forces one refresh and one retry.
    """

    provider: Provider

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        tokens: TokenLifecycleManager,
        timeout: float = 30.0,
    ) -> None:
        self.http_client = http_client
        self.tokens = tokens
        self.timeout = timeout

    def _url(self, grant: AccessGranted, path: str) -> str:
        raise NotImplementedError

    def _error_message(self, response: httpx.Response) -> str:
        return response.text[:500]

    async def _request(
        self,
        method: str,
        user_id: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send an authorized request and return the decoded JSON body ({} if empty).

        Raises:
            ReauthorizationRequiredError: the user must reconnect the provider.
            TransientIntegrationError: network failure, timeout, 429 or 5xx.
            ProviderRequestError: any other 4xx.
        """
        grant = require_access(
            await self.tokens.get_valid_access_token(user_id, self.provider),
            self.provider,
        )
        response = await self._send(method, grant, path, params, json)
        if response.status_code == 401:
            logger.info(
                f"{self.provider.value} returned 401 for user {user_id}; forcing refresh"
            )
            grant = require_access(
                await self.tokens.force_refresh(user_id, self.provider),
                self.provider,
            )
            response = await self._send(method, grant, path, params, json)

        status = response.status_code
        if is_transient_status(status):
            raise TransientIntegrationError(
                f"{self.provider.value} {method} {path} returned {status}",
                self.provider.value,
                status,
            )
        if status >= 400:
            raise ProviderRequestError(
                f"{self.provider.value} {method} {path} returned {status}: "
                f"{self._error_message(response)}",
                self.provider.value,
                status,
            )
        if status == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderRequestError(
                f"{self.provider.value} returned a non-JSON body for {path}",
                self.provider.value,
                status,
            ) from e

    async def _send(
        self,
        method: str,
        grant: AccessGranted,
        path: str,
        params: dict[str, Any] | None,
        json: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            return await self.http_client.request(
                method,
                self._url(grant, path),
                params=params,
                json=json,
                headers={
                    "Authorization": f"Bearer {grant.access_token}",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            raise TransientIntegrationError(
                f"{self.provider.value} request failed: {e!r}", self.provider.value
            ) from e
