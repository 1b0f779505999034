"""Token lifecycle: hands out valid access tokens, refreshing them when needed.

Every outbound provider request gets its bearer token from
``TokenLifecycleManager.get_valid_access_token`` immediately before the
request is sent. Expected failures come back as tagged results:

- ``AccessGranted``: use ``access_token`` (and ``realm_id`` for QuickBooks).
- ``ReauthorizationRequired``: the user has to reconnect; nothing was retried.
- ``TokenUnavailable``: the refresh failed for another reason; ``transient``
  says whether trying again later could help.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError

from pestops.config_models import TokenConfig
from pestops.exceptions import (
    ConfigurationError,
    ProviderRequestError,
    ReauthorizationRequiredError,
    TransientIntegrationError,
)
from pestops.integrations.credentials import Credential, CredentialStore, Provider
from pestops.integrations.oauth import OAuthProviderConfig, request_token
from pestops.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessGranted:
    access_token: str
    realm_id: str | None = None


@dataclass(frozen=True)
class ReauthorizationRequired:
    reason: str


@dataclass(frozen=True)
class TokenUnavailable:
    reason: str
    transient: bool = True


TokenResult = AccessGranted | ReauthorizationRequired | TokenUnavailable


def require_access(result: TokenResult, provider: Provider) -> AccessGranted:
    """Convert a token result into an access grant, raising for the failure cases."""
    if isinstance(result, AccessGranted):
        return result
    if isinstance(result, ReauthorizationRequired):
        raise ReauthorizationRequiredError(result.reason, provider.value)
    if result.transient:
        raise TransientIntegrationError(result.reason, provider.value)
    raise ProviderRequestError(result.reason, provider.value)


class TokenLifecycleManager:
    """Owns the credential lifecycle for every (user, provider) pair.

    Refreshes are single-flighted per key: concurrent callers share one
    in-flight refresh task and all receive its result.
    """

    def __init__(
        self,
        store: CredentialStore,
        http_client: httpx.AsyncClient,
        providers: dict[Provider, OAuthProviderConfig],
        config: TokenConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.http_client = http_client
        self.providers = providers
        self.config = config or TokenConfig()
        self.clock = clock or SystemClock()
        self._margin = timedelta(seconds=self.config.refresh_margin_seconds)
        self._inflight: dict[tuple[str, Provider], asyncio.Task[TokenResult]] = {}
        self._lock = asyncio.Lock()

    def is_configured(self, provider: Provider | str) -> bool:
        return Provider(provider) in self.providers

    def _provider_config(self, provider: Provider) -> OAuthProviderConfig:
        try:
            return self.providers[provider]
        except KeyError:
            raise ConfigurationError(
                f"OAuth client for {provider.value} is not configured"
            ) from None

    def authorization_url(self, provider: Provider | str, state: str) -> str:
        """Consent-screen URL the user is redirected to when connecting."""
        return self._provider_config(Provider(provider)).authorization_url(state)

    async def get_valid_access_token(
        self, user_id: str, provider: Provider | str
    ) -> TokenResult:
        """Return a token valid for at least the safety margin, refreshing if needed."""
        provider = Provider(provider)
        try:
            credential = await self.store.get(user_id, provider)
        except SQLAlchemyError as e:
            logger.error(f"Could not read {provider.value} credential: {e}")
            return TokenUnavailable(f"credential storage error: {e}", transient=True)

        if credential is None:
            return ReauthorizationRequired(f"{provider.value} is not connected")
        if not credential.is_active:
            return ReauthorizationRequired(
                credential.last_error or f"{provider.value} needs to be reconnected"
            )
        if credential.is_fresh(self.clock.now(), self._margin):
            return AccessGranted(credential.access_token, credential.realm_id)
        return await self._refresh_single_flight(user_id, provider, force=False)

    async def force_refresh(self, user_id: str, provider: Provider | str) -> TokenResult:
        """Refresh even if the stored token looks valid (e.g. after a 401)."""
        return await self._refresh_single_flight(user_id, Provider(provider), force=True)

    async def _refresh_single_flight(
        self, user_id: str, provider: Provider, force: bool
    ) -> TokenResult:
        key = (user_id, provider)
        async with self._lock:
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.create_task(
                    self._refresh(user_id, provider, force),
                    name=f"token-refresh-{provider.value}-{user_id}",
                )
                self._inflight[key] = task
                task.add_done_callback(lambda t: self._forget(key, t))
            else:
                logger.debug(
                    f"Joining in-flight {provider.value} refresh for user {user_id}"
                )
        # Shield so one cancelled caller does not cancel the refresh for the others.
        return await asyncio.shield(task)

    def _forget(self, key: tuple[str, Provider], task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _wait_for_refresh(self, user_id: str, provider: Provider) -> None:
        """Let an in-flight refresh for the key finish before writing the row."""
        async with self._lock:
            task = self._inflight.get((user_id, provider))
        if task is not None:
            logger.debug(
                f"Waiting for in-flight {provider.value} refresh for user {user_id}"
            )
            await asyncio.wait({task})

    async def _refresh(self, user_id: str, provider: Provider, force: bool) -> TokenResult:
        try:
            return await self._do_refresh(user_id, provider, force)
        except SQLAlchemyError as e:
            logger.error(
                f"Storage error refreshing {provider.value} token for user {user_id}: {e}",
                exc_info=True,
            )
            return TokenUnavailable(f"credential storage error: {e}", transient=True)

    async def _do_refresh(
        self, user_id: str, provider: Provider, force: bool
    ) -> TokenResult:
        credential = await self.store.get(user_id, provider)
        if credential is None:
            return ReauthorizationRequired(f"{provider.value} is not connected")
        if not credential.is_active:
            return ReauthorizationRequired(
                credential.last_error or f"{provider.value} needs to be reconnected"
            )
        # Another writer may have refreshed between our read and taking the flight.
        if not force and credential.is_fresh(self.clock.now(), self._margin):
            return AccessGranted(credential.access_token, credential.realm_id)
        if not credential.refresh_token:
            reason = f"{provider.value} credential has no refresh token"
            await self.store.deactivate(user_id, provider, reason)
            return ReauthorizationRequired(reason)
        if provider not in self.providers:
            return TokenUnavailable(
                f"OAuth client for {provider.value} is not configured", transient=False
            )

        provider_config = self.providers[provider]
        max_attempts = self.config.max_refresh_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                token_data = await request_token(
                    self.http_client,
                    provider_config,
                    {
                        "grant_type": "refresh_token",
                        "refresh_token": credential.refresh_token,
                    },
                    timeout=self.config.request_timeout_seconds,
                )
            except ReauthorizationRequiredError as e:
                logger.warning(
                    f"{provider.value} refresh token for user {user_id} was rejected; "
                    f"marking credential inactive: {e}"
                )
                await self.store.deactivate(user_id, provider, str(e))
                return ReauthorizationRequired(str(e))
            except ProviderRequestError as e:
                logger.error(f"{provider.value} token refresh rejected: {e}")
                return TokenUnavailable(str(e), transient=False)
            except TransientIntegrationError as e:
                if attempt == max_attempts:
                    logger.error(
                        f"{provider.value} token refresh for user {user_id} failed "
                        f"after {max_attempts} attempts: {e}"
                    )
                    return TokenUnavailable(
                        f"token refresh failed after {max_attempts} attempts: {e}",
                        transient=True,
                    )
                delay = min(
                    self.config.retry_base_delay_seconds * (2 ** (attempt - 1)),
                    self.config.retry_max_delay_seconds,
                )
                logger.warning(
                    f"Transient {provider.value} refresh failure (attempt "
                    f"{attempt}/{max_attempts}): {e}. Retrying in {delay:.2f}s"
                )
                await self.clock.sleep(delay)
                continue

            refreshed = self._apply_token_response(credential, token_data)
            # A disconnect or reconnect may have landed while the request was out
            current = await self.store.get(user_id, provider)
            if current is None or not current.is_active:
                logger.warning(
                    f"{provider.value} credential for user {user_id} was disconnected "
                    "during refresh; discarding new tokens"
                )
                return ReauthorizationRequired(
                    (current.last_error if current else None)
                    or f"{provider.value} is not connected"
                )
            if current.refresh_token != credential.refresh_token:
                logger.info(
                    f"{provider.value} credential for user {user_id} was replaced "
                    "during refresh; keeping the newer tokens"
                )
                return AccessGranted(current.access_token, current.realm_id)
            await self.store.put(refreshed)
            logger.info(
                f"Refreshed {provider.value} access token for user {user_id}; "
                f"expires at {refreshed.expires_at}"
            )
            return AccessGranted(refreshed.access_token, refreshed.realm_id)

        raise AssertionError("unreachable: refresh loop always returns")

    def _apply_token_response(
        self, credential: Credential, token_data: dict[str, Any]
    ) -> Credential:
        expires_in = int(token_data.get("expires_in") or 3600)
        return replace(
            credential,
            access_token=token_data["access_token"],
            # Google omits refresh_token on refresh; QuickBooks rotates it
            refresh_token=token_data.get("refresh_token") or credential.refresh_token,
            expires_at=self.clock.now() + timedelta(seconds=expires_in),
            is_active=True,
            last_error=None,
        )

    async def handle_callback(
        self,
        provider: Provider | str,
        code: str,
        user_id: str,
        realm_id: str | None = None,
    ) -> TokenResult:
        """Exchange an authorization code and store the resulting credential.

        The code is single-use, so the exchange is not retried.
        """
        provider = Provider(provider)
        if provider is Provider.QUICKBOOKS and not realm_id:
            return TokenUnavailable("QuickBooks callback is missing realmId", False)
        provider_config = self._provider_config(provider)
        try:
            token_data = await request_token(
                self.http_client,
                provider_config,
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": provider_config.redirect_uri,
                },
                timeout=self.config.request_timeout_seconds,
            )
        except ReauthorizationRequiredError as e:
            logger.warning(f"{provider.value} rejected authorization code: {e}")
            return ReauthorizationRequired(str(e))
        except ProviderRequestError as e:
            return TokenUnavailable(str(e), transient=False)
        except TransientIntegrationError as e:
            return TokenUnavailable(str(e), transient=True)

        credential = self._apply_token_response(
            Credential(
                user_id=user_id,
                provider=provider,
                access_token="",
                refresh_token=None,
                expires_at=None,
                realm_id=realm_id,
                company_id=realm_id,
            ),
            token_data,
        )
        await self._wait_for_refresh(user_id, provider)
        async with self._lock:
            await self.store.put(credential)
        logger.info(f"Connected {provider.value} for user {user_id}")
        return AccessGranted(credential.access_token, credential.realm_id)

    async def disconnect(self, user_id: str, provider: Provider | str) -> bool:
        """Deactivate the credential and revoke it at the provider when possible.

        Returns False when the user had no credential for the provider.
        """
        provider = Provider(provider)
        credential = await self.store.get(user_id, provider)
        if credential is None:
            return False
        await self._wait_for_refresh(user_id, provider)
        async with self._lock:
            await self.store.deactivate(user_id, provider, "disconnected by user")
        await self._revoke(credential)
        logger.info(f"Disconnected {provider.value} for user {user_id}")
        return True

    async def _revoke(self, credential: Credential) -> None:
        provider_config = self.providers.get(credential.provider)
        token = credential.refresh_token or credential.access_token
        if provider_config is None or not provider_config.revoke_url or not token:
            return
        try:
            if provider_config.basic_auth:
                response = await self.http_client.post(
                    provider_config.revoke_url,
                    json={"token": token},
                    auth=httpx.BasicAuth(
                        provider_config.client_id, provider_config.client_secret
                    ),
                    headers={"Accept": "application/json"},
                    timeout=self.config.request_timeout_seconds,
                )
            else:
                response = await self.http_client.post(
                    provider_config.revoke_url,
                    data={"token": token},
                    timeout=self.config.request_timeout_seconds,
                )
        except httpx.TransportError as e:
            logger.warning(
                f"Could not revoke {credential.provider.value} token at provider: {e!r}"
            )
            return
        if response.status_code >= 400:
            logger.warning(
                f"{credential.provider.value} revoke returned {response.status_code}"
            )
