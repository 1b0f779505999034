"""
Utility functions for testing.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import httpx

from pestops.config_models import TokenConfig
from pestops.integrations.credentials import Credential, CredentialStore, Provider
from pestops.integrations.oauth import (
    GOOGLE_TOKEN_URL,
    QUICKBOOKS_TOKEN_URL,
    OAuthProviderConfig,
)
from pestops.integrations.tokens import TokenLifecycleManager
from pestops.utils.clock import Clock

logger = logging.getLogger(__name__)

Reply = httpx.Response | Exception | Callable[[httpx.Request], httpx.Response]


class ScriptedTransport:
    """Canned HTTP replies keyed by method and URL prefix.

    Replies for a route are used in order and the last one repeats. A reply
    may be a response, an exception to raise, or a callable that builds a
    response from the request. Every request is recorded.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.requests: list[httpx.Request] = []
        self._routes: list[tuple[str, str, list[Reply]]] = []

    def add(self, method: str, url_prefix: str, *replies: Reply) -> None:
        self._routes.append((method.upper(), url_prefix, list(replies)))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def requests_to(self, url_prefix: str, method: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if str(r.url).startswith(url_prefix)
            and (method is None or r.method == method.upper())
        ]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        for method, prefix, replies in self._routes:
            if request.method != method or not str(request.url).startswith(prefix):
                continue
            reply = replies.pop(0) if len(replies) > 1 else replies[0]
            if isinstance(reply, Exception):
                raise reply
            if callable(reply):
                return reply(request)
            # Responses are rebuilt so a repeated reply can be read again
            return httpx.Response(
                reply.status_code, headers=reply.headers, content=reply.content
            )
        logger.error(f"Unexpected request: {request.method} {request.url}")
        return httpx.Response(599, json={"error": "no route"})


def json_reply(status_code: int = 200, body: Any = None) -> httpx.Response:  # noqa: ANN401
    return httpx.Response(status_code, json=body if body is not None else {})


def request_json(request: httpx.Request) -> Any:  # noqa: ANN401
    return json.loads(request.content)


def request_form(request: httpx.Request) -> dict[str, str]:
    return dict(httpx.QueryParams(request.content.decode()))


def oauth_providers() -> dict[Provider, OAuthProviderConfig]:
    return {
        Provider.QUICKBOOKS: OAuthProviderConfig(
            provider=Provider.QUICKBOOKS,
            client_id="qb-client",
            client_secret="qb-secret",
            redirect_uri="http://test/integrations/quickbooks/callback",
            authorize_url="https://appcenter.intuit.com/connect/oauth2",
            token_url=QUICKBOOKS_TOKEN_URL,
            scopes=["com.intuit.quickbooks.accounting"],
            basic_auth=True,
        ),
        Provider.GOOGLE: OAuthProviderConfig(
            provider=Provider.GOOGLE,
            client_id="google-client",
            client_secret="google-secret",
            redirect_uri="http://test/integrations/google/callback",
            authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url=GOOGLE_TOKEN_URL,
            scopes=["https://www.googleapis.com/auth/calendar"],
        ),
    }


def make_token_manager(
    store: CredentialStore, http_client: httpx.AsyncClient, clock: Clock
) -> TokenLifecycleManager:
    return TokenLifecycleManager(
        store,
        http_client,
        oauth_providers(),
        TokenConfig(retry_base_delay_seconds=1.0, max_refresh_attempts=3),
        clock,
    )


async def seed_credential(
    store: CredentialStore,
    user_id: str,
    provider: Provider,
    now: datetime,
    expires_in: timedelta = timedelta(hours=1),
    access_token: str = "stored-access",
    refresh_token: str | None = "stored-refresh",
    realm_id: str | None = None,
) -> Credential:
    if provider is Provider.QUICKBOOKS and realm_id is None:
        realm_id = "realm-1"
    credential = Credential(
        user_id=user_id,
        provider=provider,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now + expires_in,
        realm_id=realm_id,
        company_id=realm_id,
    )
    await store.put(credential)
    return credential


async def wait_for(
    predicate: Callable[[], bool],
    timeout_seconds: float = 5.0,
    poll_interval_seconds: float = 0.01,
) -> None:
    """Poll until the predicate holds or raise asyncio.TimeoutError."""
    async with asyncio.timeout(timeout_seconds):
        while not predicate():
            await asyncio.sleep(poll_interval_seconds)
