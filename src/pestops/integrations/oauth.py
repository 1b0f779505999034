"""OAuth2 endpoint settings for each provider and the shared token request."""

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from pestops.config_models import AppConfig
from pestops.exceptions import (
    ProviderRequestError,
    ReauthorizationRequiredError,
    TransientIntegrationError,
)
from pestops.integrations.credentials import Provider

logger = logging.getLogger(__name__)

QUICKBOOKS_AUTHORIZE_URL = "https://appcenter.intuit.com/connect/oauth2"
QUICKBOOKS_TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
QUICKBOOKS_REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"
GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

# OAuth error codes meaning the grant itself is dead
AUTH_INVALID_ERRORS = frozenset({"invalid_grant", "unauthorized_client"})


@dataclass(frozen=True)
class OAuthProviderConfig:
    provider: Provider
    client_id: str
    client_secret: str
    redirect_uri: str
    authorize_url: str
    token_url: str
    scopes: list[str]
    # QuickBooks wants client credentials in a Basic header, Google in the body
    basic_auth: bool = False
    revoke_url: str | None = None
    extra_authorize_params: dict[str, str] = field(default_factory=dict)

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            **self.extra_authorize_params,
        }
        return str(httpx.URL(self.authorize_url, params=params))


def providers_from_config(config: AppConfig) -> dict[Provider, OAuthProviderConfig]:
    """OAuth settings for every provider that has client credentials configured."""
    providers: dict[Provider, OAuthProviderConfig] = {}
    qb = config.quickbooks
    if qb.client_id and qb.client_secret:
        providers[Provider.QUICKBOOKS] = OAuthProviderConfig(
            provider=Provider.QUICKBOOKS,
            client_id=qb.client_id,
            client_secret=qb.client_secret,
            redirect_uri=qb.redirect_uri
            or f"{config.public_base_url}/integrations/quickbooks/callback",
            authorize_url=QUICKBOOKS_AUTHORIZE_URL,
            token_url=QUICKBOOKS_TOKEN_URL,
            scopes=qb.scopes,
            basic_auth=True,
            revoke_url=QUICKBOOKS_REVOKE_URL,
        )
    else:
        logger.info("QuickBooks client credentials not configured")

    google = config.google
    if google.client_id and google.client_secret:
        providers[Provider.GOOGLE] = OAuthProviderConfig(
            provider=Provider.GOOGLE,
            client_id=google.client_id,
            client_secret=google.client_secret,
            redirect_uri=google.redirect_uri
            or f"{config.public_base_url}/integrations/google/callback",
            authorize_url=GOOGLE_AUTHORIZE_URL,
            token_url=GOOGLE_TOKEN_URL,
            scopes=google.scopes,
            revoke_url=GOOGLE_REVOKE_URL,
            extra_authorize_params={"access_type": "offline", "prompt": "consent"},
        )
    else:
        logger.info("Google client credentials not configured")
    return providers


def is_transient_status(status_code: int) -> bool:
    return status_code in (408, 429) or status_code >= 500


def _oauth_error_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error")
        return error if isinstance(error, str) else None
    return None


async def request_token(
    http_client: httpx.AsyncClient,
    provider_config: OAuthProviderConfig,
    form: dict[str, str],
    timeout: float,
) -> dict[str, Any]:
    """POST to the provider's token endpoint.

    Raises:
        TransientIntegrationError: transport failure, timeout, 408, 429 or 5xx.
        ReauthorizationRequiredError: the grant was rejected (401, 403, invalid_grant).
        ProviderRequestError: any other rejection, or a response without a token.
    """
    provider = provider_config.provider.value
    data = dict(form)
    auth = None
    if provider_config.basic_auth:
        auth = httpx.BasicAuth(provider_config.client_id, provider_config.client_secret)
    else:
        data["client_id"] = provider_config.client_id
        data["client_secret"] = provider_config.client_secret

    try:
        response = await http_client.post(
            provider_config.token_url,
            data=data,
            auth=auth,
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
    except httpx.TransportError as e:
        raise TransientIntegrationError(
            f"{provider} token endpoint unreachable: {e!r}", provider
        ) from e

    status = response.status_code
    if is_transient_status(status):
        raise TransientIntegrationError(
            f"{provider} token endpoint returned {status}", provider, status
        )
    if status >= 400:
        error_code = _oauth_error_code(response)
        message = f"{provider} token endpoint returned {status} ({error_code or 'no error code'})"
        if status in (401, 403) or error_code in AUTH_INVALID_ERRORS:
            raise ReauthorizationRequiredError(message, provider, status)
        raise ProviderRequestError(message, provider, status)

    try:
        body = response.json()
    except ValueError as e:
        raise TransientIntegrationError(
            f"{provider} token endpoint returned a non-JSON body", provider, status
        ) from e
    if not isinstance(body, dict) or not body.get("access_token"):
        raise ProviderRequestError(
            f"{provider} token response has no access_token", provider, status
        )
    return body
