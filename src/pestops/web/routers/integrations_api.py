"""OAuth connect/callback/disconnect endpoints for QuickBooks and Google."""

import json
import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from pestops.exceptions import ConfigurationError
from pestops.integrations.credentials import Provider
from pestops.integrations.tokens import (
    AccessGranted,
    ReauthorizationRequired,
    TokenLifecycleManager,
)
from pestops.utils.crypto import InvalidToken, TokenCipher
from pestops.web.dependencies import get_cipher, get_token_manager

logger = logging.getLogger(__name__)

integrations_api_router = APIRouter(prefix="/integrations", tags=["Integrations"])

# How long a user has to finish the provider consent screen
OAUTH_STATE_TTL_SECONDS = 900


class ConnectionResponse(BaseModel):
    status: str
    provider: str
    user_id: str
    realm_id: str | None = None


class DisconnectRequest(BaseModel):
    user_id: str


def encode_state(cipher: TokenCipher, provider: Provider, user_id: str) -> str:
    """Opaque, tamper-proof OAuth state naming who is connecting."""
    return cipher.encrypt(
        json.dumps(
            {"provider": provider.value, "user_id": user_id, "nonce": secrets.token_hex(8)}
        )
    )


def decode_state(cipher: TokenCipher, provider: Provider, state: str) -> str:
    """Return the user id carried in the state, or raise HTTP 400."""
    try:
        data = json.loads(cipher.decrypt(state, ttl=OAUTH_STATE_TTL_SECONDS))
    except (InvalidToken, ValueError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="OAuth state is invalid or expired; start the connection again",
        ) from e
    if data.get("provider") != provider.value or not data.get("user_id"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="OAuth state does not match this provider",
        )
    return data["user_id"]


def _provider(name: str) -> Provider:
    try:
        return Provider(name)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider '{name}'"
        ) from None


@integrations_api_router.get("/{provider_name}/connect")
async def connect(
    provider_name: str,
    user_id: Annotated[str, Query(min_length=1)],
    tokens: Annotated[TokenLifecycleManager, Depends(get_token_manager)],
    cipher: Annotated[TokenCipher, Depends(get_cipher)],
) -> RedirectResponse:
    """Redirect the user to the provider's consent screen."""
    provider = _provider(provider_name)
    try:
        url = tokens.authorization_url(provider, encode_state(cipher, provider, user_id))
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)
        ) from e
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@integrations_api_router.get("/{provider_name}/callback", response_model=ConnectionResponse)
async def callback(
    provider_name: str,
    tokens: Annotated[TokenLifecycleManager, Depends(get_token_manager)],
    cipher: Annotated[TokenCipher, Depends(get_cipher)],
    state: str,
    code: str | None = None,
    error: str | None = None,
    realm_id: Annotated[str | None, Query(alias="realmId")] = None,
) -> ConnectionResponse:
    provider = _provider(provider_name)
    user_id = decode_state(cipher, provider, state)
    if error or not code:
        logger.warning(f"{provider.value} consent for {user_id} not granted: {error}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Authorization was not granted: {error or 'no code returned'}",
        )

    try:
        result = await tokens.handle_callback(provider, code, user_id, realm_id=realm_id)
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)
        ) from e

    if isinstance(result, AccessGranted):
        return ConnectionResponse(
            status="connected",
            provider=provider.value,
            user_id=user_id,
            realm_id=result.realm_id,
        )
    if isinstance(result, ReauthorizationRequired):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.reason)
    raise HTTPException(
        status_code=(
            status.HTTP_503_SERVICE_UNAVAILABLE
            if result.transient
            else status.HTTP_400_BAD_REQUEST
        ),
        detail=result.reason,
    )


@integrations_api_router.post(
    "/{provider_name}/disconnect", response_model=ConnectionResponse
)
async def disconnect(
    provider_name: str,
    request: DisconnectRequest,
    tokens: Annotated[TokenLifecycleManager, Depends(get_token_manager)],
) -> ConnectionResponse:
    provider = _provider(provider_name)
    if not await tokens.disconnect(request.user_id, provider):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No {provider.value} connection for user {request.user_id}",
        )
    return ConnectionResponse(
        status="disconnected", provider=provider.value, user_id=request.user_id
    )
