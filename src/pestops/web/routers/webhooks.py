import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from pestops.config_models import AppConfig
from pestops.exceptions import IntegrationError
from pestops.integrations.quickbooks_webhooks import (
    SIGNATURE_HEADER,
    QuickBooksWebhookHandler,
    WebhookPayloadError,
    parse_payload,
    verify_signature,
)
from pestops.web.dependencies import get_config, get_quickbooks_webhooks

logger = logging.getLogger(__name__)
webhooks_router = APIRouter(tags=["Webhooks"])


class WebhookResponse(BaseModel):
    message: str
    changes_applied: int = 0
    changes_ignored: int = 0


@webhooks_router.post("/integrations/quickbooks/webhook", response_model=WebhookResponse)
async def handle_quickbooks_webhook(
    request: Request,
    config: Annotated[AppConfig, Depends(get_config)],
    handler: Annotated[QuickBooksWebhookHandler, Depends(get_quickbooks_webhooks)],
) -> WebhookResponse:
    """
    Receives QuickBooks change notifications, verifies the Intuit signature,
    and refreshes the changed customers, items and invoices.
    """
    verifier_token = config.quickbooks.webhook_verifier_token
    if not verifier_token:
        logger.error("QuickBooks webhook received but no verifier token is configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="QuickBooks webhook verification is not configured",
        )

    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")
    if not verify_signature(body, signature, verifier_token):
        logger.warning(
            f"Rejected QuickBooks webhook with bad signature ({len(body)} bytes)"
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        )

    try:
        payload = parse_payload(body)
    except WebhookPayloadError as e:
        logger.warning(str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    if payload.is_test:
        logger.info("QuickBooks test webhook received and verified")
        return WebhookResponse(message="Test webhook received")

    try:
        result = await handler.handle(payload)
    except IntegrationError as e:
        # A non-2xx answer makes Intuit redeliver the notification later
        logger.error(f"Error processing QuickBooks webhook: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to process webhook",
        ) from e
    return WebhookResponse(
        message="Webhook processed",
        changes_applied=len(result.applied),
        changes_ignored=result.ignored,
    )
