from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from dust_connectors.apps.api.deps import get_db
from dust_connectors.core.config import get_settings
from dust_connectors.core.errors import ConnectorsError, InvalidRequestError, ProviderNotSupportedError
from dust_connectors.services.telemetry import increment_counter
from dust_connectors.services.webhooks import (
    dispatch_event,
    parse_slack_event,
    verify_path_secret,
    verify_slack_signature,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _unauthorized() -> HTTPException:
    increment_counter("webhook_rejected_total")
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook credentials")


@router.post("/{secret}/{provider}")
async def receive_webhook(
    secret: str,
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    settings = get_settings()
    # Authenticate before reading anything from the payload.
    if not verify_path_secret(settings.webhook_secret, secret):
        logger.warning("webhook_rejected provider=%s reason=path_secret", provider)
        raise _unauthorized()
    if provider != "slack":
        raise ProviderNotSupportedError(f"Webhooks for provider {provider} are not supported")

    body = await request.body()
    if settings.slack_signing_secret and not verify_slack_signature(
        secret=settings.slack_signing_secret,
        timestamp=request.headers.get("X-Slack-Request-Timestamp"),
        signature=request.headers.get("X-Slack-Signature"),
        body=body,
        max_age_s=settings.slack_signature_max_age_s,
    ):
        logger.warning("webhook_rejected provider=%s reason=signature", provider)
        raise _unauthorized()

    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise InvalidRequestError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError("Webhook body must be a JSON object")
    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge")}

    event = parse_slack_event(payload)
    summary = await dispatch_event(db, event)
    if summary.errors:
        # Slack redelivers on non-2xx; job ids make the retry coalesce with what did launch.
        raise ConnectorsError(f"Failed to launch {len(summary.errors)} workflow(s) for event")
    logger.info(
        "webhook_processed provider=%s event=%s launched=%s ignored=%s",
        provider,
        type(event).__name__,
        len(summary.launched),
        len(summary.ignored_connectors),
    )
    return {"ok": True}
