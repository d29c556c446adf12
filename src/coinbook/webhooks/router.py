"""Commerce webhook ingress."""

from __future__ import annotations

import json

import structlog
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.config import get_settings
from coinbook.database import get_session
from coinbook.errors import NotAuthorized, ValidationFailed
from coinbook.webhooks.service import receive_webhook, verify_signature

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])


class WebhookAccepted(BaseModel):
    delivery_id: int
    job_id: int | None = None
    duplicate: bool


@router.post("/commerce", response_model=WebhookAccepted, status_code=202)
async def commerce_webhook(
    request: Request,
    topic: str = Header(alias="X-Commerce-Topic"),
    signature: str | None = Header(default=None, alias="X-Commerce-Hmac-Sha256"),
    db: AsyncSession = Depends(get_session),
):
    """Record one delivery and queue it. Duplicates are acknowledged without a new job."""
    body = await request.body()
    secret = get_settings().commerce_webhook_secret
    if secret and not verify_signature(body, signature, secret):
        logger.warning("webhook_signature_rejected", topic=topic)
        raise NotAuthorized("Invalid webhook signature")

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError as exc:
        raise ValidationFailed("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationFailed("Webhook body must be a JSON object")

    delivery, duplicate = await receive_webhook(db, topic, payload)
    logger.info(
        "webhook_received",
        topic=topic, external_id=delivery.external_id, delivery_id=delivery.id, duplicate=duplicate,
    )
    return WebhookAccepted(delivery_id=delivery.id, job_id=delivery.job_id, duplicate=duplicate)
