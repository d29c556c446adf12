"""Webhook ingress: signature check, dedup and hand-off to the job queue."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.config import get_settings
from coinbook.db.models import WebhookDelivery
from coinbook.errors import ValidationFailed
from coinbook.jobs.kinds import PROCESS_WEBHOOK
from coinbook.jobs.queue import JobQueue

logger = logging.getLogger(__name__)

TOPICS = frozenset({
    "product.created",
    "product.updated",
    "product.deleted",
    "customer.created",
    "customer.updated",
    "order.created",
    "order.updated",
    "order.fulfilled",
    "order.delivered",
})

DISPOSITIONS = ("pending", "processed", "skipped", "noted", "failed")


def topic_family(topic: str) -> str:
    return topic.split(".", 1)[0]


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """HMAC-SHA256 of the raw body, base64 encoded, compared in constant time."""
    if not signature:
        return False
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(expected, signature.strip())


async def receive_webhook(
    db: AsyncSession,
    topic: str,
    payload: dict[str, Any],
    *,
    now: datetime | None = None,
) -> tuple[WebhookDelivery, bool]:
    """Record a delivery and enqueue its processing job.

    Returns (delivery, duplicate). A delivery with the same topic, external
    id and upstream updated-at within the dedup window is a duplicate and
    enqueues nothing.
    """
    if topic not in TOPICS:
        raise ValidationFailed(f"Unsupported webhook topic '{topic}'", field="topic")
    if payload.get("id") is None:
        raise ValidationFailed("Webhook payload has no id", field="id")

    now = now or datetime.now(timezone.utc)
    external_id = str(payload["id"])
    source_updated_at = str(payload.get("updated_at") or "")
    window = timedelta(hours=get_settings().webhook_dedup_window_hours)

    existing = await db.execute(
        select(WebhookDelivery)
        .where(
            WebhookDelivery.topic == topic,
            WebhookDelivery.external_id == external_id,
            WebhookDelivery.source_updated_at == source_updated_at,
            WebhookDelivery.received_at >= now - window,
        )
        .order_by(WebhookDelivery.id.desc())
        .limit(1)
    )
    prior = existing.scalar_one_or_none()
    if prior is not None:
        logger.info("Duplicate webhook %s %s (delivery %s)", topic, external_id, prior.id)
        return prior, True

    delivery = WebhookDelivery(
        topic=topic,
        external_id=external_id,
        source_updated_at=source_updated_at,
        payload=payload,
        disposition="pending",
        received_at=now,
    )
    db.add(delivery)
    await db.flush()
    job = await JobQueue(db).enqueue(
        PROCESS_WEBHOOK,
        {"delivery_id": delivery.id},
        idempotency_key=f"webhook:{delivery.id}",
        group_key=f"{topic_family(topic)}:{external_id}",
        now=now,
    )
    delivery.job_id = job.job_id
    await db.commit()
    return delivery, False


async def list_deliveries(
    db: AsyncSession,
    *,
    family: str | None = None,
    disposition: str | None = None,
    limit: int = 50,
) -> list[WebhookDelivery]:
    query = select(WebhookDelivery).order_by(WebhookDelivery.received_at.desc(), WebhookDelivery.id.desc()).limit(limit)
    if family:
        query = query.where(WebhookDelivery.topic.startswith(f"{family}."))
    if disposition:
        query = query.where(WebhookDelivery.disposition == disposition)
    return list((await db.execute(query)).scalars())


async def clear_failed_webhooks(db: AsyncSession, family: str = "product") -> int:
    """Drop dead-lettered webhook jobs of one family. Returns how many."""
    removed = await JobQueue(db).purge_dead_letters(PROCESS_WEBHOOK, group_key_prefix=f"{family}:")
    await db.commit()
    logger.info("Cleared %d failed %s webhooks", removed, family)
    return removed


async def prune_deliveries(db: AsyncSession, older_than: timedelta, *, now: datetime | None = None) -> int:
    """Delete settled deliveries past the dedup window. Does not commit."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        delete(WebhookDelivery).where(
            WebhookDelivery.received_at < now - older_than,
            WebhookDelivery.disposition != "pending",
        )
    )
    return result.rowcount or 0
