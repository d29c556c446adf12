"""Webhook job handler: apply one delivery and record its disposition.

Each delivery ends as ``processed`` (state changed), ``skipped`` (stale or
irrelevant) or ``noted`` (accepted but nothing to change), always with a
reason string that admins can read back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.db.models import Product, ProductMetadata, User, WebhookDelivery
from coinbook.errors import ValidationFailed
from coinbook.events import ORDER_DELIVERED, emit_user_event, publish_to_room
from coinbook.imports.order_sync import sync_orders, upsert_customer
from coinbook.jobs.kinds import CLASSIFY_USER, EVALUATE_ACHIEVEMENTS
from coinbook.jobs.queue import JobQueue
from coinbook.timeutil import as_utc
from coinbook.webhooks.service import topic_family

logger = logging.getLogger(__name__)

FAMILY_ROOMS = {
    "product": "product-webhooks",
    "order": "customer-orders",
    "customer": "customer-orders",
}

FLAVOR_TAG_PREFIX = "flavor:"
PROTEIN_TAG_PREFIX = "protein:"
RANKABLE_TAG = "rankable"


@dataclass
class Outcome:
    disposition: str
    reason: str
    delivered: list[int] = field(default_factory=list)
    user_id: int | None = None


def _parse_time(value: Any) -> datetime | None:  # noqa: ANN401
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_tags(raw: Any) -> list[str]:  # noqa: ANN401
    if isinstance(raw, str):
        parts = raw.split(",")
    else:
        parts = list(raw or [])
    return [str(p).strip().lower() for p in parts if str(p).strip()]


def metadata_from_tags(tags: list[str]) -> dict[str, Any]:
    return {
        "flavor_profiles": sorted({t[len(FLAVOR_TAG_PREFIX):].strip() for t in tags if t.startswith(FLAVOR_TAG_PREFIX)}),
        "protein_category": next((t[len(PROTEIN_TAG_PREFIX):].strip() for t in tags if t.startswith(PROTEIN_TAG_PREFIX)), None),
        "force_rankable": RANKABLE_TAG in tags,
    }


async def _product_upsert(db: AsyncSession, payload: dict[str, Any]) -> Outcome:
    external_id = str(payload["id"])
    updated_at = _parse_time(payload.get("updated_at"))
    result = await db.execute(select(Product).where(Product.external_id == external_id))
    product = result.scalar_one_or_none()

    if product is not None and product.external_updated_at is not None and updated_at is not None:
        if updated_at <= as_utc(product.external_updated_at):
            return Outcome("skipped", "older than current version")

    if product is None:
        product = Product(external_id=external_id, title=payload.get("title") or f"Product {external_id}")
        db.add(product)
    product.title = payload.get("title") or product.title
    product.vendor = payload.get("vendor") or product.vendor
    image = payload.get("image") or {}
    if isinstance(image, dict) and image.get("src"):
        product.image_url = image["src"]
    product.is_active = payload.get("status", "active") == "active"
    product.external_updated_at = updated_at
    product.updated_at = datetime.now(timezone.utc)
    await db.flush()

    meta = await db.get(ProductMetadata, product.id)
    fields = metadata_from_tags(parse_tags(payload.get("tags")))
    if meta is None:
        meta = ProductMetadata(product_id=product.id)
        db.add(meta)
    meta.flavor_profiles = fields["flavor_profiles"]
    meta.protein_category = fields["protein_category"] or meta.protein_category
    meta.force_rankable = fields["force_rankable"] or bool(meta.force_rankable)
    meta.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return Outcome("processed", "product upserted")


async def _product_delete(db: AsyncSession, payload: dict[str, Any]) -> Outcome:
    result = await db.execute(select(Product).where(Product.external_id == str(payload["id"])))
    product = result.scalar_one_or_none()
    if product is None:
        return Outcome("noted", "unknown product")
    if not product.is_active:
        return Outcome("skipped", "already inactive")
    product.is_active = False
    product.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return Outcome("processed", "product deactivated")


async def _customer(db: AsyncSession, payload: dict[str, Any]) -> Outcome:
    outcome = await upsert_customer(db, payload)
    if outcome.created:
        return Outcome("processed", "customer created", user_id=outcome.user_id)
    if outcome.updated:
        return Outcome("processed", "customer updated", user_id=outcome.user_id)
    return Outcome("noted", "no customer changes", user_id=outcome.user_id)


async def _order(db: AsyncSession, topic: str, payload: dict[str, Any]) -> Outcome:
    customer = payload.get("customer") or {}
    if customer.get("id") is None:
        return Outcome("skipped", "order has no customer")
    result = await db.execute(select(User.id).where(User.external_customer_id == str(customer["id"])))
    user_id = result.scalar_one_or_none()
    if user_id is None:
        user_id = (await upsert_customer(db, customer)).user_id

    order = payload
    if topic == "order.delivered":
        # An explicit delivery notification covers every line of the order
        order = {
            **payload,
            "fulfillments": [{
                "shipment_status": "delivered",
                "line_items": [{"id": li.get("id")} for li in payload.get("line_items") or []],
            }],
        }
    synced = await sync_orders(db, user_id, [order])
    if synced.items == 0:
        return Outcome("skipped", "no line items", user_id=user_id)
    if not synced.status_changed:
        return Outcome("noted", "no status change", user_id=user_id)
    return Outcome("processed", f"{synced.items} line items synced", delivered=synced.newly_delivered, user_id=user_id)


async def process_delivery(db: AsyncSession, redis: Any, delivery_id: int) -> Outcome:  # noqa: ANN401
    """Apply one stored delivery. Commits."""
    delivery = await db.get(WebhookDelivery, delivery_id)
    if delivery is None:
        raise ValidationFailed("Webhook delivery not found", delivery_id=delivery_id)
    if delivery.disposition != "pending":
        return Outcome(delivery.disposition, delivery.reason or "already handled")

    topic = delivery.topic
    payload = delivery.payload or {}
    family = topic_family(topic)
    if family == "product":
        outcome = await (_product_delete(db, payload) if topic == "product.deleted" else _product_upsert(db, payload))
    elif family == "customer":
        outcome = await _customer(db, payload)
    elif family == "order":
        outcome = await _order(db, topic, payload)
    else:
        outcome = Outcome("noted", f"no handler for {topic}")

    if outcome.user_id is not None and outcome.disposition == "processed" and family == "order":
        queue = JobQueue(db)
        source = f"webhook:{delivery.id}"
        await queue.enqueue(
            CLASSIFY_USER, {"user_id": outcome.user_id},
            idempotency_key=f"classify:{outcome.user_id}:{source}",
        )
        if outcome.delivered:
            await queue.enqueue(
                EVALUATE_ACHIEVEMENTS, {"user_id": outcome.user_id, "trigger": "delivery"},
                idempotency_key=f"eval:delivery:{outcome.user_id}:{source}",
            )

    delivery.disposition = outcome.disposition
    delivery.reason = outcome.reason
    delivery.processed_at = datetime.now(timezone.utc)
    await db.commit()
    logger.info("Webhook %s %s -> %s (%s)", topic, delivery.external_id, outcome.disposition, outcome.reason)

    if outcome.delivered and outcome.user_id is not None:
        await emit_user_event(redis, outcome.user_id, ORDER_DELIVERED, {"product_ids": outcome.delivered})
    room = FAMILY_ROOMS.get(family)
    if room is not None:
        await publish_to_room(redis, room, "webhook.processed", {
            "delivery_id": delivery.id,
            "topic": topic,
            "external_id": delivery.external_id,
            "disposition": outcome.disposition,
            "reason": outcome.reason,
        })
    return outcome


async def mark_failed(db: AsyncSession, delivery_id: int, error: str) -> None:
    """Record a delivery whose job was dead-lettered. Commits."""
    delivery = await db.get(WebhookDelivery, delivery_id)
    if delivery is None:
        return
    delivery.disposition = "failed"
    delivery.reason = error[:500]
    delivery.processed_at = datetime.now(timezone.utc)
    await db.commit()
