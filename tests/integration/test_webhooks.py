"""Webhook receipt, dedup and processing."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from coinbook.db.models import CustomerOrderItem, Job, Product, ProductMetadata, User, WebhookDelivery
from coinbook.errors import ValidationFailed
from coinbook.jobs.kinds import EVALUATE_ACHIEVEMENTS, PROCESS_WEBHOOK
from coinbook.jobs.queue import JobQueue
from coinbook.webhooks.processor import mark_failed, process_delivery
from coinbook.webhooks.service import clear_failed_webhooks, list_deliveries, prune_deliveries, receive_webhook

pytestmark = pytest.mark.asyncio

PRODUCT = {
    "id": 555,
    "title": "Carolina Reaper Strips",
    "vendor": "Ridge Smokehouse",
    "status": "active",
    "tags": "flavor:spicy, flavor:smoky, protein:beef",
    "updated_at": "2026-06-01T10:00:00Z",
}


async def _delivery(db, delivery_id: int) -> WebhookDelivery:
    return await db.get(WebhookDelivery, delivery_id, populate_existing=True)


async def test_receive_enqueues_once(db_session):
    delivery, duplicate = await receive_webhook(db_session, "product.updated", PRODUCT)
    again, duplicate_again = await receive_webhook(db_session, "product.updated", dict(PRODUCT))

    assert not duplicate and duplicate_again
    assert again.id == delivery.id
    jobs = (await db_session.execute(select(Job).where(Job.kind == PROCESS_WEBHOOK))).scalars().all()
    assert [(j.payload, j.group_key) for j in jobs] == [({"delivery_id": delivery.id}, "product:555")]


async def test_newer_version_is_not_a_duplicate(db_session):
    await receive_webhook(db_session, "product.updated", PRODUCT)
    _, duplicate = await receive_webhook(db_session, "product.updated", {**PRODUCT, "updated_at": "2026-06-02T10:00:00Z"})
    assert not duplicate


async def test_dedup_window_expires(db_session):
    now = datetime(2026, 6, 15, tzinfo=timezone.utc)
    await receive_webhook(db_session, "product.updated", PRODUCT, now=now)
    _, duplicate = await receive_webhook(db_session, "product.updated", PRODUCT, now=now + timedelta(hours=25))
    assert not duplicate


async def test_unknown_topic_rejected(db_session):
    with pytest.raises(ValidationFailed):
        await receive_webhook(db_session, "app.uninstalled", {"id": 1})
    with pytest.raises(ValidationFailed):
        await receive_webhook(db_session, "product.updated", {"title": "no id"})


async def test_product_upsert_then_stale_replay(db_session, mock_redis):
    delivery, _ = await receive_webhook(db_session, "product.updated", PRODUCT)
    outcome = await process_delivery(db_session, mock_redis, delivery.id)
    assert outcome.disposition == "processed"

    product = (await db_session.execute(select(Product).where(Product.external_id == "555"))).scalar_one()
    meta = await db_session.get(ProductMetadata, product.id)
    assert meta.flavor_profiles == ["smoky", "spicy"]
    assert meta.protein_category == "beef"

    older, _ = await receive_webhook(db_session, "product.updated", {**PRODUCT, "updated_at": "2026-05-01T10:00:00Z"})
    stale = await process_delivery(db_session, mock_redis, older.id)
    assert stale.disposition == "skipped"
    assert (await _delivery(db_session, older.id)).reason == "older than current version"

    rooms = {call.args[0] for call in mock_redis.publish.call_args_list}
    assert rooms == {"ws:room:product-webhooks"}


async def test_processing_twice_is_a_no_op(db_session, mock_redis):
    delivery, _ = await receive_webhook(db_session, "product.updated", PRODUCT)
    await process_delivery(db_session, mock_redis, delivery.id)
    again = await process_delivery(db_session, mock_redis, delivery.id)
    assert again.disposition == "processed"
    assert again.reason == "product upserted"


async def test_delete_unknown_product_is_noted(db_session):
    delivery, _ = await receive_webhook(db_session, "product.deleted", {"id": 999})
    outcome = await process_delivery(db_session, None, delivery.id)
    assert outcome.disposition == "noted"


async def test_order_delivered_marks_lines_and_schedules_evaluation(db_session, mock_redis, make_product):
    product = await make_product("Honey Glazed", external_id="777")
    order = {
        "id": 42,
        "order_number": 9001,
        "updated_at": "2026-06-10T08:00:00Z",
        "customer": {"id": 31, "email": "buyer@example.com"},
        "line_items": [{"id": 1, "product_id": 777, "sku": "HG-1", "quantity": 1, "fulfillment_status": "fulfilled"}],
    }
    delivery, _ = await receive_webhook(db_session, "order.delivered", order)
    outcome = await process_delivery(db_session, mock_redis, delivery.id)

    assert outcome.disposition == "processed"
    assert outcome.delivered == [product.id]
    user = (await db_session.execute(select(User).where(User.external_customer_id == "31"))).scalar_one()
    item = (await db_session.execute(select(CustomerOrderItem))).scalar_one()
    assert (item.user_id, item.fulfillment_status) == (user.id, "delivered")

    jobs = (await db_session.execute(select(Job.kind, Job.payload).where(Job.kind == EVALUATE_ACHIEVEMENTS))).all()
    assert jobs == [(EVALUATE_ACHIEVEMENTS, {"user_id": user.id, "trigger": "delivery"})]

    channels = [call.args[0] for call in mock_redis.publish.call_args_list]
    assert f"ws:user:{user.id}" in channels
    assert "ws:room:customer-orders" in channels

    # The same order updated with an older status does not regress
    update, _ = await receive_webhook(db_session, "order.updated", {**order, "updated_at": "2026-06-11T08:00:00Z"})
    assert (await process_delivery(db_session, mock_redis, update.id)).disposition == "noted"


async def test_order_without_customer_is_skipped(db_session):
    delivery, _ = await receive_webhook(db_session, "order.created", {"id": 1, "line_items": []})
    assert (await process_delivery(db_session, None, delivery.id)).disposition == "skipped"


async def test_failed_deliveries_and_retention(db_session):
    now = datetime.now(timezone.utc)
    delivery, _ = await receive_webhook(db_session, "product.updated", PRODUCT, now=now - timedelta(days=10))
    await mark_failed(db_session, delivery.id, "boom")
    assert [d.id for d in await list_deliveries(db_session, family="product", disposition="failed")] == [delivery.id]

    queue = JobQueue(db_session)
    job = await queue.reserve([PROCESS_WEBHOOK], now=now)
    await queue.nack(job.id, "boom", terminal=True, now=now)
    await db_session.commit()
    assert await clear_failed_webhooks(db_session, "product") == 1

    assert await prune_deliveries(db_session, timedelta(days=7), now=now) == 1
    await db_session.commit()
    assert await list_deliveries(db_session) == []
