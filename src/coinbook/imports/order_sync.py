"""Mapping commerce customers and orders onto users and order items."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.db.models import CustomerOrderItem, Product, User

logger = logging.getLogger(__name__)

# Status only moves forward along this order
FULFILLMENT_ORDER = {
    "unfulfilled": 0,
    "partial": 1,
    "fulfilled": 2,
    "delivered": 3,
}


@dataclass
class CustomerUpsert:
    user_id: int
    created: bool = False
    updated: bool = False
    should_import: bool = False


@dataclass
class OrderSyncResult:
    orders: int = 0
    items: int = 0
    newly_delivered: list[int] = field(default_factory=list)
    status_changed: bool = False


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def line_item_status(item: dict[str, Any], order: dict[str, Any]) -> str:
    """Effective fulfillment status of one line.

    A line inside a fulfillment whose shipment was delivered is delivered;
    otherwise the line's own status, then the order's, then unfulfilled.
    """
    item_id = item.get("id")
    for fulfillment in order.get("fulfillments") or []:
        in_fulfillment = any(li.get("id") == item_id for li in fulfillment.get("line_items") or [])
        if in_fulfillment and fulfillment.get("shipment_status") == "delivered":
            return "delivered"
    status = item.get("fulfillment_status") or order.get("fulfillment_status") or "unfulfilled"
    return status if status in FULFILLMENT_ORDER else "unfulfilled"


def advance_status(current: str, incoming: str) -> str:
    """The later of two statuses; unknown values never overwrite known ones."""
    if FULFILLMENT_ORDER.get(incoming, -1) > FULFILLMENT_ORDER.get(current, -1):
        return incoming
    return current


async def upsert_customer(
    db: AsyncSession,
    customer: dict[str, Any],
    *,
    reimport_all: bool = False,
    import_session_id: str | None = None,
) -> CustomerUpsert:
    """Create or refresh the user for a commerce customer.

    A user needs importing when new, not yet fully imported, or when
    ``reimport_all`` is set, in which case its import status drops back to
    pending. Does not commit.
    """
    external_id = str(customer["id"])
    email = customer.get("email") or None
    handle = customer.get("first_name") or (email.split("@")[0] if email else None)

    result = await db.execute(select(User).where(User.external_customer_id == external_id))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(
            external_customer_id=external_id,
            email=email,
            handle=handle,
            import_status="pending",
            full_history_imported=False,
            last_import_session_id=import_session_id,
        )
        db.add(user)
        await db.flush()
        return CustomerUpsert(user_id=user.id, created=True, should_import=True)

    updated = False
    if email and email != user.email:
        user.email = email
        updated = True
    if handle and not user.handle:
        user.handle = handle
        updated = True

    should_import = reimport_all or not user.full_history_imported
    if should_import:
        user.import_status = "pending"
        user.last_import_session_id = import_session_id
    if updated or should_import:
        user.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return CustomerUpsert(user_id=user.id, updated=updated, should_import=should_import)


async def resolve_product(db: AsyncSession, item: dict[str, Any]) -> Product | None:
    """Product for an order line, creating an inactive stub for unknown catalog ids."""
    external_id = item.get("product_id")
    if external_id is None:
        return None
    result = await db.execute(select(Product).where(Product.external_id == str(external_id)))
    product = result.scalar_one_or_none()
    if product is None:
        product = Product(
            external_id=str(external_id),
            title=item.get("title") or f"Product {external_id}",
            vendor=item.get("vendor"),
            is_active=False,
        )
        db.add(product)
        await db.flush()
        logger.info("Created stub product %s from order line", external_id)
    return product


async def sync_orders(
    db: AsyncSession,
    user_id: int,
    orders: list[dict[str, Any]],
    *,
    delivered_status: str = "delivered",
    now: datetime | None = None,
) -> OrderSyncResult:
    """Upsert order lines for one user. Does not commit.

    Statuses never regress, so replaying an older copy of an order is a no-op.
    """
    now = now or datetime.now(timezone.utc)
    result = OrderSyncResult()
    for order in orders:
        order_number = str(order.get("order_number") or order.get("name") or order.get("id"))
        order_date = _parse_time(order.get("created_at"))
        result.orders += 1
        for item in order.get("line_items") or []:
            product = await resolve_product(db, item)
            if product is None:
                continue
            sku = str(item.get("sku") or "")
            incoming = line_item_status(item, order)

            existing = await db.execute(
                select(CustomerOrderItem).where(
                    CustomerOrderItem.order_number == order_number,
                    CustomerOrderItem.product_id == product.id,
                    CustomerOrderItem.sku == sku,
                )
            )
            row = existing.scalar_one_or_none()
            if row is None:
                row = CustomerOrderItem(
                    user_id=user_id,
                    order_number=order_number,
                    product_id=product.id,
                    sku=sku,
                    quantity=int(item.get("quantity") or 1),
                    fulfillment_status=incoming,
                    order_date=order_date,
                    updated_at=now,
                )
                db.add(row)
                result.status_changed = True
                if incoming == delivered_status:
                    result.newly_delivered.append(product.id)
            else:
                status = advance_status(row.fulfillment_status, incoming)
                if status != row.fulfillment_status:
                    row.fulfillment_status = status
                    row.updated_at = now
                    result.status_changed = True
                    if status == delivered_status:
                        result.newly_delivered.append(product.id)
                row.quantity = int(item.get("quantity") or row.quantity)
            result.items += 1
    await db.flush()
    return result


async def mark_import_status(db: AsyncSession, user_id: int, status: str) -> None:
    """Does not commit."""
    user = await db.get(User, user_id)
    if user is None:
        return
    now = datetime.now(timezone.utc)
    user.import_status = status
    user.updated_at = now
    if status == "completed":
        user.full_history_imported = True
        user.last_imported_at = now
    await db.flush()
