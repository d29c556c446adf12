"""User projection: the slices of the event log that predicates read.

`load_projection` is the only part that touches the database. Everything
the predicate interpreters see is an immutable snapshot built here.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.db.models import (
    CustomerOrderItem,
    Product,
    ProductMetadata,
    ProductRanking,
    RankingEvent,
    User,
    UserEvent,
)
from coinbook.timeutil import as_utc

# Event kinds recorded in user_events
ACTIVITY_KINDS = frozenset({"login", "rate", "review", "view", "search"})


@dataclass(frozen=True)
class ProductFacts:
    """Attributes of a product that predicates can match on."""

    product_id: int
    title: str
    vendor: str | None
    protein_category: str | None
    flavor_profiles: tuple[str, ...]


@dataclass(frozen=True)
class RankedProduct:
    product: ProductFacts
    position: int
    ranked_at: datetime


@dataclass
class UserProjection:
    user_id: int
    created_at: datetime
    timezone: str
    rankings: list[RankedProduct] = field(default_factory=list)
    # kind -> occurrence times; kinds: rank, login, rate, review, view, search, delivery
    events: dict[str, list[datetime]] = field(default_factory=dict)
    catalog: list[ProductFacts] = field(default_factory=list)
    earned: dict[str, str] = field(default_factory=dict)

    def times(self, kind: str) -> list[datetime]:
        return self.events.get(kind, [])

    def ranked_ids(self) -> set[int]:
        return {r.product.product_id for r in self.rankings}


def product_facts(product: Product, meta: ProductMetadata | None) -> ProductFacts:
    return ProductFacts(
        product_id=product.id,
        title=product.title,
        vendor=product.vendor,
        protein_category=(meta.protein_category if meta else None),
        flavor_profiles=tuple(meta.flavor_profiles) if meta and meta.flavor_profiles else (),
    )


async def load_catalog(db: AsyncSession) -> list[ProductFacts]:
    """All active products, for dynamic collection membership."""
    result = await db.execute(
        select(Product, ProductMetadata)
        .outerjoin(ProductMetadata, ProductMetadata.product_id == Product.id)
        .where(Product.is_active.is_(True))
        .order_by(Product.id)
    )
    return [product_facts(p, m) for p, m in result.unique().all()]


async def load_projection(
    db: AsyncSession,
    user_id: int,
    *,
    delivered_status: str = "delivered",
    include_catalog: bool = False,
) -> UserProjection | None:
    """Build the projection for one user, or None if the user does not exist."""
    user = await db.get(User, user_id)
    if user is None:
        return None

    projection = UserProjection(
        user_id=user.id,
        created_at=as_utc(user.created_at),
        timezone=user.timezone or "UTC",
    )

    ranked = await db.execute(
        select(ProductRanking, Product, ProductMetadata)
        .join(Product, Product.id == ProductRanking.product_id)
        .outerjoin(ProductMetadata, ProductMetadata.product_id == Product.id)
        .where(ProductRanking.user_id == user_id)
        .order_by(ProductRanking.position)
    )
    projection.rankings = [
        RankedProduct(product=product_facts(p, m), position=r.position, ranked_at=as_utc(r.ranked_at))
        for r, p, m in ranked.unique().all()
    ]

    events: dict[str, list[datetime]] = defaultdict(list)

    rank_times = await db.execute(
        select(RankingEvent.occurred_at)
        .where(RankingEvent.user_id == user_id, RankingEvent.action == "ranked")
        .order_by(RankingEvent.id)
    )
    events["rank"] = [as_utc(t) for t in rank_times.scalars()]

    activity = await db.execute(
        select(UserEvent.kind, UserEvent.occurred_at)
        .where(UserEvent.user_id == user_id)
        .order_by(UserEvent.id)
    )
    for kind, occurred_at in activity.all():
        events[kind].append(as_utc(occurred_at))

    deliveries = await db.execute(
        select(CustomerOrderItem.updated_at).where(
            CustomerOrderItem.user_id == user_id,
            CustomerOrderItem.fulfillment_status == delivered_status,
        )
    )
    events["delivery"] = [as_utc(t) for t in deliveries.scalars()]

    projection.events = dict(events)

    if include_catalog:
        projection.catalog = await load_catalog(db)

    return projection
