"""ORM models for the coinbook schema.

The event log tables (ranking_events, user_events) are append-only and own
the truth about user activity. Everything else that is derived from them
(product_rankings, user_achievements, flavor_profile_states) is a projection
that can be rebuilt.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coinbook.db.base import Base, BigIntId, JSONType
from coinbook.timeutil import utcnow


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """Customers and admins. Created on first sight, never hard-deleted."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, unique=True)
    handle: Mapped[str | None] = mapped_column(String(64), nullable=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="regular", server_default="regular")
    privacy_flags: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC", server_default="UTC")

    # --- Commerce import ---
    external_customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    import_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    full_history_imported: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    last_import_session_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    last_imported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class Product(Base):
    """Catalog entry. Mutated only by import and webhooks."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    vendor: Mapped[str | None] = mapped_column(String(128), nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    external_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    meta: Mapped[ProductMetadata | None] = relationship(
        "ProductMetadata", uselist=False, lazy="joined", back_populates="product",
    )


class ProductMetadata(Base):
    """Flavor tags and rankability flags for a product."""

    __tablename__ = "product_metadata"

    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True,
    )
    flavor_profiles: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    protein_category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    force_rankable: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    product: Mapped[Product] = relationship("Product", back_populates="meta")


class CustomerOrderItem(Base):
    """One order line. fulfillment_status only moves forward along FULFILLMENT_ORDER."""

    __tablename__ = "customer_order_items"
    __table_args__ = (
        UniqueConstraint(
            "order_number", "product_id", "sku",
            name="customer_order_items_order_product_sku_key",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("products.id"), nullable=False, index=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    fulfillment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="unfulfilled")
    order_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------


class RankingEvent(Base):
    """Append-only ranking log. The id is the server-assigned sequence."""

    __tablename__ = "ranking_events"
    __table_args__ = (Index("ix_ranking_events_user_seq", "user_id", "id"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("products.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(8), nullable=False)  # ranked | removed
    position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)


class ProductRanking(Base):
    """Current ranking projection: the latest 'ranked' event per (user, product)."""

    __tablename__ = "product_rankings"
    __table_args__ = (
        UniqueConstraint("user_id", "position", name="product_rankings_user_id_position_key"),
    )

    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("products.id"), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    event_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ranked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class IngestRequest(Base):
    """Idempotency ledger for ranking snapshots."""

    __tablename__ = "ingest_requests"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    result: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class UserEvent(Base):
    """Append-only log of non-ranking activity: login, rate, review, view, search."""

    __tablename__ = "user_events"
    __table_args__ = (Index("ix_user_events_user_kind", "user_id", "kind"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    product_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("products.id"), nullable=True)
    value: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------


class AchievementDefinition(Base):
    """Achievement catalog. The predicate is data: {"kind": ..., "params": {...}}."""

    __tablename__ = "achievement_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    icon: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="ranking")
    collection_type: Mapped[str] = mapped_column(String(32), nullable=False, default="engagement_collection")
    tier_thresholds: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    points_per_tier: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)
    is_hidden: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    predicate: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    prerequisite_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class UserAchievement(Base):
    """Per-user achievement state. current_tier only ratchets upward."""

    __tablename__ = "user_achievements"
    __table_args__ = (
        UniqueConstraint("user_id", "achievement_id", name="user_achievements_user_id_achievement_id_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    achievement_id: Mapped[int] = mapped_column(Integer, ForeignKey("achievement_definitions.id"), nullable=False)
    current_tier: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_earned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_upgraded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AchievementTierAward(Base):
    """One row per tier ever awarded. UNIQUE(user_id, achievement_id, tier) makes awards idempotent."""

    __tablename__ = "achievement_tier_awards"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "achievement_id", "tier",
            name="achievement_tier_awards_user_achievement_tier_key",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    achievement_id: Mapped[int] = mapped_column(Integer, ForeignKey("achievement_definitions.id"), nullable=False)
    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    awarded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CoinTypeConfig(Base):
    """Display settings per collection type."""

    __tablename__ = "coin_type_config"

    collection_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    label: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    color: Mapped[str] = mapped_column(String(16), nullable=False, default="#888888")
    icon: Mapped[str | None] = mapped_column(Text, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)


# ---------------------------------------------------------------------------
# Flavor classification
# ---------------------------------------------------------------------------


class FlavorProfileState(Base):
    """Lifecycle state per (user, flavor profile). Recomputed, no history."""

    __tablename__ = "flavor_profile_states"

    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    flavor_profile: Mapped[str] = mapped_column(String(32), primary_key=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    purchased_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivered_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ranked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_position: Mapped[float | None] = mapped_column(Float, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class FlavorCommunityConfig(Base):
    """Singleton row (id=1) of admin-editable classification settings."""

    __tablename__ = "flavor_community_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    min_products: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    enthusiast_top_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=40)
    explorer_bottom_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=40)
    delivered_status: Mapped[str] = mapped_column(String(16), nullable=False, default="delivered")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class FlavorPercentileSnapshot(Base):
    """Boundary values from the last full classification run, per profile."""

    __tablename__ = "flavor_percentile_snapshots"

    flavor_profile: Mapped[str] = mapped_column(String(32), primary_key=True)
    cohort_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enthusiast_cutoff: Mapped[float | None] = mapped_column(Float, nullable=True)
    explorer_cutoff: Mapped[float | None] = mapped_column(Float, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Bulk import
# ---------------------------------------------------------------------------


class ImportSession(Base):
    """A resumable bulk import run."""

    __tablename__ = "import_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    phase: Mapped[str] = mapped_column(String(32), nullable=False, default="fetching_customers")
    options: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    pages_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    customers_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    users_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    users_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    jobs_enqueued: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    jobs_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    jobs_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    commerce_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    errors: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------


class Job(Base):
    """Durable job record. state: waiting | active | completed | failed."""

    __tablename__ = "jobs"
    __table_args__ = (Index("ix_jobs_kind_state_due", "kind", "state", "next_attempt_at"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="waiting")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    deferrals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    group_key: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    reserved_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class JobDeadLetter(Base):
    """Terminal resting place for jobs that exhausted retries."""

    __tablename__ = "job_dead_letter"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    group_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookDelivery(Base):
    """Received commerce webhook and the disposition its job reached."""

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_dedup", "topic", "external_id", "source_updated_at"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    topic: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_updated_at: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    job_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    disposition: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
