"""Seed data: default achievement catalog, coin types and flavor config."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.achievements.tiers import DEFAULT_COLLECTION_THRESHOLDS
from coinbook.db.models import AchievementDefinition, CoinTypeConfig, FlavorCommunityConfig

logger = logging.getLogger(__name__)

_COLLECTION_TIERS = [list(t) for t in DEFAULT_COLLECTION_THRESHOLDS]
_COLLECTION_POINTS = [10, 20, 40, 80, 150]

ACHIEVEMENT_SEED_DATA: list[dict] = [
    # Ranking milestones
    {
        "code": "first_rank",
        "name": "First Bite",
        "description": "Rank your first product",
        "icon": "/icons/coins/first-bite.svg",
        "category": "ranking",
        "collection_type": "engagement_collection",
        "tier_thresholds": [["bronze", 1]],
        "points_per_tier": [5],
        "predicate": {"kind": "counter", "params": {"metric": "ranked_products"}},
        "sort_order": 1,
    },
    {
        "code": "ranker",
        "name": "Ranker",
        "description": "Build out your personal ranking list",
        "icon": "/icons/coins/ranker.svg",
        "category": "ranking",
        "collection_type": "engagement_collection",
        "tier_thresholds": [["bronze", 5], ["silver", 25], ["gold", 100]],
        "points_per_tier": [10, 40, 200],
        "predicate": {"kind": "counter", "params": {"metric": "ranked_products"}},
        "sort_order": 2,
    },
    {
        "code": "rank_marathon",
        "name": "Rank Marathon",
        "description": "Keep reshuffling: every rank you place counts",
        "icon": "/icons/coins/marathon.svg",
        "category": "ranking",
        "collection_type": "engagement_collection",
        "tier_thresholds": [["bronze", 50], ["silver", 250], ["gold", 1000]],
        "points_per_tier": [10, 50, 150],
        "predicate": {"kind": "counter", "params": {"metric": "rank_events"}},
        "sort_order": 3,
    },
    # Streaks
    {
        "code": "streak_keeper",
        "name": "Streak Keeper",
        "description": "Rank on consecutive days",
        "icon": "/icons/coins/streak.svg",
        "category": "streak",
        "collection_type": "engagement_collection",
        "tier_thresholds": [["bronze", 3], ["silver", 7], ["gold", 30], ["platinum", 100]],
        "points_per_tier": [10, 25, 100, 300],
        "predicate": {"kind": "streak", "params": {"event": "rank", "mode": "longest"}},
        "sort_order": 10,
    },
    {
        "code": "regular",
        "name": "Regular",
        "description": "Visit on consecutive days, ending today",
        "icon": "/icons/coins/regular.svg",
        "category": "engagement",
        "collection_type": "engagement_collection",
        "tier_thresholds": [["bronze", 3], ["silver", 7], ["gold", 14]],
        "points_per_tier": [5, 15, 40],
        "predicate": {"kind": "streak", "params": {"event": "login", "mode": "current"}},
        "sort_order": 11,
    },
    # Coverage
    {
        "code": "brand_explorer",
        "name": "Brand Explorer",
        "description": "Rank products from many different makers",
        "icon": "/icons/coins/brands.svg",
        "category": "ranking",
        "collection_type": "engagement_collection",
        "tier_thresholds": [["bronze", 3], ["silver", 10], ["gold", 25]],
        "points_per_tier": [10, 30, 80],
        "predicate": {"kind": "set_coverage", "params": {"attribute": "vendor"}},
        "sort_order": 20,
    },
    {
        "code": "protein_passport",
        "name": "Protein Passport",
        "description": "Rank jerky from different proteins",
        "icon": "/icons/coins/passport.svg",
        "category": "ranking",
        "collection_type": "engagement_collection",
        "tier_thresholds": [["bronze", 2], ["silver", 4], ["gold", 6]],
        "points_per_tier": [10, 30, 80],
        "predicate": {"kind": "set_coverage", "params": {"attribute": "protein_category"}},
        "sort_order": 21,
    },
    {
        "code": "flavor_spectrum",
        "name": "Flavor Spectrum",
        "description": "Fill your top ten with distinct flavor profiles",
        "icon": "/icons/coins/spectrum.svg",
        "category": "ranking",
        "collection_type": "engagement_collection",
        "tier_thresholds": [["bronze", 3], ["silver", 5], ["gold", 8]],
        "points_per_tier": [10, 30, 80],
        "predicate": {"kind": "set_coverage", "params": {"attribute": "flavor_profile", "max_position": 10}},
        "sort_order": 22,
    },
    # Dynamic collections
    {
        "code": "beef_collection",
        "name": "Beef Collection",
        "description": "Rank every beef jerky in the catalog",
        "icon": "/icons/coins/beef.svg",
        "category": "collection",
        "collection_type": "dynamic_collection",
        "tier_thresholds": _COLLECTION_TIERS,
        "points_per_tier": _COLLECTION_POINTS,
        "predicate": {"kind": "collection", "params": {"match": {"protein_category": "beef"}}},
        "sort_order": 30,
    },
    {
        "code": "spicy_collection",
        "name": "Heat Seeker",
        "description": "Rank every spicy product in the catalog",
        "icon": "/icons/coins/spicy.svg",
        "category": "collection",
        "collection_type": "dynamic_collection",
        "tier_thresholds": _COLLECTION_TIERS,
        "points_per_tier": _COLLECTION_POINTS,
        "predicate": {"kind": "collection", "params": {"match": {"flavor_profile": "spicy"}}},
        "sort_order": 31,
    },
    {
        "code": "completionist",
        "name": "Completionist",
        "description": "Rank every product we sell",
        "icon": "/icons/coins/completionist.svg",
        "category": "collection",
        "collection_type": "dynamic_collection",
        "tier_thresholds": _COLLECTION_TIERS,
        "points_per_tier": [25, 50, 100, 200, 500],
        "predicate": {"kind": "collection", "params": {"match": "all"}},
        "prerequisite_code": "ranker",
        "sort_order": 32,
    },
    # Engagement
    {
        "code": "critic",
        "name": "Critic",
        "description": "Write product reviews",
        "icon": "/icons/coins/critic.svg",
        "category": "engagement",
        "collection_type": "engagement_collection",
        "tier_thresholds": [["bronze", 1], ["silver", 10], ["gold", 50]],
        "points_per_tier": [5, 25, 100],
        "predicate": {"kind": "counter", "params": {"metric": "reviews"}},
        "sort_order": 40,
    },
    {
        "code": "window_shopper",
        "name": "Window Shopper",
        "description": "Browse product pages",
        "icon": "/icons/coins/window.svg",
        "category": "engagement",
        "collection_type": "engagement_collection",
        "tier_thresholds": [["bronze", 25], ["silver", 100], ["gold", 500]],
        "points_per_tier": [5, 15, 40],
        "predicate": {"kind": "counter", "params": {"metric": "product_views"}},
        "sort_order": 41,
    },
    {
        "code": "special_delivery",
        "name": "Special Delivery",
        "description": "Receive jerky deliveries",
        "icon": "/icons/coins/delivery.svg",
        "category": "purchase",
        "collection_type": "engagement_collection",
        "tier_thresholds": [["bronze", 1], ["silver", 10], ["gold", 25]],
        "points_per_tier": [5, 25, 75],
        "predicate": {"kind": "counter", "params": {"metric": "deliveries"}},
        "sort_order": 42,
    },
    # Secrets
    {
        "code": "night_owl",
        "name": "Night Owl",
        "description": "Rank three products between 2 and 4 in the morning",
        "icon": "/icons/coins/night-owl.svg",
        "category": "secret",
        "collection_type": "hidden_collection",
        "tier_thresholds": [["gold", 3]],
        "points_per_tier": [100],
        "is_hidden": True,
        "predicate": {"kind": "secret", "params": {"rule": "night_owl", "start_hour": 2, "end_hour": 4}},
        "sort_order": 90,
    },
    {
        "code": "title_twins",
        "name": "Title Triplets",
        "description": "Rank three products whose names are exactly the same length",
        "icon": "/icons/coins/triplets.svg",
        "category": "secret",
        "collection_type": "hidden_collection",
        "tier_thresholds": [["silver", 1]],
        "points_per_tier": [50],
        "is_hidden": True,
        "predicate": {"kind": "secret", "params": {"rule": "title_length_triplet", "size": 3}},
        "sort_order": 91,
    },
    {
        "code": "bookends",
        "name": "Bookends",
        "description": "Put the same maker at the top and bottom of a list of ten or more",
        "icon": "/icons/coins/bookends.svg",
        "category": "secret",
        "collection_type": "hidden_collection",
        "tier_thresholds": [["silver", 1]],
        "points_per_tier": [50],
        "is_hidden": True,
        "predicate": {"kind": "secret", "params": {"rule": "bookends", "min_length": 10}},
        "sort_order": 92,
    },
    {
        "code": "early_adopter",
        "name": "Early Adopter",
        "description": "Joined before the coin book launched",
        "icon": "/icons/coins/early.svg",
        "category": "secret",
        "collection_type": "hidden_collection",
        "tier_thresholds": [["gold", 1]],
        "points_per_tier": [100],
        "is_hidden": True,
        "predicate": {"kind": "secret", "params": {"rule": "early_adopter", "before": "2026-01-01"}},
        "sort_order": 93,
    },
]

COIN_TYPE_SEED_DATA: list[dict] = [
    {"collection_type": "flavor_coin", "label": "Flavor Coins", "color": "#c0392b",
     "description": "Earned for ranking individual products", "icon": "/icons/types/flavor.svg", "sort_order": 1},
    {"collection_type": "engagement_collection", "label": "Engagement", "color": "#2980b9",
     "description": "Milestones for ranking, streaks and activity", "icon": "/icons/types/engagement.svg",
     "sort_order": 2},
    {"collection_type": "static_collection", "label": "Collections", "color": "#27ae60",
     "description": "Hand-picked product sets", "icon": "/icons/types/static.svg", "sort_order": 3},
    {"collection_type": "dynamic_collection", "label": "Catalog Collections", "color": "#8e44ad",
     "description": "Sets that grow with the catalog", "icon": "/icons/types/dynamic.svg", "sort_order": 4},
    {"collection_type": "hidden_collection", "label": "Secrets", "color": "#2c3e50",
     "description": "Hidden until you find them", "icon": "/icons/types/hidden.svg", "sort_order": 5},
]


async def seed_achievements(db: AsyncSession) -> int:
    """Insert missing achievement definitions and coin types. Returns number inserted.

    Existing rows are left alone so admin edits survive restarts.
    """
    existing = set((await db.execute(select(AchievementDefinition.code))).scalars())
    inserted = 0
    for data in ACHIEVEMENT_SEED_DATA:
        if data["code"] in existing:
            continue
        db.add(AchievementDefinition(**data))
        inserted += 1

    existing_types = set((await db.execute(select(CoinTypeConfig.collection_type))).scalars())
    for data in COIN_TYPE_SEED_DATA:
        if data["collection_type"] not in existing_types:
            db.add(CoinTypeConfig(**data))

    if await db.get(FlavorCommunityConfig, 1) is None:
        db.add(FlavorCommunityConfig(id=1))

    await db.commit()
    logger.info("Seeded %d achievement definitions", inserted)
    return inserted
