"""Process-wide achievement definition cache.

Definitions are loaded on first request, dropped on admin updates, and never
served more than ``ttl_seconds`` after they were read. Callers get frozen
`AchievementSpec` copies, never ORM rows.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.achievements.predicates import ALL_TRIGGERS, needs_catalog, triggers_for
from coinbook.config import get_settings
from coinbook.db.models import AchievementDefinition

logger = logging.getLogger(__name__)

COLLECTION_TYPES = frozenset({
    "flavor_coin",
    "static_collection",
    "dynamic_collection",
    "engagement_collection",
    "hidden_collection",
})

_URI_PREFIXES = ("http://", "https://", "data:", "/", "s3://", "gs://")
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/\s]+={0,2}$")


def normalize_icon(value: str | None) -> str | None:
    """Coerce bare base-64 image data to a data URI; pass URIs and paths through."""
    if not value:
        return value
    stripped = value.strip()
    if stripped.startswith(_URI_PREFIXES) or len(stripped) < 64:
        return stripped
    if _BASE64_RE.match(stripped):
        return "data:image/png;base64," + re.sub(r"\s+", "", stripped)
    return stripped


@dataclass(frozen=True)
class AchievementSpec:
    """Immutable view of one achievement definition."""

    id: int
    code: str
    name: str
    description: str
    icon: str | None
    category: str
    collection_type: str
    thresholds: tuple[tuple[str, int], ...]
    points_per_tier: tuple[int, ...]
    hidden_flag: bool
    predicate: Mapping[str, Any]
    prerequisite_code: str | None
    sort_order: int

    @property
    def is_hidden(self) -> bool:
        return self.hidden_flag or self.collection_type == "hidden_collection"

    @property
    def triggers(self) -> frozenset[str]:
        return triggers_for(self.predicate)

    @property
    def needs_catalog(self) -> bool:
        return needs_catalog(self.predicate)

    def listens_to(self, triggers: frozenset[str]) -> bool:
        return ALL_TRIGGERS in triggers or bool(self.triggers & triggers)

    @classmethod
    def from_row(cls, row: AchievementDefinition) -> AchievementSpec:
        return cls(
            id=row.id,
            code=row.code,
            name=row.name,
            description=row.description,
            icon=normalize_icon(row.icon),
            category=row.category,
            collection_type=row.collection_type,
            thresholds=tuple((str(t), int(c)) for t, c in row.tier_thresholds),
            points_per_tier=tuple(int(p) for p in row.points_per_tier),
            hidden_flag=bool(row.is_hidden),
            predicate=MappingProxyType(copy.deepcopy(row.predicate)),
            prerequisite_code=row.prerequisite_code,
            sort_order=row.sort_order or 0,
        )


class AchievementRegistry:
    """Code -> definition mapping with load-on-first-request and TTL expiry."""

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._specs: tuple[AchievementSpec, ...] | None = None
        self._by_code: dict[str, AchievementSpec] = {}
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl if self._ttl is not None else float(get_settings().registry_ttl_seconds)

    def _fresh(self) -> bool:
        return self._specs is not None and (self._clock() - self._loaded_at) < self.ttl

    async def get_all(self, db: AsyncSession) -> tuple[AchievementSpec, ...]:
        """All active definitions ordered by sort_order then id."""
        if self._fresh():
            return self._specs  # type: ignore[return-value]
        async with self._lock:
            if not self._fresh():
                await self._load(db)
        return self._specs  # type: ignore[return-value]

    async def get(self, db: AsyncSession, code: str) -> AchievementSpec | None:
        await self.get_all(db)
        return self._by_code.get(code)

    async def for_triggers(self, db: AsyncSession, triggers: frozenset[str]) -> list[AchievementSpec]:
        return [spec for spec in await self.get_all(db) if spec.listens_to(triggers)]

    def invalidate(self) -> None:
        """Drop the cache; the next request reloads."""
        self._specs = None
        self._by_code = {}
        logger.info("Achievement registry invalidated")

    async def _load(self, db: AsyncSession) -> None:
        result = await db.execute(
            select(AchievementDefinition)
            .where(AchievementDefinition.is_active.is_(True))
            .order_by(AchievementDefinition.sort_order, AchievementDefinition.id)
        )
        specs = tuple(AchievementSpec.from_row(row) for row in result.scalars())
        self._specs = specs
        self._by_code = {s.code: s for s in specs}
        self._loaded_at = self._clock()
        logger.info("Loaded %d achievement definitions", len(specs))


# Global singleton
registry = AchievementRegistry()
