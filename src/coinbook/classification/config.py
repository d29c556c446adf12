"""Admin-editable flavor community settings with a short-lived process cache."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.config import get_settings
from coinbook.db.models import FlavorCommunityConfig
from coinbook.errors import ValidationFailed

logger = logging.getLogger(__name__)


class FlavorCommunitySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_products: int = Field(default=3, ge=1)
    enthusiast_top_pct: int = Field(default=40, ge=0, le=100)
    explorer_bottom_pct: int = Field(default=40, ge=0, le=100)
    delivered_status: str = Field(default="delivered", min_length=1, max_length=16)

    @model_validator(mode="after")
    def _percentiles_fit(self) -> FlavorCommunitySettings:
        if self.enthusiast_top_pct + self.explorer_bottom_pct > 100:
            msg = "enthusiast_top_pct + explorer_bottom_pct must not exceed 100"
            raise ValueError(msg)
        return self

    @classmethod
    def from_row(cls, row: FlavorCommunityConfig) -> FlavorCommunitySettings:
        return cls(
            min_products=row.min_products,
            enthusiast_top_pct=row.enthusiast_top_pct,
            explorer_bottom_pct=row.explorer_bottom_pct,
            delivered_status=row.delivered_status,
        )


class FlavorConfigStore:
    """Reads the singleton config row at most once per TTL."""

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: FlavorCommunitySettings | None = None
        self._loaded_at = 0.0

    @property
    def ttl(self) -> float:
        return self._ttl if self._ttl is not None else float(get_settings().flavor_config_ttl_seconds)

    async def get(self, db: AsyncSession) -> FlavorCommunitySettings:
        if self._value is not None and self._clock() - self._loaded_at < self.ttl:
            return self._value
        row = await db.get(FlavorCommunityConfig, 1)
        value = FlavorCommunitySettings.from_row(row) if row is not None else FlavorCommunitySettings()
        self._value = value
        self._loaded_at = self._clock()
        return value

    def invalidate(self) -> None:
        self._value = None

    async def update(self, db: AsyncSession, changes: dict[str, Any]) -> FlavorCommunitySettings:
        """Validate and persist a partial update; the cache is dropped on success."""
        row = await db.get(FlavorCommunityConfig, 1)
        if row is None:
            row = FlavorCommunityConfig(id=1)
            db.add(row)
            current = FlavorCommunitySettings()
        else:
            current = FlavorCommunitySettings.from_row(row)

        try:
            updated = FlavorCommunitySettings(**{**current.model_dump(), **changes})
        except ValidationError as exc:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]) or "config", "message": err["msg"]}
                for err in exc.errors()
            ]
            raise ValidationFailed("Invalid flavor community config", errors=errors) from exc

        for key, value in updated.model_dump().items():
            setattr(row, key, value)
        await db.commit()
        self.invalidate()
        logger.info("Flavor community config updated: %s", updated.model_dump())
        return updated


# Global singleton
flavor_config = FlavorConfigStore()
