"""Guidance endpoint: one contextual message per page."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.achievements.registry import registry
from coinbook.achievements.tiers import first_tier
from coinbook.auth.dependencies import get_current_user
from coinbook.classification.service import user_flavor_states
from coinbook.database import get_session
from coinbook.db.models import User
from coinbook.guidance.commentary import PAGE_CATEGORIES, FlavorStanding, select_guidance
from coinbook.progress.service import closest_unearned, get_progress
from coinbook.rankings.service import count_rankable_products

router = APIRouter(prefix="/api/v1", tags=["Guidance"])


class SuggestedAction(BaseModel):
    label: str
    target: str


class GuidanceResponse(BaseModel):
    title: str
    message: str
    icon: str
    type: str
    suggested_action: SuggestedAction | None = None
    journey_stage: str
    flavor_state: str | None = None


@router.get("/guidance", response_model=GuidanceResponse)
async def get_guidance(
    page: str = Query(default="general", max_length=32),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Pick the headline and next action for the given page."""
    now = datetime.now(timezone.utc)
    states = await user_flavor_states(db, user.id)
    standings = [FlavorStanding(profile=s.flavor_profile, state=s.state, ranked_count=s.ranked_count) for s in states]
    progress = await get_progress(db, user.id)
    milestone = await closest_unearned(db, user.id, category=PAGE_CATEGORIES.get(page), now=now)

    tier_held = False
    if milestone is not None:
        spec = await registry.get(db, milestone.code)
        tier_held = spec is not None and milestone.next_tier != first_tier(spec.thresholds)

    guidance = select_guidance(
        standings,
        progress,
        page,
        now=now,
        total_rankable=await count_rankable_products(db, user),
        next_achievement=milestone,
        next_achievement_tier_held=tier_held,
    )
    return GuidanceResponse(**guidance.to_dict())
