"""Flavor profile endpoints for the signed-in customer."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.auth.dependencies import get_current_user
from coinbook.classification.service import user_flavor_states
from coinbook.database import get_session
from coinbook.db.models import User
from coinbook.timeutil import as_utc

router = APIRouter(prefix="/api/v1", tags=["Flavor Profiles"])


class FlavorStateResponse(BaseModel):
    flavor_profile: str
    state: str
    ranked_count: int
    purchased_count: int
    delivered_count: int
    avg_position: float | None = None
    computed_at: datetime


class FlavorStatesResponse(BaseModel):
    profiles: list[FlavorStateResponse]


@router.get("/flavor-profiles/me", response_model=FlavorStatesResponse)
async def my_flavor_profiles(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    rows = await user_flavor_states(db, user.id)
    return FlavorStatesResponse(profiles=[
        FlavorStateResponse(
            flavor_profile=r.flavor_profile,
            state=r.state,
            ranked_count=r.ranked_count,
            purchased_count=r.purchased_count,
            delivered_count=r.delivered_count,
            avg_position=r.avg_position,
            computed_at=as_utc(r.computed_at),
        )
        for r in rows
    ])
