"""Achievement, coin type and progress endpoints."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.achievements.schemas import (
    AchievementListResponse,
    AchievementResponse,
    CoinTypeListResponse,
    CoinTypeResponse,
    ProgressSummaryResponse,
)
from coinbook.achievements.service import list_achievements_with_progress, list_coin_types
from coinbook.auth.dependencies import get_current_user
from coinbook.database import get_session
from coinbook.db.models import User
from coinbook.errors import InvariantViolation
from coinbook.progress.service import get_progress

router = APIRouter(prefix="/api/v1", tags=["Achievements"])


@router.get("/achievements", response_model=AchievementListResponse)
async def list_achievements(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Every achievement visible to the caller, with live progress."""
    items = await list_achievements_with_progress(db, user.id)
    return AchievementListResponse(
        achievements=[AchievementResponse(**asdict(item)) for item in items],
        total=len(items),
        earned=sum(1 for item in items if item.current_tier != "none"),
    )


@router.get("/coin-types", response_model=CoinTypeListResponse)
async def coin_types(db: AsyncSession = Depends(get_session)):
    rows = await list_coin_types(db)
    return CoinTypeListResponse(coin_types=[
        CoinTypeResponse(
            collection_type=r.collection_type,
            label=r.label,
            description=r.description,
            color=r.color,
            icon=r.icon,
        )
        for r in rows
    ])


@router.get("/progress", response_model=ProgressSummaryResponse)
async def progress_summary(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Cached progress summary for the caller."""
    summary = await get_progress(db, user.id)
    if summary is None:
        raise InvariantViolation("Authenticated user has no projection", user_id=user.id)
    return ProgressSummaryResponse(**{
        k: v for k, v in asdict(summary).items()
        if k in ProgressSummaryResponse.model_fields
    })
