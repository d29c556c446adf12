"""Pydantic models for ranking and activity endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class RankEntry(BaseModel):
    position: int = Field(ge=1)
    product_id: int = Field(ge=1)


class RankingSnapshotRequest(BaseModel):
    rankings: list[RankEntry] = Field(max_length=2000)


class RankingSaveResponse(BaseModel):
    accepted: int
    ranked: list[int]
    removed: list[int]
    sequence: int | None = None
    replayed: bool = False


class RankedProductResponse(BaseModel):
    position: int
    product_id: int
    title: str
    vendor: str | None = None
    ranked_at: datetime


class RankingListResponse(BaseModel):
    rankings: list[RankedProductResponse]
    total: int


class ActivityRequest(BaseModel):
    kind: Literal["login", "rate", "review", "view", "search"]
    product_id: int | None = None
    value: dict | None = None
    occurred_at: datetime | None = None
    idempotency_key: str = Field(min_length=1, max_length=128)


class ActivityResponse(BaseModel):
    id: int
    kind: str
    recorded: bool
