"""Consecutive-day streak helpers.

Pure functions: callers convert event timestamps to the user's local dates.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def user_zone(name: str | None) -> ZoneInfo:
    """Resolve an IANA zone name, falling back to UTC."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def local_dates(times: Iterable[datetime], zone: ZoneInfo) -> set[date]:
    """Distinct local calendar dates on which events happened."""
    return {t.astimezone(zone).date() for t in times}


def longest_streak(days: Iterable[date]) -> int:
    """Longest run of consecutive calendar days."""
    ordered = sorted(set(days))
    if not ordered:
        return 0
    best = run = 1
    for prev, cur in zip(ordered, ordered[1:]):
        if (cur - prev).days == 1:
            run += 1
            best = max(best, run)
        else:
            run = 1
    return best


def current_streak(days: Iterable[date], today: date) -> int:
    """Length of the run of consecutive days ending today (0 if no activity today)."""
    active = set(days)
    streak = 0
    day = today
    while day in active:
        streak += 1
        day -= timedelta(days=1)
    return streak
