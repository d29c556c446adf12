"""Guidance selection."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from coinbook.guidance.commentary import (
    FlavorStanding,
    achievement_hook,
    dominant_flavor,
    format_ago,
    journey_stage,
    select_guidance,
)
from coinbook.progress.service import Milestone, ProgressSummary, RecentAchievement

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


def _progress(total: int = 0, *, registered_days_ago: int = 60, active_days_ago: int | None = 0,
              activities: int = 0, recent: list[RecentAchievement] | None = None) -> ProgressSummary:
    return ProgressSummary(
        user_id=1,
        total_rankings=total,
        unique_products=total,
        current_streak=0,
        longest_streak=0,
        total_points=0,
        achievements_earned=len(recent or []),
        recent_achievements=recent or [],
        registered_at=NOW - timedelta(days=registered_days_ago),
        last_activity_at=None if active_days_ago is None else NOW - timedelta(days=active_days_ago),
        activities_30d=activities,
    )


def _milestone(remaining: int) -> Milestone:
    return Milestone(
        code="ranker", name="Ranker", category="ranking", icon=None,
        next_tier="silver", target=25, progress=25 - remaining, remaining=remaining, percent=80,
    )


class TestJourneyStage:
    def test_no_progress_is_new(self):
        assert journey_stage(None, NOW) == "new_user"

    def test_inactive_month_is_dormant(self):
        assert journey_stage(_progress(12, active_days_ago=30), NOW) == "dormant"

    def test_power_user(self):
        assert journey_stage(_progress(40, activities=25), NOW) == "power_user"

    def test_engaged(self):
        assert journey_stage(_progress(15, activities=6), NOW) == "engaged"

    def test_few_rankings_is_exploring(self):
        assert journey_stage(_progress(4, activities=1), NOW) == "exploring"


class TestHelpers:
    def test_dominant_prefers_enthusiast_then_volume(self):
        standings = [
            FlavorStanding("sweet", "moderate", 9),
            FlavorStanding("spicy", "enthusiast", 3),
            FlavorStanding("smoky", "enthusiast", 5),
        ]
        assert dominant_flavor(standings).profile == "smoky"
        assert dominant_flavor([]) is None

    def test_hook_wording(self):
        assert achievement_hook(_milestone(2)) == '2 more to unlock "Ranker"'
        assert achievement_hook(_milestone(2), tier_held=True) == "2 more to unlock Silver tier"
        assert achievement_hook(None) is None

    def test_format_ago(self):
        assert format_ago(NOW - timedelta(seconds=20), NOW) == "just now"
        assert format_ago(NOW - timedelta(minutes=1), NOW) == "1 minute ago"
        assert format_ago(NOW - timedelta(hours=3), NOW) == "3 hours ago"


class TestSelectGuidance:
    def test_dormant_user_gets_welcome_back_on_every_page(self):
        progress = _progress(12, active_days_ago=45)
        for page in ("rank", "products", "community", "coinbook", "general"):
            guidance = select_guidance([], progress, page, now=NOW)
            assert guidance.title == "Welcome back"
            assert guidance.journey_stage == "dormant"

    def test_rank_page_empty_list(self):
        guidance = select_guidance([], _progress(0, registered_days_ago=1), "rank", now=NOW, total_rankable=10)
        assert guidance.title == "Start your ranking"
        assert guidance.type == "onboarding"

    def test_rank_page_mentions_close_milestone(self):
        guidance = select_guidance(
            [], _progress(10, activities=2), "rank", now=NOW, total_rankable=40, next_achievement=_milestone(3),
        )
        assert guidance.title == "Building momentum"
        assert '3 more to unlock "Ranker"' in guidance.message

    def test_rank_page_complete(self):
        guidance = select_guidance([], _progress(35, activities=2), "rank", now=NOW, total_rankable=35)
        assert guidance.title == "Collection complete"

    def test_recent_award_on_coinbook(self):
        award = RecentAchievement(
            code="first_rank", name="First Rank", icon=None, tier="bronze", points=10,
            awarded_at=NOW - timedelta(minutes=5),
        )
        guidance = select_guidance([], _progress(1, recent=[award]), "coinbook", now=NOW)
        assert guidance.title == "New coin earned"
        assert "5 minutes ago" in guidance.message

    def test_community_uses_flavor_state(self):
        guidance = select_guidance([FlavorStanding("spicy", "enthusiast", 4)], _progress(8), "community", now=NOW)
        assert guidance.flavor_state == "enthusiast"
        assert "Spicy Enthusiast" in guidance.message

    def test_unknown_page_falls_back_to_general(self):
        guidance = select_guidance([], _progress(4), "checkout", now=NOW)
        assert guidance.type == "journey"
        assert guidance.to_dict()["journey_stage"] == "exploring"
