"""Contextual guidance: pick a headline, message and next action for a page.

Everything here is a pure function of its inputs. The clock is a parameter so
that relative phrasing ("earned 5 minutes ago") stays deterministic.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from coinbook.progress.service import Milestone, ProgressSummary

PAGE_CONTEXTS = ("rank", "products", "community", "coinbook", "general")
JOURNEY_STAGES = ("new_user", "exploring", "engaged", "power_user", "dormant")

# Achievement category to hook from on each page
PAGE_CATEGORIES: dict[str, str | None] = {
    "rank": "ranking",
    "products": "engagement",
    "community": "engagement",
    "coinbook": None,
    "general": None,
}

# Lower index wins when picking the flavor to talk about
_STATE_PRIORITY = ("enthusiast", "explorer", "moderate", "taster", "seeker", "curious")

DORMANT_AFTER_DAYS = 30
NEW_USER_DAYS = 7
RECENT_WINDOW = timedelta(hours=24)

ICON_BASE = "/icons/guidance"


@dataclass(frozen=True)
class FlavorStanding:
    profile: str
    state: str
    ranked_count: int = 0


@dataclass(frozen=True)
class Guidance:
    title: str
    message: str
    icon: str
    type: str
    suggested_action: dict[str, str] | None
    journey_stage: str
    flavor_state: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "icon": self.icon,
            "type": self.type,
            "suggested_action": self.suggested_action,
            "journey_stage": self.journey_stage,
            "flavor_state": self.flavor_state,
        }


def _icon(name: str) -> str:
    return f"{ICON_BASE}/{name}.svg"


def _action(label: str, target: str) -> dict[str, str]:
    return {"label": label, "target": target}


def journey_stage(progress: ProgressSummary | None, now: datetime) -> str:
    if progress is None:
        return "new_user"
    anchor = progress.last_activity_at or progress.registered_at
    if anchor is not None and now - anchor >= timedelta(days=DORMANT_AFTER_DAYS):
        return "dormant"
    total = progress.total_rankings
    if total == 0:
        if progress.registered_at is None or now - progress.registered_at <= timedelta(days=NEW_USER_DAYS):
            return "new_user"
    if total >= 31 and progress.activities_30d >= 20:
        return "power_user"
    if 11 <= total <= 30 and progress.activities_30d >= 5:
        return "engaged"
    return "exploring" if total > 0 else "new_user"


def format_ago(then: datetime, now: datetime) -> str:
    delta = now - then
    minutes = int(delta.total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    return f"{hours} hour{'s' if hours != 1 else ''} ago"


def dominant_flavor(standings: list[FlavorStanding]) -> FlavorStanding | None:
    ranked = [s for s in standings if s.state in _STATE_PRIORITY]
    if not ranked:
        return None
    return min(ranked, key=lambda s: (_STATE_PRIORITY.index(s.state), -s.ranked_count, s.profile))


def flavor_line(standing: FlavorStanding | None) -> str | None:
    if standing is None:
        return None
    name = standing.profile.capitalize()
    lines = {
        "enthusiast": f"You're a {name} Enthusiast. Your top picks lead the community.",
        "explorer": f"You're exploring {name} and ranking outside the usual favorites.",
        "moderate": f"Your {name} taste sits right in the middle of the pack.",
        "taster": f"You've tried {name}. Rank a few more to join the {name} community.",
        "seeker": f"Your {name} order is on its way. Rank it once it lands.",
        "curious": f"Curious about {name}? Start with a sampler.",
    }
    return lines.get(standing.state)


def achievement_hook(milestone: Milestone | None, tier_held: bool = False) -> str | None:
    """Progress hook for the closest unearned tier."""
    if milestone is None or milestone.remaining <= 0:
        return None
    if tier_held:
        return f"{milestone.remaining} more to unlock {milestone.next_tier.capitalize()} tier"
    return f'{milestone.remaining} more to unlock "{milestone.name}"'


def _recent_award_line(progress: ProgressSummary | None, now: datetime) -> str | None:
    if progress is None or not progress.recent_achievements:
        return None
    latest = progress.recent_achievements[0]
    if now - latest.awarded_at > RECENT_WINDOW:
        return None
    return f'You earned "{latest.name}" {format_ago(latest.awarded_at, now)}.'


def _rank_page(
    progress: ProgressSummary | None,
    total_rankable: int,
    hook: str | None,
    milestone: Milestone | None,
    stage: str,
) -> tuple[str, str, str, str, dict[str, str] | None]:
    """(title, message, icon, type, action) from where the user is in their list."""
    ranked = progress.unique_products if progress else 0
    remaining = max(0, total_rankable - ranked)
    percent = ranked * 100 // total_rankable if total_rankable else 0
    streak = progress.current_streak if progress else 0

    if ranked == 0:
        return (
            "Start your ranking",
            "Drag your first product into the list. Your favorites go on top.",
            _icon("start"), "onboarding", _action("Rank a product", "/rank"),
        )
    if ranked <= 5:
        return (
            "Great start",
            f"{ranked} ranked so far. A few more and your taste profile starts to show.",
            _icon("sprout"), "progress", _action("Keep ranking", "/rank"),
        )
    if ranked <= 15:
        message = f"{ranked} products ranked."
        if hook and milestone and milestone.remaining <= 5:
            message = f"{message} {hook}."
        elif streak >= 3:
            message = f"{message} {streak} days in a row. Keep the streak alive."
        return "Building momentum", message, _icon("momentum"), "progress", _action("Rank more", "/rank")
    if ranked <= 30:
        message = f"{ranked} ranked. Your list is taking shape."
        if hook and milestone and milestone.remaining <= 3:
            message = f"{message} {hook}."
        return "Taking shape", message, _icon("shape"), "progress", _action("Rank more", "/rank")
    if total_rankable and ranked >= total_rankable:
        return (
            "Collection complete",
            f"Every one of your {total_rankable} products is ranked.",
            _icon("trophy"), "celebration", _action("View your coinbook", "/coinbook"),
        )
    if percent < 60:
        return (
            "Seasoned ranker" if stage == "power_user" else "Halfway there",
            f"{percent}% of your products ranked. {remaining} to go.",
            _icon("halfway"), "progress", _action("Rank more", "/rank"),
        )
    if percent < 85:
        message = f"{percent}% ranked."
        if hook and milestone and milestone.remaining <= 5:
            message = f"{message} {hook}."
        return "Closing in", message, _icon("closing"), "progress", _action("Rank more", "/rank")
    return (
        "Almost complete",
        f"Just {remaining} more to complete your rankings.",
        _icon("finish"), "progress", _action("Finish up", "/rank"),
    )


def select_guidance(
    flavor_standings: list[FlavorStanding],
    progress: ProgressSummary | None,
    page_context: str,
    *,
    now: datetime,
    total_rankable: int = 0,
    next_achievement: Milestone | None = None,
    next_achievement_tier_held: bool = False,
) -> Guidance:
    """Choose guidance for ``page_context``. Unknown pages are treated as ``general``."""
    page = page_context if page_context in PAGE_CONTEXTS else "general"
    stage = journey_stage(progress, now)
    dominant = dominant_flavor(flavor_standings)
    flavor_state = dominant.state if dominant else None
    hook = achievement_hook(next_achievement, next_achievement_tier_held)

    if stage == "dormant":
        return Guidance(
            title="Welcome back",
            message="It's been a while. New products have landed since your last visit.",
            icon=_icon("welcome-back"),
            type="reengagement",
            suggested_action=_action("See what's new", "/products"),
            journey_stage=stage,
            flavor_state=flavor_state,
        )

    if page == "rank":
        title, message, icon, kind, action = _rank_page(progress, total_rankable, hook, next_achievement, stage)
        return Guidance(title, message, icon, kind, action, stage, flavor_state)

    recent = _recent_award_line(progress, now)
    if recent is not None and page in ("coinbook", "general"):
        parts = [recent]
        if hook:
            parts.append(f"{hook}.")
        return Guidance(
            title="New coin earned",
            message=" ".join(parts),
            icon=_icon("coin"),
            type="celebration",
            suggested_action=_action("View your coinbook", "/coinbook"),
            journey_stage=stage,
            flavor_state=flavor_state,
        )

    if page == "community":
        line = flavor_line(dominant)
        if line is None:
            line = "Rank a few products to see where your taste fits in the community."
        return Guidance(
            title="Your flavor community",
            message=line,
            icon=_icon(f"flavor-{dominant.profile}" if dominant else "community"),
            type="flavor",
            suggested_action=_action("Explore flavors", "/community"),
            journey_stage=stage,
            flavor_state=flavor_state,
        )

    if page == "products":
        if dominant is not None and dominant.state in ("curious", "seeker", "taster"):
            message = flavor_line(dominant) or ""
        elif hook:
            message = f"{hook}. Browse products to find your next favorite."
        else:
            message = "Browse the catalog and mark the ones you've tried."
        return Guidance(
            title="Find your next favorite",
            message=message,
            icon=_icon("discover"),
            type="discovery",
            suggested_action=_action("Browse products", "/products"),
            journey_stage=stage,
            flavor_state=flavor_state,
        )

    if page == "coinbook":
        earned = progress.achievements_earned if progress else 0
        points = progress.total_points if progress else 0
        message = f"{earned} coins collected, {points} points." if earned else "Your coinbook is empty for now."
        if hook:
            message = f"{message} {hook}."
        return Guidance(
            title="Your coinbook",
            message=message,
            icon=_icon("coinbook"),
            type="progress",
            suggested_action=_action("Rank more", "/rank"),
            journey_stage=stage,
            flavor_state=flavor_state,
        )

    stage_copy = {
        "new_user": ("Welcome to the coinbook", "Rank the products you've tried to start earning coins.", "welcome"),
        "exploring": ("Keep exploring", "Every product you rank sharpens your flavor profile.", "explore"),
        "engaged": ("You're on a roll", "Your rankings are shaping the community picks.", "momentum"),
        "power_user": ("Top ranker", "Few people rank as much as you do. Thanks for leading the way.", "crown"),
    }
    title, message, icon = stage_copy[stage]
    line = flavor_line(dominant)
    if line:
        message = f"{message} {line}"
    if hook:
        message = f"{message} {hook}."
    return Guidance(
        title=title,
        message=message,
        icon=_icon(icon),
        type="journey",
        suggested_action=_action("Rank a product", "/rank"),
        journey_stage=stage,
        flavor_state=flavor_state,
    )
