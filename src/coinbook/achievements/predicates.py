"""Predicate interpreters.

An achievement's predicate is stored as data, ``{"kind": ..., "params": {...}}``,
and evaluated by one of the fixed interpreters below. Each interpreter maps a
user projection to an integer progress value; the definition's thresholds turn
that value into a tier. Adding a predicate kind means adding an interpreter
here, never storing code in the database.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from coinbook.achievements.projection import ProductFacts, UserProjection
from coinbook.achievements.streaks import current_streak, local_dates, longest_streak, user_zone

TRIGGER_KINDS = frozenset({"rank", "rate", "review", "login", "delivery", "view", "search"})

# Pseudo-trigger used by admin re-evaluation and import backfill
ALL_TRIGGERS = "all"

# metric name -> (event kind it reads, trigger that can change it)
COUNTER_METRICS: dict[str, str] = {
    "ranked_products": "rank",
    "rank_events": "rank",
    "unique_vendors": "rank",
    "logins": "login",
    "ratings": "rate",
    "reviews": "review",
    "deliveries": "delivery",
    "product_views": "view",
    "searches": "search",
}

_METRIC_EVENT = {
    "rank_events": "rank",
    "logins": "login",
    "ratings": "rate",
    "reviews": "review",
    "deliveries": "delivery",
    "product_views": "view",
    "searches": "search",
}

COVERAGE_ATTRIBUTES = frozenset({"vendor", "protein_category", "flavor_profile"})
COLLECTION_MATCH_KEYS = frozenset({"vendor", "protein_category", "flavor_profile"})


class PredicateError(ValueError):
    """A stored predicate is malformed."""


@dataclass(frozen=True)
class EvaluationContext:
    """Clock inputs for interpreters that depend on 'today'."""

    now: datetime

    def today_in(self, zone_name: str) -> date:
        return self.now.astimezone(user_zone(zone_name)).date()


# ---------------------------------------------------------------------------
# Counter threshold
# ---------------------------------------------------------------------------


def _counter(projection: UserProjection, params: Mapping[str, Any], _ctx: EvaluationContext) -> int:
    metric = params["metric"]
    if metric == "ranked_products":
        return len(projection.rankings)
    if metric == "unique_vendors":
        return len({r.product.vendor for r in projection.rankings if r.product.vendor})
    return len(projection.times(_METRIC_EVENT[metric]))


def _counter_triggers(params: Mapping[str, Any]) -> frozenset[str]:
    return frozenset({COUNTER_METRICS[params["metric"]]})


def _counter_validate(params: Mapping[str, Any]) -> None:
    if params.get("metric") not in COUNTER_METRICS:
        msg = f"counter metric must be one of {sorted(COUNTER_METRICS)}"
        raise PredicateError(msg)


# ---------------------------------------------------------------------------
# Streak
# ---------------------------------------------------------------------------


def _streak(projection: UserProjection, params: Mapping[str, Any], ctx: EvaluationContext) -> int:
    zone = user_zone(projection.timezone)
    days = local_dates(projection.times(params.get("event", "rank")), zone)
    if params.get("mode", "longest") == "current":
        return current_streak(days, ctx.today_in(projection.timezone))
    return longest_streak(days)


def _streak_triggers(params: Mapping[str, Any]) -> frozenset[str]:
    return frozenset({params.get("event", "rank")})


def _streak_validate(params: Mapping[str, Any]) -> None:
    if params.get("event", "rank") not in TRIGGER_KINDS:
        msg = "streak event must be a trigger kind"
        raise PredicateError(msg)
    if params.get("mode", "longest") not in ("longest", "current"):
        msg = "streak mode must be 'longest' or 'current'"
        raise PredicateError(msg)


# ---------------------------------------------------------------------------
# Set coverage
# ---------------------------------------------------------------------------


def _attribute_values(product: ProductFacts, attribute: str) -> tuple[str, ...]:
    if attribute == "flavor_profile":
        return product.flavor_profiles
    value = getattr(product, attribute)
    return (value,) if value else ()


def _coverage(projection: UserProjection, params: Mapping[str, Any], _ctx: EvaluationContext) -> int:
    attribute = params["attribute"]
    max_position = params.get("max_position")
    values: set[str] = set()
    for ranked in projection.rankings:
        if max_position is not None and ranked.position > max_position:
            continue
        values.update(_attribute_values(ranked.product, attribute))
    return len(values)


def _coverage_triggers(_params: Mapping[str, Any]) -> frozenset[str]:
    return frozenset({"rank"})


def _coverage_validate(params: Mapping[str, Any]) -> None:
    if params.get("attribute") not in COVERAGE_ATTRIBUTES:
        msg = f"coverage attribute must be one of {sorted(COVERAGE_ATTRIBUTES)}"
        raise PredicateError(msg)
    max_position = params.get("max_position")
    if max_position is not None and (not isinstance(max_position, int) or max_position < 1):
        msg = "max_position must be a positive integer"
        raise PredicateError(msg)


# ---------------------------------------------------------------------------
# Collection completion
# ---------------------------------------------------------------------------


def collection_members(params: Mapping[str, Any], catalog: list[ProductFacts]) -> set[int]:
    """Product ids in a static (``product_ids``) or dynamic (``match``) collection."""
    if "product_ids" in params:
        return {int(pid) for pid in params["product_ids"]}

    match = params.get("match", "all")
    if match == "all":
        return {p.product_id for p in catalog}

    members: set[int] = set()
    for product in catalog:
        if all(
            str(expected).lower() in {v.lower() for v in _attribute_values(product, key)}
            for key, expected in match.items()
        ):
            members.add(product.product_id)
    return members


def _collection(projection: UserProjection, params: Mapping[str, Any], _ctx: EvaluationContext) -> int:
    """Percentage (0-100, floored) of the collection the user has ranked."""
    members = collection_members(params, projection.catalog)
    if not members:
        return 0
    covered = len(members & projection.ranked_ids())
    return covered * 100 // len(members)


def _collection_triggers(_params: Mapping[str, Any]) -> frozenset[str]:
    return frozenset({"rank"})


def _collection_validate(params: Mapping[str, Any]) -> None:
    if "product_ids" in params:
        ids = params["product_ids"]
        if not isinstance(ids, list) or not ids:
            msg = "product_ids must be a non-empty list"
            raise PredicateError(msg)
        return
    match = params.get("match", "all")
    if match == "all":
        return
    if not isinstance(match, dict) or not match or set(match) - COLLECTION_MATCH_KEYS:
        msg = f"match must be 'all' or a mapping over {sorted(COLLECTION_MATCH_KEYS)}"
        raise PredicateError(msg)


# ---------------------------------------------------------------------------
# Secret rules
# ---------------------------------------------------------------------------


def _night_owl(projection: UserProjection, params: Mapping[str, Any], _ctx: EvaluationContext) -> int:
    """Rank events whose local hour falls in [start_hour, end_hour)."""
    start, end = params.get("start_hour", 2), params.get("end_hour", 4)
    zone = user_zone(projection.timezone)
    return sum(1 for t in projection.times("rank") if start <= t.astimezone(zone).hour < end)


def _title_length_triplet(projection: UserProjection, params: Mapping[str, Any], _ctx: EvaluationContext) -> int:
    """1 when ``size`` currently ranked products share one title length."""
    size = params.get("size", 3)
    lengths = Counter(len(r.product.title) for r in projection.rankings)
    return 1 if lengths and max(lengths.values()) >= size else 0


def _early_adopter(projection: UserProjection, params: Mapping[str, Any], _ctx: EvaluationContext) -> int:
    before = date.fromisoformat(params["before"])
    return 1 if projection.created_at.date() < before else 0


def _bookends(projection: UserProjection, params: Mapping[str, Any], _ctx: EvaluationContext) -> int:
    """1 when the list is long enough and its first and last products share a vendor."""
    rankings = projection.rankings
    if len(rankings) < params.get("min_length", 10):
        return 0
    ordered = sorted(rankings, key=lambda r: r.position)
    first, last = ordered[0].product.vendor, ordered[-1].product.vendor
    return 1 if first and first == last else 0


SECRET_RULES: dict[str, Callable[[UserProjection, Mapping[str, Any], EvaluationContext], int]] = {
    "night_owl": _night_owl,
    "title_length_triplet": _title_length_triplet,
    "early_adopter": _early_adopter,
    "bookends": _bookends,
}

_SECRET_DEFAULT_TRIGGERS: dict[str, frozenset[str]] = {
    "night_owl": frozenset({"rank"}),
    "title_length_triplet": frozenset({"rank"}),
    "early_adopter": frozenset({"login"}),
    "bookends": frozenset({"rank"}),
}


def _secret(projection: UserProjection, params: Mapping[str, Any], ctx: EvaluationContext) -> int:
    return SECRET_RULES[params["rule"]](projection, params, ctx)


def _secret_triggers(params: Mapping[str, Any]) -> frozenset[str]:
    if "triggers" in params:
        return frozenset(params["triggers"])
    return _SECRET_DEFAULT_TRIGGERS[params["rule"]]


def _secret_validate(params: Mapping[str, Any]) -> None:
    rule = params.get("rule")
    if rule not in SECRET_RULES:
        msg = f"secret rule must be one of {sorted(SECRET_RULES)}"
        raise PredicateError(msg)
    if rule == "early_adopter":
        try:
            date.fromisoformat(params.get("before", ""))
        except (TypeError, ValueError) as exc:
            msg = "early_adopter requires an ISO 'before' date"
            raise PredicateError(msg) from exc
    triggers = params.get("triggers")
    if triggers is not None and not set(triggers) <= TRIGGER_KINDS:
        msg = "secret triggers must be trigger kinds"
        raise PredicateError(msg)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Interpreter:
    measure: Callable[[UserProjection, Mapping[str, Any], EvaluationContext], int]
    triggers: Callable[[Mapping[str, Any]], frozenset[str]]
    validate: Callable[[Mapping[str, Any]], None]


INTERPRETERS: dict[str, Interpreter] = {
    "counter": Interpreter(_counter, _counter_triggers, _counter_validate),
    "streak": Interpreter(_streak, _streak_triggers, _streak_validate),
    "set_coverage": Interpreter(_coverage, _coverage_triggers, _coverage_validate),
    "collection": Interpreter(_collection, _collection_triggers, _collection_validate),
    "secret": Interpreter(_secret, _secret_triggers, _secret_validate),
}


def _interpreter(predicate: Mapping[str, Any]) -> Interpreter:
    kind = predicate.get("kind")
    interpreter = INTERPRETERS.get(kind)  # type: ignore[arg-type]
    if interpreter is None:
        msg = f"unknown predicate kind '{kind}'"
        raise PredicateError(msg)
    return interpreter


def validate_predicate(predicate: Mapping[str, Any]) -> None:
    """Raise PredicateError if the predicate cannot be interpreted."""
    params = predicate.get("params", {})
    if not isinstance(params, Mapping):
        msg = "predicate params must be a mapping"
        raise PredicateError(msg)
    _interpreter(predicate).validate(params)


def measure(predicate: Mapping[str, Any], projection: UserProjection, ctx: EvaluationContext) -> int:
    """Progress value of the predicate for this projection."""
    return _interpreter(predicate).measure(projection, predicate.get("params", {}), ctx)


def triggers_for(predicate: Mapping[str, Any]) -> frozenset[str]:
    """Trigger kinds that can change the predicate's value."""
    return _interpreter(predicate).triggers(predicate.get("params", {}))


def needs_catalog(predicate: Mapping[str, Any]) -> bool:
    return predicate.get("kind") == "collection"
