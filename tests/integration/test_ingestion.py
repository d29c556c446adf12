"""Ranking snapshot ingestion against the event log."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from coinbook.db.models import ProductRanking, RankingEvent, UserEvent
from coinbook.errors import IdempotencyConflict, IneligibleProduct, ValidationFailed
from coinbook.rankings.service import (
    count_rankable_products,
    ingest_ranking_snapshot,
    list_rankings,
    payload_hash,
    rebuild_user_rankings,
    record_user_event,
    remove_rankings,
)

pytestmark = pytest.mark.asyncio

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


async def _event_count(db, user_id: int) -> int:
    return (await db.execute(select(func.count()).select_from(RankingEvent).where(RankingEvent.user_id == user_id))).scalar_one()


async def _positions(db, user_id: int) -> dict[int, int]:
    rows = await db.execute(select(ProductRanking.product_id, ProductRanking.position).where(ProductRanking.user_id == user_id))
    return dict(rows.all())


async def test_snapshot_writes_events_and_projection(db_session, make_user, make_product):
    user = await make_user()
    a, b = await make_product("Sweet Heat"), await make_product("Black Pepper")

    outcome = await ingest_ranking_snapshot(db_session, user, [(1, a.id), (2, b.id)], "save-1", now=NOW)

    assert not outcome.replayed
    assert outcome.changed
    assert outcome.result["ranked"] == [a.id, b.id]
    assert outcome.result["accepted"] == 2
    assert await _positions(db_session, user.id) == {a.id: 1, b.id: 2}
    assert await _event_count(db_session, user.id) == 2


async def test_same_key_is_applied_once(db_session, make_user, make_product):
    user = await make_user()
    a, b = await make_product("Teriyaki"), await make_product("Habanero")

    first = await ingest_ranking_snapshot(db_session, user, [(1, a.id), (2, b.id)], "save-1", now=NOW)
    again = await ingest_ranking_snapshot(db_session, user, [(1, a.id), (2, b.id)], "save-1", now=NOW)

    assert again.replayed
    assert not again.changed
    assert again.result == first.result
    assert await _event_count(db_session, user.id) == 2


async def test_reused_key_with_other_payload_conflicts(db_session, make_user, make_product):
    user = await make_user()
    a, b = await make_product("Teriyaki"), await make_product("Habanero")
    await ingest_ranking_snapshot(db_session, user, [(1, a.id)], "save-1", now=NOW)

    with pytest.raises(IdempotencyConflict):
        await ingest_ranking_snapshot(db_session, user, [(1, b.id)], "save-1", now=NOW)


async def test_reorder_only_logs_moved_products(db_session, make_user, make_product):
    user = await make_user()
    a, b, c = await make_product("A1"), await make_product("B22"), await make_product("C333")
    await ingest_ranking_snapshot(db_session, user, [(1, a.id), (2, b.id), (3, c.id)], "save-1", now=NOW)

    outcome = await ingest_ranking_snapshot(db_session, user, [(1, b.id), (2, a.id), (3, c.id)], "save-2", now=NOW)

    assert sorted(outcome.result["ranked"]) == sorted([a.id, b.id])
    assert await _positions(db_session, user.id) == {b.id: 1, a.id: 2, c.id: 3}
    assert await _event_count(db_session, user.id) == 5


async def test_omitted_products_are_removed(db_session, make_user, make_product):
    user = await make_user()
    a, b = await make_product("Original"), await make_product("Smoked")
    await ingest_ranking_snapshot(db_session, user, [(1, a.id), (2, b.id)], "save-1", now=NOW)

    outcome = await ingest_ranking_snapshot(db_session, user, [(1, a.id)], "save-2", now=NOW)

    assert outcome.result["removed"] == [b.id]
    assert await _positions(db_session, user.id) == {a.id: 1}
    removed = await db_session.execute(select(RankingEvent).where(RankingEvent.action == "removed"))
    assert [e.product_id for e in removed.scalars()] == [b.id]


async def test_duplicate_positions_rejected(db_session, make_user, make_product):
    user = await make_user()
    a, b = await make_product("One"), await make_product("Two")
    with pytest.raises(ValidationFailed, match="Duplicate positions"):
        await ingest_ranking_snapshot(db_session, user, [(1, a.id), (1, b.id)], "save-1", now=NOW)


async def test_unknown_product_rejected(db_session, make_user):
    user = await make_user()
    with pytest.raises(ValidationFailed, match="Unknown products"):
        await ingest_ranking_snapshot(db_session, user, [(1, 9999)], "save-1", now=NOW)


async def test_unpurchased_product_is_ineligible(db_session, make_user, make_product, add_order_item):
    user = await make_user()
    bought = await make_product("Bought", rankable=False)
    shipped = await make_product("Shipped", rankable=False)
    unbought = await make_product("Never Bought", rankable=False)
    await add_order_item(user.id, bought.id, status="delivered")
    await add_order_item(user.id, shipped.id, status="fulfilled")

    await ingest_ranking_snapshot(db_session, user, [(1, bought.id), (2, shipped.id)], "ok", now=NOW)
    with pytest.raises(IneligibleProduct) as exc_info:
        await ingest_ranking_snapshot(db_session, user, [(1, unbought.id)], "nope", now=NOW)
    assert exc_info.value.status_code == 422
    assert await count_rankable_products(db_session, user) == 2


async def test_admin_may_rank_anything(db_session, make_user, make_product):
    admin = await make_user(role="admin")
    product = await make_product("Locked", rankable=False)
    outcome = await ingest_ranking_snapshot(db_session, admin, [(1, product.id)], "admin-1", now=NOW)
    assert outcome.result["ranked"] == [product.id]


async def test_remove_and_rebuild(db_session, make_user, make_product):
    user = await make_user()
    a, b = await make_product("Alpha"), await make_product("Beta")
    await ingest_ranking_snapshot(db_session, user, [(1, a.id), (2, b.id)], "save-1", now=NOW)

    assert await remove_rankings(db_session, user.id, [b.id, 12345]) == 1
    assert await remove_rankings(db_session, user.id, [b.id]) == 0

    # Wipe the projection and replay it from the log
    for ranking, _product in await list_rankings(db_session, user.id):
        await db_session.delete(ranking)
    await db_session.commit()
    assert await rebuild_user_rankings(db_session, user.id) == 1
    assert await _positions(db_session, user.id) == {a.id: 1}


async def test_payload_hash_ignores_entry_order():
    assert payload_hash([(2, 7), (1, 5)]) == payload_hash([(1, 5), (2, 7)])
    assert payload_hash([(1, 5)]) != payload_hash([(1, 7)])


async def test_activity_events_are_idempotent(db_session, make_user):
    user = await make_user()
    event, created = await record_user_event(db_session, user.id, "review", "review-1", product_id=None)
    again, created_again = await record_user_event(db_session, user.id, "review", "review-1")

    assert created and not created_again
    assert again.id == event.id
    assert (await db_session.execute(select(func.count()).select_from(UserEvent))).scalar_one() == 1

    with pytest.raises(IdempotencyConflict):
        await record_user_event(db_session, user.id, "login", "review-1")
    with pytest.raises(ValidationFailed):
        await record_user_event(db_session, user.id, "dance", "x-1")
