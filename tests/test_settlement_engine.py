import asyncio

import pytest
from sqlalchemy import delete, select, update
from sqlalchemy.exc import OperationalError

from padel_bot.database.models import ConfirmationStatus, Match, Player, RatingChangeRecord
from padel_bot.services.base import BaseService
from padel_bot.services.match_events import MatchEventKind
from padel_bot.utils.settlement_exceptions import SettlementIntegrityError, TransientStoreError


async def load_records(db, match_id):
    async with db.get_session() as session:
        result = await session.execute(
            select(RatingChangeRecord)
            .where(RatingChangeRecord.match_id == match_id)
            .order_by(RatingChangeRecord.id)
        )
        return list(result.scalars().all())


async def test_calculate_and_store_is_idempotent(db, services, completed_match):
    engine = services.settlement_engine
    first = await load_records(db, completed_match.id)

    again = await engine.calculate_and_store(completed_match.id)

    assert again.success and not again.changed
    assert [r.rating_after for r in await load_records(db, completed_match.id)] == [r.rating_after for r in first]
    assert len(again.rating_changes) == 4


async def test_calculate_requires_final_score(services, match_ops, players):
    match = await match_ops.create_match([p.id for p in players])

    result = await services.settlement_engine.calculate_and_store(match.id)

    assert not result.success
    assert result.message == "Match scores incomplete"


async def test_stored_changes_follow_slot_order(services, completed_match, players):
    changes = await services.settlement_engine.get_rating_changes(completed_match.id)

    assert [c.player_id for c in changes] == [p.id for p in players]
    assert changes[0].rating_delta > 0 and changes[3].rating_delta < 0


async def test_apply_waits_for_quorum_or_expiry(services, completed_match, fetch_player, players):
    result = await services.settlement_engine.apply(completed_match.id)

    assert not result.success
    assert not result.changed
    assert (await fetch_player(players[0].id)).glicko_rating == 1500.0


async def test_apply_after_expiry_writes_stored_ratings(db, services, completed_match, expire_window,
                                                      fetch_match, fetch_player, event_log):
    await expire_window(completed_match.id)

    result = await services.settlement_engine.apply(completed_match.id)

    assert result.success and result.changed
    match = await fetch_match(completed_match.id)
    assert match.rating_applied
    assert match.confirmation_status == ConfirmationStatus.APPROVED
    assert match.approved_at is not None

    for record in await load_records(db, completed_match.id):
        player = await fetch_player(record.player_id)
        assert player.glicko_rating == record.rating_after
        assert player.glicko_rd == record.rd_after
        assert player.glicko_vol == record.vol_after
        assert player.matches_played == 1
        assert record.applied_at is not None

    assert [e.kind for e in event_log] == [MatchEventKind.RATINGS_APPLIED]


async def test_apply_twice_is_a_no_op(services, completed_match, expire_window, fetch_player, players):
    await expire_window(completed_match.id)
    await services.settlement_engine.apply(completed_match.id)
    ratings = [(await fetch_player(p.id)).glicko_rating for p in players]

    second = await services.settlement_engine.apply(completed_match.id)

    assert second.success and not second.changed
    assert [(await fetch_player(p.id)).glicko_rating for p in players] == ratings
    assert all((await fetch_player(p.id)).matches_played == 1 for p in players)


async def test_concurrent_apply_settles_exactly_once(services, completed_match, expire_window,
                                                     fetch_player, players):
    await expire_window(completed_match.id)

    results = await asyncio.gather(
        services.settlement_engine.apply(completed_match.id),
        services.settlement_engine.apply(completed_match.id),
        services.settlement_engine.apply(completed_match.id),
    )

    assert sum(1 for r in results if r.changed) == 1
    assert all(r.success for r in results)
    for p in players:
        assert (await fetch_player(p.id)).matches_played == 1


async def test_failed_profile_write_leaves_nothing_applied(db, services, completed_match, expire_window,
                                                           fetch_match, fetch_player, players):
    await expire_window(completed_match.id)
    async with db.transaction() as session:
        await session.execute(delete(Player).where(Player.id == players[3].id))

    with pytest.raises(SettlementIntegrityError):
        await services.settlement_engine.apply(completed_match.id)

    match = await fetch_match(completed_match.id)
    assert not match.rating_applied
    assert match.confirmation_status == ConfirmationStatus.PENDING
    for p in players[:3]:
        player = await fetch_player(p.id)
        assert player.glicko_rating == 1500.0
        assert player.matches_played == 0
    assert all(r.applied_at is None for r in await load_records(db, completed_match.id))


async def test_apply_uses_stored_values_when_profile_moved(db, services, completed_match, expire_window,
                                                           fetch_player, players):
    records = await load_records(db, completed_match.id)
    async with db.transaction() as session:
        await session.execute(update(Player).where(Player.id == players[0].id).values(glicko_rating=1600.0))
    await expire_window(completed_match.id)

    await services.settlement_engine.apply(completed_match.id)

    assert (await fetch_player(players[0].id)).glicko_rating == records[0].rating_after


async def test_apply_refuses_disputed_match(db, services, completed_match, expire_window, fetch_match):
    async with db.transaction() as session:
        await session.execute(update(Match).where(Match.id == completed_match.id).values(reported_count=2))
    await expire_window(completed_match.id)

    result = await services.settlement_engine.apply(completed_match.id)

    assert not result.success
    assert not (await fetch_match(completed_match.id)).rating_applied


async def test_retry_recovers_from_transient_errors(db):
    service = BaseService(db.session_factory, retry_attempts=3, retry_backoff=0)
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise OperationalError("UPDATE matches", {}, Exception("database is locked"))
        return "ok"

    assert await service.execute_with_retry(flaky) == "ok"
    assert len(calls) == 3


async def test_retry_gives_up_after_configured_attempts(db):
    service = BaseService(db.session_factory, retry_attempts=2, retry_backoff=0)

    async def always_locked():
        raise OperationalError("UPDATE matches", {}, Exception("database is locked"))

    with pytest.raises(TransientStoreError):
        await service.execute_with_retry(always_locked, operation="apply(match 1)")


async def test_non_transient_errors_are_not_retried(db):
    service = BaseService(db.session_factory, retry_attempts=3, retry_backoff=0)
    calls = []

    async def broken():
        calls.append(1)
        raise SettlementIntegrityError(1, "duplicate rows")

    with pytest.raises(SettlementIntegrityError):
        await service.execute_with_retry(broken)
    assert len(calls) == 1


async def test_unknown_enum_value_is_an_integrity_error(db):
    service = BaseService(db.session_factory, retry_backoff=0)

    async def bad_enum():
        raise LookupError("'disputed' is not among the defined enum values")

    with pytest.raises(SettlementIntegrityError):
        await service.execute_with_retry(bad_enum)
