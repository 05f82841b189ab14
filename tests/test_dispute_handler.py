import pytest
from sqlalchemy import select

from padel_bot.database.models import ConfirmationStatus, RatingChangeRecord, VoteAction
from padel_bot.services.match_events import MatchEventKind
from padel_bot.utils.settlement_exceptions import SettlementIntegrityError, SettlementStateError


async def load_records(db, match_id):
    async with db.get_session() as session:
        result = await session.execute(
            select(RatingChangeRecord).where(RatingChangeRecord.match_id == match_id)
        )
        return list(result.scalars().all())


async def settle(services, match, players):
    for p in players:
        await services.confirmation_ledger.record_vote(match.id, p.id, VoteAction.APPROVED)


async def test_discard_pending_match(db, services, completed_match, fetch_match):
    result = await services.dispute_handler.discard(completed_match.id, reason="Duplicate entry")

    assert result.success and result.changed
    match = await fetch_match(completed_match.id)
    assert match.confirmation_status == ConfirmationStatus.CANCELLED
    assert match.cancellation_reason == "Duplicate entry"
    assert all(r.is_reverted and r.reverted_at for r in await load_records(db, completed_match.id))


async def test_discard_is_idempotent(services, completed_match, fetch_match):
    await services.dispute_handler.discard(completed_match.id, reason="first")

    again = await services.dispute_handler.discard(completed_match.id, reason="second")

    assert again.success and not again.changed
    assert (await fetch_match(completed_match.id)).cancellation_reason == "first"


async def test_discard_refuses_applied_ratings(services, completed_match, players, fetch_match, fetch_player):
    await settle(services, completed_match, players)
    rating = (await fetch_player(players[0].id)).glicko_rating

    with pytest.raises(SettlementIntegrityError):
        await services.dispute_handler.discard(completed_match.id)

    match = await fetch_match(completed_match.id)
    assert match.rating_applied
    assert match.confirmation_status == ConfirmationStatus.APPROVED
    assert (await fetch_player(players[0].id)).glicko_rating == rating


async def test_discard_requires_prepared_settlement(services, match_ops, players):
    match = await match_ops.create_match([p.id for p in players])

    with pytest.raises(SettlementStateError):
        await services.dispute_handler.discard(match.id)


async def test_overturn_restores_pre_match_ratings(db, services, completed_match, players,
                                                   fetch_match, fetch_player, event_log):
    await settle(services, completed_match, players)
    assert (await fetch_player(players[0].id)).glicko_rating > 1500.0

    result = await services.dispute_handler.overturn(completed_match.id, reason="Wrong players entered")

    assert result.success and result.changed
    assert len(result.rating_changes) == 4
    for p in players:
        player = await fetch_player(p.id)
        assert player.glicko_rating == 1500.0
        assert player.glicko_rd == 350.0
        assert player.glicko_vol == 0.06
        assert player.matches_played == 0

    match = await fetch_match(completed_match.id)
    assert not match.rating_applied
    assert match.confirmation_status == ConfirmationStatus.CANCELLED
    assert match.cancellation_reason == "Wrong players entered"
    assert all(r.is_reverted and r.reverted_at for r in await load_records(db, completed_match.id))
    assert event_log[-1].kind == MatchEventKind.RATINGS_REVERTED


async def test_overturn_twice_reverts_once(services, completed_match, players, fetch_player):
    await settle(services, completed_match, players)
    await services.dispute_handler.overturn(completed_match.id)

    again = await services.dispute_handler.overturn(completed_match.id)

    assert again.success and not again.changed
    for p in players:
        assert (await fetch_player(p.id)).matches_played == 0


async def test_overturn_pending_match_only_cancels(services, completed_match, players, fetch_player, fetch_match):
    result = await services.dispute_handler.overturn(completed_match.id)

    assert result.success and result.changed
    assert result.rating_changes == []
    assert (await fetch_match(completed_match.id)).confirmation_status == ConfirmationStatus.CANCELLED
    assert (await fetch_player(players[0].id)).glicko_rating == 1500.0


async def test_overturn_after_later_match_restores_snapshot(services, match_ops, completed_match, players,
                                                            fetch_player):
    await settle(services, completed_match, players)
    rematch = await match_ops.create_match([p.id for p in players])
    rematch = await match_ops.record_match_result(rematch.id, [(2, 6), (3, 6)])
    await settle(services, rematch, players)

    await services.dispute_handler.overturn(completed_match.id)

    # Pre-match values of the overturned match are written back
    for p in players:
        player = await fetch_player(p.id)
        assert player.glicko_rating == 1500.0
        assert player.matches_played == 1
