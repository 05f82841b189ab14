import asyncio

import pytest
from sqlalchemy import delete, update
from sqlalchemy.exc import OperationalError

from padel_bot.database.models import ConfirmationStatus, Match, MatchStatus, Player, VoteAction
from padel_bot.services.processing_lock import ProcessingLock
from padel_bot.utils.glicko import GlickoCalculator
from padel_bot.utils.settlement_exceptions import TransientStoreError


async def test_sweep_with_nothing_due(services, completed_match, fetch_match):
    result = await services.expiry_processor.sweep()

    assert result.to_dict() == {'processed': 0, 'approved': 0, 'cancelled': 0, 'prepared': 0,
                                'errors': [], 'skipped': False}
    assert (await fetch_match(completed_match.id)).confirmation_status == ConfirmationStatus.PENDING


async def test_silence_is_consent(services, completed_match, players, expire_window, fetch_match, fetch_player):
    await expire_window(completed_match.id)

    result = await services.expiry_processor.sweep()

    assert result.processed == 1
    assert result.approved == 1
    assert result.errors == []
    match = await fetch_match(completed_match.id)
    assert match.rating_applied
    assert match.confirmation_status == ConfirmationStatus.APPROVED
    assert (await fetch_player(players[0].id)).glicko_rating > 1500.0


async def test_single_report_does_not_block_expiry(services, completed_match, players, expire_window, fetch_match):
    await services.confirmation_ledger.record_vote(completed_match.id, players[2].id, VoteAction.REPORTED)
    await expire_window(completed_match.id)

    result = await services.expiry_processor.sweep()

    assert result.approved == 1
    assert (await fetch_match(completed_match.id)).rating_applied


async def test_stranded_quorum_is_retried(db, services, completed_match, fetch_match):
    # Quorum was reached but the apply that should have followed never ran
    async with db.transaction() as session:
        await session.execute(
            update(Match)
            .where(Match.id == completed_match.id)
            .values(confirmation_status=ConfirmationStatus.APPROVED, approved_count=4)
        )

    result = await services.expiry_processor.sweep()

    assert result.approved == 1
    assert (await fetch_match(completed_match.id)).rating_applied


async def test_one_failing_match_does_not_stop_the_sweep(db, services, match_ops, completed_match, players,
                                                         other_players, expire_window, fetch_match):
    other = await match_ops.create_match([p.id for p in other_players])
    other = await match_ops.record_match_result(other.id, [(6, 4), (6, 4)])
    await expire_window(completed_match.id)
    await expire_window(other.id)
    async with db.transaction() as session:
        await session.execute(delete(Player).where(Player.id == other_players[0].id))

    result = await services.expiry_processor.sweep()

    assert result.processed == 2
    assert result.approved == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith(f"Match {other.id}:")
    assert (await fetch_match(completed_match.id)).rating_applied
    assert not (await fetch_match(other.id)).rating_applied


async def test_sweep_skips_when_lock_is_held(db, services, completed_match, expire_window, fetch_match):
    other_worker = ProcessingLock(db.session_factory, holder="other-worker")
    assert await other_worker.acquire(services.expiry_processor.lock_name)
    await expire_window(completed_match.id)

    result = await services.expiry_processor.sweep()

    assert result.skipped
    assert result.processed == 0
    assert not (await fetch_match(completed_match.id)).rating_applied


async def test_sweep_releases_lock_after_errors(db, services, completed_match, expire_window, monkeypatch):
    async def explode(match_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(services.expiry_processor, "process_match", explode)
    await expire_window(completed_match.id)

    result = await services.expiry_processor.sweep()

    assert result.errors == [f"Match {completed_match.id}: boom"]
    other_worker = ProcessingLock(db.session_factory, holder="other-worker")
    assert await other_worker.acquire(services.expiry_processor.lock_name)


async def test_sweep_and_late_vote_race(services, completed_match, players, expire_window, fetch_player, fetch_match):
    for p in players[:3]:
        await services.confirmation_ledger.record_vote(completed_match.id, p.id, VoteAction.APPROVED)
    await expire_window(completed_match.id)

    sweep, vote = await asyncio.gather(
        services.expiry_processor.sweep(),
        services.confirmation_ledger.record_vote(completed_match.id, players[3].id, VoteAction.APPROVED),
    )

    assert not vote.success
    assert sweep.approved == 1
    for p in players:
        assert (await fetch_player(p.id)).matches_played == 1
    match = await fetch_match(completed_match.id)
    assert match.rating_applied
    assert match.confirmation_status == ConfirmationStatus.APPROVED


async def test_concurrent_sweeps_settle_once(services, completed_match, players, expire_window, fetch_player):
    await expire_window(completed_match.id)

    results = await asyncio.gather(services.expiry_processor.sweep(), services.expiry_processor.sweep())

    assert sum(r.approved for r in results) == 1
    for p in players:
        assert (await fetch_player(p.id)).matches_played == 1


async def test_process_match_reports_open_window(services, completed_match):
    outcome = await services.expiry_processor.process_match(completed_match.id)

    assert outcome.success
    assert outcome.action is None


async def test_processing_stats(db, services, match_ops, completed_match, players, other_players, expire_window):
    stats = await services.expiry_processor.get_processing_stats()
    assert (stats.pending_confirmation, stats.ready_to_process, stats.disputed, stats.completed) == (1, 0, 0, 0)

    other = await match_ops.create_match([p.id for p in other_players])
    await match_ops.record_match_result(other.id, [(6, 4), (6, 4)])
    await services.dispute_handler.discard(other.id, reason="test")
    await expire_window(completed_match.id)

    stats = await services.expiry_processor.get_processing_stats()
    assert (stats.pending_confirmation, stats.ready_to_process, stats.disputed, stats.completed) == (0, 1, 1, 0)

    await services.expiry_processor.sweep()

    stats = await services.expiry_processor.get_processing_stats()
    assert (stats.pending_confirmation, stats.ready_to_process, stats.disputed, stats.completed) == (0, 0, 1, 1)


def _store_down():
    return OperationalError("UPDATE players", {}, Exception("database is locked"))


async def test_sweep_prepares_match_whose_calculation_failed(services, match_ops, players, fetch_match,
                                                            monkeypatch):
    class FailingCalculator:
        @staticmethod
        def calculate_match_ratings(ratings, winner_team):
            raise _store_down()

    match = await match_ops.create_match([p.id for p in players])
    monkeypatch.setattr(services.settlement_engine, "calculator", FailingCalculator)
    with pytest.raises(TransientStoreError):
        await match_ops.record_match_result(match.id, [(6, 4), (6, 3)])

    stranded = await fetch_match(match.id)
    assert stranded.status == MatchStatus.COMPLETED
    assert stranded.confirmation_status is None
    stats = await services.expiry_processor.get_processing_stats()
    assert stats.ready_to_process == 1

    monkeypatch.setattr(services.settlement_engine, "calculator", GlickoCalculator)
    result = await services.expiry_processor.sweep()

    assert result.processed == 1
    assert result.prepared == 1
    assert result.errors == []
    match = await fetch_match(match.id)
    assert match.confirmation_status == ConfirmationStatus.PENDING
    assert match.confirmation_deadline is not None
    assert not match.rating_applied

    vote = await services.confirmation_ledger.record_vote(match.id, players[0].id, VoteAction.APPROVED)
    assert vote.success


async def test_sweep_reports_lock_release_failure(services, completed_match, expire_window, fetch_match,
                                                  monkeypatch):
    async def fail_release(name):
        raise _store_down()

    monkeypatch.setattr(services.expiry_processor.processing_lock, "release", fail_release)
    await expire_window(completed_match.id)

    result = await services.expiry_processor.sweep()

    assert result.approved == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Releasing lock:")
    assert (await fetch_match(completed_match.id)).rating_applied
