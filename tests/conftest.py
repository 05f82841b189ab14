from datetime import timedelta

import pytest
from sqlalchemy import update

from padel_bot.database.database import Database
from padel_bot.database.match_operations import MatchOperations
from padel_bot.database.models import Match, Player
from padel_bot.services.settlement_services import build_settlement_services
from padel_bot.utils.time_utils import utc_now


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'padel.db'}")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
async def services(db):
    return await build_settlement_services(db.session_factory, retry_backoff=0)


@pytest.fixture
def match_ops(db, services):
    return MatchOperations(db, services.settlement_engine)


@pytest.fixture
async def players(db):
    return [await db.create_player(f"player{i}", discord_id=1000 + i) for i in range(1, 5)]


@pytest.fixture
async def other_players(db):
    return [await db.create_player(f"guest{i}", discord_id=2000 + i) for i in range(1, 5)]


@pytest.fixture
async def completed_match(match_ops, players):
    """Team 1 (players 1-2) beat team 2 (players 3-4) 6-4 6-3; voting is open."""
    match = await match_ops.create_match([p.id for p in players])
    return await match_ops.record_match_result(match.id, [(6, 4), (6, 3)])


@pytest.fixture
def fetch_match(db):
    async def _fetch(match_id):
        async with db.get_session() as session:
            return await session.get(Match, match_id)
    return _fetch


@pytest.fixture
def fetch_player(db):
    async def _fetch(player_id):
        async with db.get_session() as session:
            return await session.get(Player, player_id)
    return _fetch


@pytest.fixture
def expire_window(db):
    """Move a match's confirmation deadline into the past."""
    async def _expire(match_id):
        async with db.transaction() as session:
            await session.execute(
                update(Match)
                .where(Match.id == match_id)
                .values(confirmation_deadline=utc_now() - timedelta(minutes=1))
            )
    return _expire


@pytest.fixture
async def event_log(services):
    events = []

    async def _record(event):
        events.append(event)

    await services.event_bus.subscribe(_record)
    return events
