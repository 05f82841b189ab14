"""
Match Operations Module

Creates 2v2 padel matches and records their set scores. Recording a final
score hands the match to the settlement engine, which computes the rating
changes and opens the confirmation window.

Team layout: player1 and player2 form team 1, player3 and player4 team 2.
"""

from typing import List, Optional, Sequence, Tuple
from contextlib import asynccontextmanager
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from padel_bot.database.models import Match, MatchStatus, Player
from padel_bot.utils.logger import setup_logger
from padel_bot.utils.time_utils import utc_now

logger = setup_logger(__name__)

MAX_SETS = 3
SETS_TO_WIN = 2


class MatchOperationError(Exception):
    """Base exception for match operation errors"""
    pass


class MatchValidationError(MatchOperationError):
    """Raised when match data validation fails"""
    pass


class MatchStateError(MatchOperationError):
    """Raised when match is in invalid state for operation"""
    pass


def determine_winner(set_scores: Sequence[Tuple[int, int]]) -> int:
    """
    Winning team of a best-of-three match, decided by sets won.

    Args:
        set_scores: (team1_games, team2_games) per played set

    Returns:
        1 or 2

    Raises:
        MatchValidationError: On tied sets, negative scores, missing or superfluous sets
    """
    if not 2 <= len(set_scores) <= MAX_SETS:
        raise MatchValidationError(f"A match has 2 or 3 sets, got {len(set_scores)}")

    sets_won = {1: 0, 2: 0}
    for number, (team1, team2) in enumerate(set_scores, start=1):
        if team1 is None or team2 is None or team1 < 0 or team2 < 0:
            raise MatchValidationError(f"Set {number} has an invalid score: {team1}-{team2}")
        if team1 == team2:
            raise MatchValidationError(f"Set {number} cannot be tied ({team1}-{team2})")
        if max(sets_won.values()) >= SETS_TO_WIN:
            raise MatchValidationError(f"Set {number} was played after the match was already decided")
        sets_won[1 if team1 > team2 else 2] += 1

    if sets_won[1] == sets_won[2]:
        raise MatchValidationError("Match is tied on sets; a third set is required")
    if max(sets_won.values()) < SETS_TO_WIN:
        raise MatchValidationError("No team has won two sets")
    return 1 if sets_won[1] > sets_won[2] else 2


def parse_set_scores(text: str) -> List[Tuple[int, int]]:
    """
    Parse a score line such as "6-4 3-6 7-5" into (team1, team2) tuples.

    Raises:
        MatchValidationError: If a set is not written as two integers joined by "-"
    """
    sets = []
    for token in text.replace(",", " ").split():
        parts = token.split("-")
        if len(parts) != 2 or not all(p.strip().isdigit() for p in parts):
            raise MatchValidationError(f"Invalid set score '{token}', expected e.g. 6-4")
        sets.append((int(parts[0]), int(parts[1])))
    return sets


class MatchOperations:
    """
    Match lifecycle: creation, score recording and lookups.

    Settlement itself lives in the services package; this class only hands
    completed matches over to the settlement engine.
    """

    def __init__(self, database, settlement_engine=None):
        """Initialize with database instance and the settlement engine"""
        self.db = database
        self.settlement_engine = settlement_engine
        self.logger = logger

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise creates and manages a new session.
        """
        if session:
            yield session
        else:
            async with self.db.transaction() as new_session:
                yield new_session

    async def create_match(self, player_ids: Sequence[int], created_by: Optional[int] = None,
                           session: Optional[AsyncSession] = None) -> Match:
        """
        Create a 2v2 match.

        Args:
            player_ids: Four player IDs; the first two are team 1, the last two team 2
            created_by: Player ID of whoever set the match up
            session: Optional caller-managed session

        Raises:
            MatchValidationError: Wrong number of players, duplicates or unknown players
        """
        player_ids = list(player_ids)
        if len(player_ids) != 4:
            raise MatchValidationError(f"A padel match needs exactly 4 players, got {len(player_ids)}")
        if len(set(player_ids)) != 4:
            raise MatchValidationError("A player cannot appear twice in the same match")

        async with self._get_session_context(session) as s:
            result = await s.execute(select(Player.id).where(Player.id.in_(player_ids)))
            found = set(result.scalars().all())
            missing = [pid for pid in player_ids if pid not in found]
            if missing:
                raise MatchValidationError(f"Players not found: {missing}")

            match = Match(
                player1_id=player_ids[0],
                player2_id=player_ids[1],
                player3_id=player_ids[2],
                player4_id=player_ids[3],
                status=MatchStatus.PENDING,
                created_by=created_by
            )
            s.add(match)
            await s.flush()
            self.logger.info(f"Created Match {match.id}: {player_ids[:2]} vs {player_ids[2:]}")
            return match

    async def record_match_result(self, match_id: int, set_scores: Sequence[Tuple[int, int]]) -> Match:
        """
        Record final set scores and queue the match for confirmation.

        The winner is derived from sets won. Once the score is stored the
        settlement engine computes the rating changes, which are only
        applied after the players confirm (or the window expires).

        Raises:
            MatchValidationError: If the scores are not a decisive best-of-three
            MatchStateError: If the match is already completed or cancelled
        """
        winner_team = determine_winner(set_scores)
        padded = list(set_scores) + [(None, None)] * (MAX_SETS - len(set_scores))

        async with self.db.transaction() as session:
            match = await session.get(Match, match_id)
            if not match:
                raise MatchValidationError(f"Match {match_id} not found")
            if match.status in (MatchStatus.COMPLETED, MatchStatus.CANCELLED):
                raise MatchStateError(f"Match {match_id} is already {match.status.value}")

            for number, (team1, team2) in enumerate(padded, start=1):
                setattr(match, f"team1_score_set{number}", team1)
                setattr(match, f"team2_score_set{number}", team2)
            match.winner_team = winner_team
            match.status = MatchStatus.COMPLETED
            match.completed_at = utc_now()

        self.logger.info(f"Match {match_id} completed: team {winner_team} won {list(set_scores)}")

        if self.settlement_engine:
            result = await self.settlement_engine.calculate_and_store(match_id)
            if not result.success:
                self.logger.error(f"Could not prepare settlement for Match {match_id}: {result.message}")

        return await self.get_match_by_id(match_id)

    async def cancel_match(self, match_id: int, reason: str = None) -> Match:
        """Call off a match that has not been completed."""
        async with self.db.transaction() as session:
            match = await session.get(Match, match_id)
            if not match:
                raise MatchValidationError(f"Match {match_id} not found")
            if match.status == MatchStatus.COMPLETED:
                raise MatchStateError(f"Match {match_id} is completed; use the dispute flow instead")
            match.status = MatchStatus.CANCELLED
            match.cancellation_reason = reason
            self.logger.info(f"Match {match_id} called off: {reason or 'no reason'}")
            return match

    async def get_match_by_id(self, match_id: int) -> Optional[Match]:
        async with self.db.get_session() as session:
            return await session.get(Match, match_id)

    async def get_matches_for_player(self, player_id: int, status: Optional[MatchStatus] = None,
                                     limit: int = 20) -> List[Match]:
        """Most recent matches a player took part in."""
        async with self.db.get_session() as session:
            stmt = select(Match).where(or_(
                Match.player1_id == player_id,
                Match.player2_id == player_id,
                Match.player3_id == player_id,
                Match.player4_id == player_id
            ))
            if status is not None:
                stmt = stmt.where(Match.status == status)
            result = await session.execute(stmt.order_by(Match.id.desc()).limit(limit))
            return list(result.scalars().all())
