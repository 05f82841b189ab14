"""
Settlement engine: deferred Glicko-2 calculation and exactly-once application.

calculate_and_store() runs once when a match's score becomes final. It
computes the four new ratings and parks them in match_rating_changes
together with four pending confirmation rows. apply() later copies the
stored values onto the player profiles once the vote (or its expiry)
allows it.

Exactly-once application relies on a compare-and-swap on the match row:
the first write of the applying transaction flips rating_applied from
false to true, and every profile write happens in that same transaction.
A concurrent caller's swap matches no row and it writes nothing.
"""

import logging
from datetime import timedelta
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from padel_bot.config import Config
from padel_bot.database.models import (
    Match, MatchStatus, MatchConfirmation, ConfirmationStatus, VoteAction,
    Player, RatingChangeRecord
)
from padel_bot.data_models.settlement import SettlementResult, RatingChange
from padel_bot.services.base import BaseService
from padel_bot.services.match_events import MatchEventBus, MatchEvent, MatchEventKind
from padel_bot.utils.glicko import GlickoCalculator, GlickoRating
from padel_bot.utils.settlement_exceptions import SettlementIntegrityError
from padel_bot.utils.time_utils import utc_now, as_utc

logger = logging.getLogger(__name__)

RATING_DRIFT_TOLERANCE = 1e-6

def to_rating_change(record: RatingChangeRecord) -> RatingChange:
    return RatingChange(
        player_id=record.player_id,
        rating_before=record.rating_before,
        rd_before=record.rd_before,
        vol_before=record.vol_before,
        rating_after=record.rating_after,
        rd_after=record.rd_after,
        vol_after=record.vol_after
    )

class SettlementEngine(BaseService):
    """Computes, stores and applies rating changes for completed matches."""

    def __init__(self, session_factory, event_bus: Optional[MatchEventBus] = None,
                 confirmation_window: Optional[timedelta] = None, calculator=GlickoCalculator,
                 report_threshold: int = None, quorum_size: int = None, **retry_options):
        """
        Args:
            session_factory: Async session factory from Database class
            event_bus: Receives an event after each committed change
            confirmation_window: Voting window length (default Config.get_confirmation_window())
            calculator: Object exposing calculate_match_ratings(players, winner_team)
            report_threshold: Reports that cancel a match (default Config.REPORT_THRESHOLD)
            quorum_size: Approvals that settle a match early (default Config.QUORUM_SIZE)
        """
        super().__init__(session_factory, **retry_options)
        self.event_bus = event_bus
        self.confirmation_window = confirmation_window or Config.get_confirmation_window()
        self.calculator = calculator
        self.report_threshold = report_threshold or Config.REPORT_THRESHOLD
        self.quorum_size = quorum_size or Config.QUORUM_SIZE

    # ========================================================================
    # Deferred calculation
    # ========================================================================

    async def calculate_and_store(self, match_id: int) -> SettlementResult:
        """
        Compute and persist the rating changes for a match whose score just became final.

        Idempotent: once records exist they are never recomputed, and a
        second call reports success without touching anything.

        Returns:
            SettlementResult with the four stored rating changes

        Raises:
            SettlementIntegrityError: If the match has a partial set of records
            TransientStoreError: If the store stays unavailable
        """
        try:
            result = await self.execute_with_retry(
                lambda: self._calculate_and_store_once(match_id),
                operation=f"calculate_and_store(match {match_id})"
            )
        except IntegrityError:
            # A concurrent caller inserted the records first
            logger.info(f"Match {match_id} settlement was prepared concurrently")
            result = await self._calculate_and_store_once(match_id)

        if result.changed:
            await self._publish(match_id, MatchEventKind.SETTLEMENT_PREPARED)
        return result

    async def _calculate_and_store_once(self, match_id: int) -> SettlementResult:
        async with self.get_session() as session:
            match = await session.get(Match, match_id)
            if not match:
                return SettlementResult(False, f"Match {match_id} not found", match_id)

            if match.rating_applied:
                return SettlementResult(True, "Ratings already calculated and applied", match_id)

            existing = await self._load_records(session, match_id)
            if existing:
                if len(existing) != 4:
                    raise SettlementIntegrityError(match_id, f"expected 4 rating change records, found {len(existing)}")
                logger.info(f"Rating changes for Match {match_id} already stored, not recalculating")
                return SettlementResult(
                    True, "Ratings already calculated", match_id,
                    rating_changes=[to_rating_change(r) for r in existing]
                )

            if match.status != MatchStatus.COMPLETED or not match.has_final_score:
                logger.warning(f"Match {match_id} is not complete, cannot calculate ratings")
                return SettlementResult(False, "Match scores incomplete", match_id)

            player_ids = match.player_ids
            if len(set(player_ids)) != 4:
                raise SettlementIntegrityError(match_id, f"participants are not 4 distinct players: {player_ids}")

            # Current ratings, read in the same transaction that stores the deltas
            result = await session.execute(select(Player).where(Player.id.in_(player_ids)))
            players = {p.id: p for p in result.scalars().all()}
            missing = set(player_ids) - set(players)
            if missing:
                raise SettlementIntegrityError(match_id, f"player profiles not found: {sorted(missing)}")

            before = [
                GlickoRating(players[pid].glicko_rating, players[pid].glicko_rd, players[pid].glicko_vol)
                for pid in player_ids
            ]
            after = self.calculator.calculate_match_ratings(before, match.winner_team)

            records = []
            for pid, old, new in zip(player_ids, before, after):
                record = RatingChangeRecord(
                    match_id=match_id,
                    player_id=pid,
                    rating_before=old.rating,
                    rd_before=old.rd,
                    vol_before=old.vol,
                    rating_after=new.rating,
                    rd_after=new.rd,
                    vol_after=new.vol
                )
                session.add(record)
                records.append(record)

            await self._ensure_confirmation_rows(session, match)

            now = utc_now()
            match.confirmation_status = ConfirmationStatus.PENDING
            match.confirmation_deadline = now + self.confirmation_window
            match.approved_count = 0
            match.reported_count = 0
            match.rating_applied = False

            logger.info(
                f"Stored rating changes for Match {match_id}; voting open until "
                f"{match.confirmation_deadline.isoformat()}. Deltas: "
                f"{[(r.player_id, round(r.rating_change, 1)) for r in records]}"
            )

            return SettlementResult(
                True, "Ratings calculated and queued for confirmation", match_id,
                changed=True, rating_changes=[to_rating_change(r) for r in records]
            )

    async def _ensure_confirmation_rows(self, session, match: Match) -> None:
        """Create one pending vote row per participant."""
        result = await session.execute(
            select(MatchConfirmation).where(MatchConfirmation.match_id == match.id)
        )
        existing = result.scalars().all()
        existing_ids = [c.player_id for c in existing]
        if len(existing_ids) != len(set(existing_ids)):
            raise SettlementIntegrityError(match.id, "duplicate confirmation rows")
        if any(c.action != VoteAction.PENDING for c in existing):
            raise SettlementIntegrityError(match.id, "votes exist before settlement was prepared")

        for player_id in match.player_ids:
            if player_id not in existing_ids:
                session.add(MatchConfirmation(
                    match_id=match.id,
                    player_id=player_id,
                    action=VoteAction.PENDING
                ))

    # ========================================================================
    # Application
    # ========================================================================

    async def apply(self, match_id: int) -> SettlementResult:
        """
        Write the stored post-match ratings to the four player profiles.

        Allowed once the match has reached quorum or its deadline has passed,
        with fewer reports than the cancellation threshold. All four profile
        writes and the applied_at stamps commit together or not at all.
        Idempotent: an applied match is a successful no-op.

        Raises:
            SettlementIntegrityError: If records or profiles are missing
            TransientStoreError: If the store stays unavailable
        """
        result = await self.execute_with_retry(
            lambda: self._apply_once(match_id),
            operation=f"apply(match {match_id})"
        )
        if result.changed:
            await self._publish(match_id, MatchEventKind.RATINGS_APPLIED)
        return result

    async def _apply_once(self, match_id: int) -> SettlementResult:
        async with self.get_session() as session:
            match = await session.get(Match, match_id)
            if not match:
                return SettlementResult(False, f"Match {match_id} not found", match_id)

            if match.rating_applied:
                logger.info(f"Ratings already applied for Match {match_id}")
                return SettlementResult(True, "Ratings already applied for this match", match_id)

            if match.confirmation_status is None:
                return SettlementResult(False, "Ratings have not been calculated for this match", match_id)

            if match.confirmation_status == ConfirmationStatus.CANCELLED:
                return SettlementResult(False, "Match has been cancelled; ratings will not be applied", match_id)

            if match.reported_count >= self.report_threshold:
                logger.warning(f"Match {match_id} has {match.reported_count} reports, refusing to apply ratings")
                return SettlementResult(False, "Match has been disputed due to reports", match_id)

            now = utc_now()
            quorum_reached = match.approved_count >= self.quorum_size
            deadline = as_utc(match.confirmation_deadline)
            window_expired = deadline is not None and deadline <= now
            if not quorum_reached and not window_expired:
                return SettlementResult(
                    False, "Waiting for all confirmations or the confirmation window to expire", match_id
                )

            records = await self._load_records(session, match_id, include_reverted=False)
            if len(records) != 4:
                raise SettlementIntegrityError(match_id, f"expected 4 unreverted rating change records, found {len(records)}")

            # Claim the match. Only one writer can flip rating_applied.
            claim = await session.execute(
                update(Match)
                .where(
                    Match.id == match_id,
                    Match.rating_applied == False,  # noqa: E712
                    Match.confirmation_status.in_([ConfirmationStatus.PENDING, ConfirmationStatus.APPROVED]),
                    Match.reported_count < self.report_threshold
                )
                .values(
                    rating_applied=True,
                    confirmation_status=ConfirmationStatus.APPROVED,
                    approved_at=match.approved_at or now
                )
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount != 1:
                await session.refresh(match)
                if match.rating_applied:
                    logger.info(f"Match {match_id} was settled by a concurrent caller")
                    return SettlementResult(True, "Ratings already applied for this match", match_id)
                logger.info(f"Match {match_id} was resolved concurrently as {match.confirmation_status.value}")
                return SettlementResult(False, f"Match was resolved concurrently ({match.confirmation_status.value})", match_id)

            # Profile writes: read each row fresh right before overwriting it
            for record in records:
                player = await session.get(Player, record.player_id, with_for_update=True, populate_existing=True)
                if player is None:
                    raise SettlementIntegrityError(match_id, f"player profile {record.player_id} not found")
                if abs(player.glicko_rating - record.rating_before) > RATING_DRIFT_TOLERANCE:
                    logger.warning(
                        f"Player {player.id} rating moved from {record.rating_before:.1f} to "
                        f"{player.glicko_rating:.1f} since Match {match_id} was calculated; "
                        f"applying stored result {record.rating_after:.1f}"
                    )
                player.glicko_rating = record.rating_after
                player.glicko_rd = record.rd_after
                player.glicko_vol = record.vol_after
                player.matches_played = (player.matches_played or 0) + 1

            # Stamp only after every profile write has reached the database
            await session.flush()
            for record in records:
                record.applied_at = now

            via = "all player confirmations" if quorum_reached else "confirmation window expiry"
            logger.info(
                f"Applied ratings for Match {match_id} via {via}: "
                f"{[(r.player_id, round(r.rating_before, 1), round(r.rating_after, 1)) for r in records]}"
            )
            return SettlementResult(
                True, f"Ratings successfully applied via {via}", match_id,
                changed=True, rating_changes=[to_rating_change(r) for r in records]
            )

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_rating_changes(self, match_id: int) -> List[RatingChange]:
        """Stored rating changes for a match, in participant slot order."""
        async with self.get_session() as session:
            match = await session.get(Match, match_id)
            if not match:
                return []
            records = {r.player_id: r for r in await self._load_records(session, match_id)}
            return [to_rating_change(records[pid]) for pid in match.player_ids if pid in records]

    async def _load_records(self, session, match_id: int, include_reverted: bool = True) -> List[RatingChangeRecord]:
        stmt = select(RatingChangeRecord).where(RatingChangeRecord.match_id == match_id)
        if not include_reverted:
            stmt = stmt.where(RatingChangeRecord.is_reverted == False)  # noqa: E712
        result = await session.execute(stmt.order_by(RatingChangeRecord.id))
        return list(result.scalars().all())

    async def _publish(self, match_id: int, kind: MatchEventKind) -> None:
        if self.event_bus:
            await self.event_bus.publish(MatchEvent(match_id=match_id, kind=kind))
