"""
Dispute handling: cancelling reported matches and overturning settled ones.

discard() is the normal path. It runs when enough players report a match,
before any rating was applied, and marks the match and its stored rating
changes as cancelled.

overturn() is the admin path. It also reverses a match whose ratings were
already applied, restoring every player's pre-match rating in a single
transaction.
"""

import logging
from typing import List, Optional
from sqlalchemy import select, update

from padel_bot.database.models import Match, ConfirmationStatus, Player, RatingChangeRecord
from padel_bot.data_models.settlement import SettlementResult
from padel_bot.services.base import BaseService
from padel_bot.services.match_events import MatchEventBus, MatchEvent, MatchEventKind
from padel_bot.services.settlement_engine import to_rating_change, RATING_DRIFT_TOLERANCE
from padel_bot.utils.settlement_exceptions import SettlementIntegrityError, SettlementStateError
from padel_bot.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

class DisputeHandler(BaseService):
    """Terminal cancellation of matches, with optional reversal of applied ratings."""

    def __init__(self, session_factory, event_bus: Optional[MatchEventBus] = None, **retry_options):
        super().__init__(session_factory, **retry_options)
        self.event_bus = event_bus

    async def discard(self, match_id: int, reason: Optional[str] = None,
                      allow_reversal: bool = False) -> SettlementResult:
        """
        Cancel a match and discard its stored rating changes.

        Idempotent for a match that is already cancelled.

        Args:
            match_id: Match to cancel
            reason: Stored as cancellation_reason
            allow_reversal: Also undo ratings that were already applied

        Raises:
            SettlementIntegrityError: Applied ratings without allow_reversal, or missing profiles
            SettlementStateError: Match already approved and allow_reversal not set
            TransientStoreError: If the store stays unavailable
        """
        result = await self.execute_with_retry(
            lambda: self._discard_once(match_id, reason, allow_reversal),
            operation=f"discard(match {match_id})"
        )
        if result.changed and self.event_bus:
            kind = MatchEventKind.RATINGS_REVERTED if result.rating_changes else MatchEventKind.MATCH_CANCELLED
            await self.event_bus.publish(MatchEvent(match_id=match_id, kind=kind))
        return result

    async def overturn(self, match_id: int, reason: Optional[str] = None) -> SettlementResult:
        """Admin cancellation of a match in any state, reversing applied ratings."""
        logger.warning(f"Overturning Match {match_id}: {reason or 'no reason given'}")
        return await self.discard(match_id, reason=reason or "Overturned by admin", allow_reversal=True)

    async def _discard_once(self, match_id: int, reason: Optional[str], allow_reversal: bool) -> SettlementResult:
        async with self.get_session() as session:
            match = await session.get(Match, match_id)
            if not match:
                return SettlementResult(False, f"Match {match_id} not found", match_id)

            if match.rating_applied:
                if not allow_reversal:
                    raise SettlementIntegrityError(match_id, "cancellation requested after ratings were applied")
                return await self._reverse(session, match, reason)

            now = utc_now()

            if match.confirmation_status == ConfirmationStatus.CANCELLED:
                marked = await self._mark_records_reverted(session, match_id, now)
                logger.info(f"Match {match_id} already cancelled")
                return SettlementResult(True, "Match already cancelled", match_id, changed=marked > 0)

            allowed = [ConfirmationStatus.PENDING]
            if allow_reversal:
                allowed.append(ConfirmationStatus.APPROVED)
            if match.confirmation_status not in allowed:
                status = match.confirmation_status.value if match.confirmation_status else "not prepared"
                raise SettlementStateError(match_id, f"Match cannot be cancelled while {status}")

            claim = await session.execute(
                update(Match)
                .where(
                    Match.id == match_id,
                    Match.rating_applied == False,  # noqa: E712
                    Match.confirmation_status.in_(allowed)
                )
                .values(
                    confirmation_status=ConfirmationStatus.CANCELLED,
                    cancelled_at=now,
                    cancellation_reason=reason
                )
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount != 1:
                await session.refresh(match)
                if match.confirmation_status == ConfirmationStatus.CANCELLED and not match.rating_applied:
                    return SettlementResult(True, "Match already cancelled", match_id)
                return SettlementResult(
                    False, f"Match was resolved concurrently ({match.confirmation_status.value})", match_id
                )

            marked = await self._mark_records_reverted(session, match_id, now)
            logger.info(f"Cancelled Match {match_id} ({reason or 'no reason'}); discarded {marked} rating changes")
            return SettlementResult(True, "Match cancelled; ratings will not be applied", match_id, changed=True)

    async def _reverse(self, session, match: Match, reason: Optional[str]) -> SettlementResult:
        """Restore pre-match ratings of an applied match. Caller owns the transaction."""
        match_id = match.id
        now = utc_now()

        claim = await session.execute(
            update(Match)
            .where(Match.id == match_id, Match.rating_applied == True)  # noqa: E712
            .values(
                rating_applied=False,
                confirmation_status=ConfirmationStatus.CANCELLED,
                cancelled_at=now,
                cancellation_reason=reason
            )
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount != 1:
            logger.info(f"Match {match_id} was reversed by a concurrent caller")
            return SettlementResult(True, "Match already reversed", match_id)

        result = await session.execute(
            select(RatingChangeRecord)
            .where(
                RatingChangeRecord.match_id == match_id,
                RatingChangeRecord.is_reverted == False,  # noqa: E712
                RatingChangeRecord.applied_at.isnot(None)
            )
            .order_by(RatingChangeRecord.id)
        )
        records: List[RatingChangeRecord] = list(result.scalars().all())
        if len(records) != 4:
            raise SettlementIntegrityError(match_id, f"expected 4 applied rating changes to reverse, found {len(records)}")

        for record in records:
            player = await session.get(Player, record.player_id, with_for_update=True, populate_existing=True)
            if player is None:
                raise SettlementIntegrityError(match_id, f"player profile {record.player_id} not found")
            if abs(player.glicko_rating - record.rating_after) > RATING_DRIFT_TOLERANCE:
                logger.warning(
                    f"Player {player.id} has played since Match {match_id} "
                    f"({record.rating_after:.1f} -> {player.glicko_rating:.1f}); "
                    f"restoring pre-match rating {record.rating_before:.1f}"
                )
            player.glicko_rating = record.rating_before
            player.glicko_rd = record.rd_before
            player.glicko_vol = record.vol_before
            player.matches_played = max(0, (player.matches_played or 0) - 1)

        await session.flush()
        for record in records:
            record.is_reverted = True
            record.reverted_at = now

        logger.warning(
            f"Reversed ratings for Match {match_id}: "
            f"{[(r.player_id, round(r.rating_after, 1), round(r.rating_before, 1)) for r in records]}"
        )
        return SettlementResult(
            True, "Match overturned and ratings restored", match_id,
            changed=True, rating_changes=[to_rating_change(r) for r in records]
        )

    async def _mark_records_reverted(self, session, match_id: int, now) -> int:
        result = await session.execute(
            update(RatingChangeRecord)
            .where(
                RatingChangeRecord.match_id == match_id,
                RatingChangeRecord.is_reverted == False  # noqa: E712
            )
            .values(is_reverted=True, reverted_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
