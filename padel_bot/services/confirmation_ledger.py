"""
Confirmation ledger: the per-player vote on a completed match.

Each participant gets exactly one vote (approve or report) inside the
confirmation window. A vote is recorded with a compare-and-swap on the
player's pending row, the match counters are recomputed from the rows in
the same transaction, and the match's own status is swapped only while it
is still pending. Whatever the vote decides (quorum reached, too many
reports) is carried out after the vote has committed.
"""

import logging
from collections import Counter
from typing import List, Optional, Tuple, Union
from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

from padel_bot.config import Config
from padel_bot.database.models import (
    Match, MatchStatus, MatchConfirmation, ConfirmationStatus, VoteAction, ReportReason
)
from padel_bot.data_models.settlement import VoteResult, ConfirmationSummary, PlayerVote
from padel_bot.services.base import BaseService
from padel_bot.services.match_events import MatchEventBus, MatchEvent, MatchEventKind
from padel_bot.utils.settlement_exceptions import (
    SettlementError, SettlementIntegrityError, VoteRejectedError, MatchNotFoundError,
    MatchNotFinalError, NotParticipantError, VotingClosedError, VotingWindowExpiredError,
    AlreadyVotedError, InvalidVoteError, InvalidReportReasonError
)
from padel_bot.utils.time_utils import utc_now, as_utc

logger = logging.getLogger(__name__)

VOTE_ALIASES = {
    'approve': VoteAction.APPROVED,
    'approved': VoteAction.APPROVED,
    'confirm': VoteAction.APPROVED,
    'report': VoteAction.REPORTED,
    'reported': VoteAction.REPORTED,
}

class ConfirmationLedger(BaseService):
    """Records player votes and turns them into settlement decisions."""

    def __init__(self, session_factory, settlement_engine, dispute_handler,
                 event_bus: Optional[MatchEventBus] = None, report_threshold: int = None,
                 quorum_size: int = None, **retry_options):
        super().__init__(session_factory, **retry_options)
        self.settlement_engine = settlement_engine
        self.dispute_handler = dispute_handler
        self.event_bus = event_bus
        self.report_threshold = report_threshold or Config.REPORT_THRESHOLD
        self.quorum_size = quorum_size or Config.QUORUM_SIZE

    # ========================================================================
    # Voting
    # ========================================================================

    async def record_vote(self, match_id: int, player_id: int, action: Union[VoteAction, str],
                          reason: Union[ReportReason, str, None] = None, details: Optional[str] = None,
                          discord_user_id: Optional[int] = None) -> VoteResult:
        """
        Record one player's approve/report vote.

        Rejected votes leave no trace and come back as an unsuccessful
        VoteResult with a reason code. A vote that completes the quorum
        applies the ratings; a vote that reaches the report threshold
        cancels the match.

        Args:
            reason: ReportReason (or its value) for a report; defaults to OTHER
            details: Free-text explanation kept alongside a report

        Raises:
            SettlementIntegrityError: If the match's vote rows are corrupt
            TransientStoreError: If the store stays unavailable
        """
        try:
            vote = self._coerce_action(action)
            report_reason = self._coerce_reason(reason) if vote == VoteAction.REPORTED else None
            if report_reason is None:
                details = None
            elif details:
                details = details.strip()[:500] or None
            new_status = await self.execute_with_retry(
                lambda: self._record_vote_once(match_id, player_id, vote, report_reason, details, discord_user_id),
                operation=f"record_vote(match {match_id}, player {player_id})"
            )
        except VoteRejectedError as e:
            logger.info(f"Vote rejected: {e} [{e.code}]")
            return VoteResult(False, e.user_message, await self._current_status(match_id), e.code)

        logger.info(f"Player {player_id} {vote.value} Match {match_id}; confirmation_status={new_status.value}")
        if new_status == ConfirmationStatus.CANCELLED:
            message = "🚫 Report recorded. The match has been cancelled and ratings will not change."
            try:
                await self.dispute_handler.discard(match_id, reason=f"Reported by {self.report_threshold}+ players")
            except SettlementError as e:
                logger.error(f"Discarding ratings for Match {match_id} failed after cancellation: {e}")
        elif new_status == ConfirmationStatus.APPROVED:
            message = "✅ Match confirmed by all players. Ratings have been applied."
            try:
                result = await self.settlement_engine.apply(match_id)
                if not result.success:
                    logger.error(f"Quorum reached for Match {match_id} but apply refused: {result.message}")
                    message = "✅ Match confirmed by all players. Ratings will be applied shortly."
            except SettlementError as e:
                # The sweep retries approved matches whose ratings are not applied
                logger.error(f"Applying ratings for Match {match_id} failed after quorum: {e}")
                message = "✅ Match confirmed by all players. Ratings will be applied shortly."
        elif vote == VoteAction.REPORTED:
            message = "⚠️ Report recorded. The match will be cancelled if another player reports it."
        else:
            message = "✅ Confirmation recorded. Waiting for the other players."

        if self.event_bus:
            await self.event_bus.publish(MatchEvent(match_id=match_id, kind=MatchEventKind.VOTE_RECORDED,
                                                    player_id=player_id))
        return VoteResult(True, message, new_status.value)

    async def _record_vote_once(self, match_id: int, player_id: int, action: VoteAction,
                                report_reason: Optional[ReportReason], details: Optional[str],
                                discord_user_id: Optional[int]) -> ConfirmationStatus:
        async with self.get_session() as session:
            match = await session.get(Match, match_id)
            now = utc_now()
            self._check_preconditions(match, match_id, player_id, now)

            cast = await session.execute(
                update(MatchConfirmation)
                .where(
                    MatchConfirmation.match_id == match_id,
                    MatchConfirmation.player_id == player_id,
                    MatchConfirmation.action == VoteAction.PENDING
                )
                .values(
                    action=action,
                    action_at=now,
                    report_reason=report_reason,
                    details=details,
                    discord_user_id=discord_user_id
                )
                .execution_options(synchronize_session=False)
            )
            if cast.rowcount == 0:
                existing = await self._get_rows(session, match_id, player_id)
                if len(existing) != 1:
                    raise SettlementIntegrityError(
                        match_id, f"expected one confirmation row for player {player_id}, found {len(existing)}"
                    )
                raise AlreadyVotedError(match_id, player_id, existing[0].action.value)
            if cast.rowcount > 1:
                raise SettlementIntegrityError(match_id, f"duplicate confirmation rows for player {player_id}")

            counts = await self._count_votes(session, match_id)
            approved = counts[VoteAction.APPROVED]
            reported = counts[VoteAction.REPORTED]

            values = {'approved_count': approved, 'reported_count': reported}
            if reported >= self.report_threshold:
                new_status = ConfirmationStatus.CANCELLED
                values.update(
                    confirmation_status=new_status,
                    cancelled_at=now,
                    cancellation_reason=f"Disputed: reported by {reported} players"
                )
            elif approved >= self.quorum_size:
                new_status = ConfirmationStatus.APPROVED
                values.update(confirmation_status=new_status, approved_at=now)
            else:
                new_status = ConfirmationStatus.PENDING

            # Only a match that is still pending accepts the vote's outcome
            swap = await session.execute(
                update(Match)
                .where(
                    Match.id == match_id,
                    Match.confirmation_status == ConfirmationStatus.PENDING,
                    Match.rating_applied == False  # noqa: E712
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if swap.rowcount != 1:
                raise VotingClosedError(match_id, "already resolved")

            return new_status

    @staticmethod
    def _coerce_action(action: Union[VoteAction, str]) -> VoteAction:
        if isinstance(action, VoteAction):
            if action == VoteAction.PENDING:
                raise InvalidVoteError(action.value)
            return action
        vote = VOTE_ALIASES.get(str(action).strip().lower())
        if vote is None:
            raise InvalidVoteError(str(action))
        return vote

    @staticmethod
    def _coerce_reason(reason: Union[ReportReason, str, None]) -> ReportReason:
        if reason is None:
            return ReportReason.OTHER
        if isinstance(reason, ReportReason):
            return reason
        try:
            return ReportReason(str(reason).strip().lower().replace(' ', '_'))
        except ValueError:
            raise InvalidReportReasonError(str(reason))

    def _check_preconditions(self, match: Optional[Match], match_id: int, player_id: int, now) -> None:
        if not match:
            raise MatchNotFoundError(match_id)
        if match.status != MatchStatus.COMPLETED:
            raise MatchNotFinalError(match_id, match.status.value)
        if player_id not in match.player_ids:
            raise NotParticipantError(match_id, player_id)
        if match.confirmation_status != ConfirmationStatus.PENDING:
            status = match.confirmation_status.value if match.confirmation_status else "not open"
            raise VotingClosedError(match_id, status)
        deadline = as_utc(match.confirmation_deadline)
        if deadline is None or now >= deadline:
            raise VotingWindowExpiredError(match_id)

    async def _count_votes(self, session, match_id: int) -> Counter:
        result = await session.execute(
            select(MatchConfirmation.player_id, MatchConfirmation.action)
            .where(MatchConfirmation.match_id == match_id)
        )
        rows = result.all()
        player_ids = [row.player_id for row in rows]
        if len(player_ids) != len(set(player_ids)) or len(rows) > self.quorum_size:
            raise SettlementIntegrityError(match_id, f"unexpected confirmation rows: {player_ids}")
        return Counter(row.action for row in rows)

    async def _get_rows(self, session, match_id: int, player_id: int):
        result = await session.execute(
            select(MatchConfirmation).where(
                MatchConfirmation.match_id == match_id,
                MatchConfirmation.player_id == player_id
            )
        )
        return result.scalars().all()

    async def _current_status(self, match_id: int) -> Optional[str]:
        async with self.get_session() as session:
            match = await session.get(Match, match_id)
            if match and match.confirmation_status:
                return match.confirmation_status.value
            return None

    # ========================================================================
    # Queries
    # ========================================================================

    async def can_vote(self, match_id: int, player_id: int) -> Tuple[bool, Optional[str]]:
        """
        Check whether a player could vote right now, without voting.

        Returns:
            (True, None) or (False, user-facing reason)
        """
        async with self.get_session() as session:
            match = await session.get(Match, match_id)
            try:
                self._check_preconditions(match, match_id, player_id, utc_now())
                rows = await self._get_rows(session, match_id, player_id)
                if rows and rows[0].action != VoteAction.PENDING:
                    raise AlreadyVotedError(match_id, player_id, rows[0].action.value)
            except VoteRejectedError as e:
                return False, e.user_message
            return True, None

    async def get_player_vote(self, match_id: int, player_id: int) -> Optional[VoteAction]:
        """The player's current vote, or None if they have no vote row."""
        async with self.get_session() as session:
            rows = await self._get_rows(session, match_id, player_id)
            if len(rows) > 1:
                raise SettlementIntegrityError(match_id, f"duplicate confirmation rows for player {player_id}")
            return rows[0].action if rows else None

    async def get_confirmation_summary(self, match_id: int) -> Optional[ConfirmationSummary]:
        """
        Aggregate vote state of a match, one entry per participant in slot order.

        Returns None for an unknown match.
        """
        async with self.get_session() as session:
            result = await session.execute(
                select(Match)
                .options(selectinload(Match.confirmations).selectinload(MatchConfirmation.player))
                .where(Match.id == match_id)
            )
            match = result.scalar_one_or_none()
            if not match:
                return None

            by_player = {}
            for confirmation in match.confirmations:
                if confirmation.player_id in by_player:
                    raise SettlementIntegrityError(
                        match_id, f"duplicate confirmation rows for player {confirmation.player_id}"
                    )
                by_player[confirmation.player_id] = confirmation

            per_player = []
            for player_id in match.player_ids:
                confirmation = by_player.get(player_id)
                if confirmation is None:
                    continue
                per_player.append(PlayerVote(
                    player_id=player_id,
                    display_name=confirmation.player.name if confirmation.player else None,
                    team=match.team_of(player_id),
                    action=confirmation.action.value,
                    action_at=as_utc(confirmation.action_at),
                    reason=confirmation.report_reason.value if confirmation.report_reason else None,
                    details=confirmation.details
                ))

            deadline = as_utc(match.confirmation_deadline)
            return ConfirmationSummary(
                match_id=match_id,
                status=match.confirmation_status.value if match.confirmation_status else None,
                approved_count=match.approved_count,
                reported_count=match.reported_count,
                pending_count=sum(1 for vote in per_player if vote.action == VoteAction.PENDING.value),
                deadline=deadline,
                rating_applied=match.rating_applied,
                per_player=per_player,
                time_remaining=(deadline - utc_now()) if deadline else None
            )

    async def get_match_reports(self, match_id: int) -> List[PlayerVote]:
        """Reports filed against a match, oldest first. Empty for an unknown match."""
        summary = await self.get_confirmation_summary(match_id)
        if summary is None:
            return []
        reports = [vote for vote in summary.per_player if vote.action == VoteAction.REPORTED.value]
        return sorted(reports, key=lambda vote: vote.action_at)
