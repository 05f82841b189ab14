"""
Expiry processor: periodic sweep over matches whose voting has ended.

A match is due when its confirmation window has closed while still
pending, when it reached quorum but its ratings were never applied
(the apply right after the last vote failed), or when its score was
recorded but the rating calculation never completed. Each due match is settled
or cancelled independently; a failure on one match is recorded in the
sweep result and does not stop the others.

Only one sweep runs at a time across every process sharing the database,
enforced by a named ProcessingLock.
"""

import logging
from typing import List, Optional
from sqlalchemy import select, func, and_, or_

from padel_bot.config import Config
from padel_bot.database.models import Match, MatchStatus, ConfirmationStatus
from padel_bot.data_models.settlement import SweepResult, MatchProcessingOutcome, ProcessingStats
from padel_bot.services.base import BaseService
from padel_bot.services.match_events import MatchEvent, MatchEventKind
from padel_bot.utils.time_utils import utc_now, as_utc

logger = logging.getLogger(__name__)

class ExpiryProcessor(BaseService):
    """Settles expired and stranded matches in batches."""

    def __init__(self, session_factory, settlement_engine, dispute_handler, processing_lock,
                 lock_name: str = None, report_threshold: int = None, quorum_size: int = None,
                 batch_size: int = 100, **retry_options):
        super().__init__(session_factory, **retry_options)
        self.settlement_engine = settlement_engine
        self.dispute_handler = dispute_handler
        self.processing_lock = processing_lock
        self.lock_name = lock_name or Config.SWEEP_LOCK_NAME
        self.report_threshold = report_threshold or Config.REPORT_THRESHOLD
        self.quorum_size = quorum_size or Config.QUORUM_SIZE
        self.batch_size = batch_size

    async def sweep(self) -> SweepResult:
        """
        Process every due match once.

        Returns immediately with skipped=True if another worker holds the
        sweep lock. Errors are collected into the result, never raised.
        """
        result = SweepResult()

        try:
            acquired = await self.processing_lock.acquire(self.lock_name)
        except Exception as e:
            logger.error(f"Settlement sweep could not take lock '{self.lock_name}': {e}", exc_info=True)
            result.errors.append(f"Acquiring lock: {e}")
            return result

        if not acquired:
            logger.info("Settlement sweep already running elsewhere, skipping")
            result.skipped = True
            return result

        try:
            try:
                match_ids = await self.execute_with_retry(self._find_due_matches, operation="find due matches")
            except Exception as e:
                logger.error(f"Settlement sweep could not load due matches: {e}", exc_info=True)
                result.errors.append(f"Loading due matches: {e}")
                return result

            for match_id in match_ids:
                result.processed += 1
                try:
                    outcome = await self.process_match(match_id)
                except Exception as e:
                    logger.error(f"Settlement sweep failed on Match {match_id}: {e}", exc_info=True)
                    result.errors.append(f"Match {match_id}: {e}")
                    continue

                if not outcome.success:
                    result.errors.append(f"Match {match_id}: {outcome.message}")
                elif outcome.action == 'approved':
                    result.approved += 1
                elif outcome.action == 'cancelled':
                    result.cancelled += 1
                elif outcome.action == 'prepared':
                    result.prepared += 1
        finally:
            try:
                await self.processing_lock.release(self.lock_name)
            except Exception as e:
                logger.error(f"Settlement sweep could not release lock '{self.lock_name}': {e}", exc_info=True)
                result.errors.append(f"Releasing lock: {e}")

        if result.processed:
            logger.info(
                f"Settlement sweep: {result.processed} processed, {result.approved} approved, "
                f"{result.cancelled} cancelled, {result.prepared} calculated, {len(result.errors)} errors"
            )
        else:
            logger.debug("Settlement sweep: nothing due")
        return result

    async def process_match(self, match_id: int) -> MatchProcessingOutcome:
        """Re-evaluate a single match and settle or cancel it if it is due."""
        match = await self._load_match(match_id)
        if not match:
            return MatchProcessingOutcome(match_id, False, f"Match {match_id} not found")

        if match.rating_applied:
            return MatchProcessingOutcome(match_id, True, "Ratings already applied")
        if match.confirmation_status is None:
            if match.status != MatchStatus.COMPLETED:
                return MatchProcessingOutcome(match_id, True, "Match has no final score yet")
            # Score recorded but the calculation that opens voting never committed
            result = await self.settlement_engine.calculate_and_store(match_id)
            return await self._outcome(match_id, result, 'prepared')
        if match.confirmation_status == ConfirmationStatus.CANCELLED:
            return MatchProcessingOutcome(match_id, True, "Match already cancelled")

        if match.reported_count >= self.report_threshold:
            result = await self.dispute_handler.discard(match_id, reason=f"Disputed: reported by {match.reported_count} players")
            return await self._outcome(match_id, result, 'cancelled')

        deadline = as_utc(match.confirmation_deadline)
        due = (
            match.confirmation_status == ConfirmationStatus.APPROVED
            or match.approved_count >= self.quorum_size
            or (deadline is not None and deadline <= utc_now())
        )
        if not due:
            return MatchProcessingOutcome(match_id, True, "Confirmation window still open")

        result = await self.settlement_engine.apply(match_id)
        return await self._outcome(match_id, result, 'approved')

    async def _outcome(self, match_id: int, result, action: str) -> MatchProcessingOutcome:
        if result.success:
            return MatchProcessingOutcome(match_id, True, result.message, action if result.changed else None)

        # Another worker may have resolved the match between our read and our write
        match = await self._load_match(match_id)
        if match and (match.rating_applied or match.confirmation_status == ConfirmationStatus.CANCELLED):
            return MatchProcessingOutcome(match_id, True, f"Resolved concurrently: {result.message}")
        return MatchProcessingOutcome(match_id, False, result.message)

    async def handle_match_event(self, event: MatchEvent) -> None:
        """
        Event bus subscriber. A vote that left a quorum-approved match
        unapplied gets one more settlement attempt right away.
        """
        if event.kind != MatchEventKind.VOTE_RECORDED:
            return
        match = await self._load_match(event.match_id)
        if match and match.confirmation_status == ConfirmationStatus.APPROVED and not match.rating_applied:
            logger.info(f"Match {event.match_id} approved but not applied, retrying settlement")
            await self.process_match(event.match_id)

    async def get_processing_stats(self) -> ProcessingStats:
        """Counts of matches in each settlement stage."""
        now = utc_now()
        async with self.get_session() as session:
            async def count(*conditions) -> int:
                result = await session.execute(select(func.count(Match.id)).where(*conditions))
                return result.scalar() or 0

            return ProcessingStats(
                pending_confirmation=await count(
                    Match.confirmation_status == ConfirmationStatus.PENDING,
                    Match.confirmation_deadline > now
                ),
                ready_to_process=await count(self._due_condition(now)),
                disputed=await count(Match.confirmation_status == ConfirmationStatus.CANCELLED),
                completed=await count(Match.rating_applied == True)  # noqa: E712
            )

    @staticmethod
    def _due_condition(now):
        return or_(
            and_(
                Match.status == MatchStatus.COMPLETED,
                Match.confirmation_status.is_(None)
            ),
            and_(
                Match.confirmation_status == ConfirmationStatus.PENDING,
                Match.confirmation_deadline <= now
            ),
            and_(
                Match.confirmation_status == ConfirmationStatus.APPROVED,
                Match.rating_applied == False  # noqa: E712
            )
        )

    async def _find_due_matches(self) -> List[int]:
        async with self.get_session() as session:
            result = await session.execute(
                select(Match.id)
                .where(self._due_condition(utc_now()))
                .order_by(Match.confirmation_deadline, Match.id)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def _load_match(self, match_id: int) -> Optional[Match]:
        async with self.get_session() as session:
            return await session.get(Match, match_id)
