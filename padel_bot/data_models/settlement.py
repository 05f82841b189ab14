"""
Settlement data models.

Immutable data transfer objects returned by the confirmation ledger, the
settlement engine, the dispute handler and the expiry sweep. to_dict()
renders timestamps as UTC ISO-8601 for API consumers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from padel_bot.utils.time_utils import isoformat_utc


@dataclass(frozen=True)
class VoteResult:
    """Outcome of a single recordVote call."""
    success: bool
    message: str
    new_status: Optional[str]  # confirmation_status after the vote
    reason_code: Optional[str] = None  # Set when the vote was rejected

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'message': self.message,
            'newStatus': self.new_status,
            'reasonCode': self.reason_code,
        }


@dataclass(frozen=True)
class PlayerVote:
    """One participant's row in a confirmation summary."""
    player_id: int
    display_name: Optional[str]
    team: Optional[int]
    action: str
    action_at: Optional[datetime]
    reason: Optional[str]  # ReportReason value, reports only
    details: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'playerId': self.player_id,
            'displayName': self.display_name,
            'team': self.team,
            'action': self.action,
            'actionAt': isoformat_utc(self.action_at),
            'reason': self.reason,
            'details': self.details,
        }


@dataclass(frozen=True)
class ConfirmationSummary:
    """Aggregate view of a match's confirmation vote."""
    match_id: int
    status: Optional[str]
    approved_count: int
    reported_count: int
    pending_count: int
    deadline: Optional[datetime]
    rating_applied: bool
    per_player: List[PlayerVote]
    time_remaining: Optional[timedelta] = None

    @property
    def is_open(self) -> bool:
        return (
            self.status == 'pending'
            and self.time_remaining is not None
            and self.time_remaining > timedelta(0)
        )

    def to_dict(self) -> dict:
        return {
            'matchId': self.match_id,
            'status': self.status,
            'approvedCount': self.approved_count,
            'reportedCount': self.reported_count,
            'pendingCount': self.pending_count,
            'deadline': isoformat_utc(self.deadline),
            'ratingApplied': self.rating_applied,
            'perPlayer': [vote.to_dict() for vote in self.per_player],
        }


@dataclass(frozen=True)
class RatingChange:
    """Before/after triple for one player, as stored at calculation time."""
    player_id: int
    rating_before: float
    rd_before: float
    vol_before: float
    rating_after: float
    rd_after: float
    vol_after: float

    @property
    def rating_delta(self) -> float:
        return self.rating_after - self.rating_before


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of calculate_and_store, apply or discard."""
    success: bool
    message: str
    match_id: int
    changed: bool = False  # False for idempotent no-ops and refusals
    rating_changes: List[RatingChange] = field(default_factory=list)


@dataclass
class SweepResult:
    """Counters for one expiry sweep. Errors are collected, never raised."""
    processed: int = 0
    approved: int = 0
    cancelled: int = 0
    prepared: int = 0  # Ratings calculated late, voting now open
    errors: List[str] = field(default_factory=list)
    skipped: bool = False  # Another worker held the sweep lock

    def to_dict(self) -> dict:
        return {
            'processed': self.processed,
            'approved': self.approved,
            'cancelled': self.cancelled,
            'prepared': self.prepared,
            'errors': list(self.errors),
            'skipped': self.skipped,
        }


@dataclass(frozen=True)
class MatchProcessingOutcome:
    """Result of re-evaluating a single match."""
    match_id: int
    success: bool
    message: str
    action: Optional[str] = None  # 'approved', 'cancelled', 'prepared' or None if nothing to do


@dataclass(frozen=True)
class ProcessingStats:
    """Snapshot of settlement backlog."""
    pending_confirmation: int
    ready_to_process: int
    disputed: int
    completed: int
