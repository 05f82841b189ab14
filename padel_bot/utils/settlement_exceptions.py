"""
Custom exceptions for match confirmation and rating settlement.

Every exception carries a log message and a user-facing message, so the
command layer can show a specific reason without leaking internals.
"""

class SettlementError(Exception):
    """Base exception for settlement errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message


# ============================================================================
# Vote precondition violations (rejected before any mutation)
# ============================================================================

class VoteRejectedError(SettlementError):
    """Raised when a vote fails a precondition. Never retried."""
    code = "rejected"


class MatchNotFoundError(VoteRejectedError):
    code = "match_not_found"

    def __init__(self, match_id: int):
        super().__init__(
            f"Match {match_id} not found",
            "❌ That match doesn't exist."
        )


class MatchNotFinalError(VoteRejectedError):
    code = "match_not_final"

    def __init__(self, match_id: int, status: str):
        super().__init__(
            f"Match {match_id} scores are not final (status: {status})",
            "❌ This match has no final score to confirm yet."
        )


class NotParticipantError(VoteRejectedError):
    code = "not_participant"

    def __init__(self, match_id: int, player_id: int):
        super().__init__(
            f"Player {player_id} is not a participant in Match {match_id}",
            "❌ Only the four players of this match can confirm or report it."
        )


class VotingClosedError(VoteRejectedError):
    code = "voting_closed"

    def __init__(self, match_id: int, status: str):
        super().__init__(
            f"Match {match_id} is not open for confirmation (confirmation_status: {status})",
            f"❌ Voting for this match is closed (match is {status})."
        )


class VotingWindowExpiredError(VoteRejectedError):
    code = "window_expired"

    def __init__(self, match_id: int):
        super().__init__(
            f"Confirmation window for Match {match_id} has expired",
            "⏰ The confirmation window for this match has expired."
        )


class AlreadyVotedError(VoteRejectedError):
    code = "already_voted"

    def __init__(self, match_id: int, player_id: int, action: str):
        super().__init__(
            f"Player {player_id} already voted on Match {match_id} ({action})",
            f"❌ You already voted on this match ({action})."
        )


class InvalidVoteError(VoteRejectedError):
    code = "invalid_vote"

    def __init__(self, action: str):
        super().__init__(
            f"Invalid vote action: {action}",
            "❌ A vote must be either approve or report."
        )


class InvalidReportReasonError(VoteRejectedError):
    code = "invalid_report_reason"

    def __init__(self, reason: str):
        super().__init__(
            f"Invalid report reason: {reason}",
            "❌ Pick a report reason: incorrect score, wrong players, match not played, duplicate match or other."
        )


# ============================================================================
# Settlement failures
# ============================================================================

class SettlementStateError(SettlementError):
    """Raised when an operation is not allowed in the match's current state."""
    def __init__(self, match_id: int, reason: str):
        super().__init__(
            f"Match {match_id}: {reason}",
            f"❌ {reason}"
        )


class SettlementIntegrityError(SettlementError):
    """Raised on data that should be impossible: duplicate rows, unknown enum values, illegal transitions."""
    def __init__(self, match_id, details: str):
        subject = f"Match {match_id}" if isinstance(match_id, int) else match_id
        super().__init__(
            f"Data integrity error on {subject}: {details}",
            "❌ This match has inconsistent settlement data. An admin has been notified."
        )


class TransientStoreError(SettlementError):
    """Raised when a store operation keeps failing after all retry attempts."""
    def __init__(self, operation: str, attempts: int, details: str = None):
        super().__init__(
            f"{operation} failed after {attempts} attempts: {details}",
            "❌ The database is busy. Please try again in a moment."
        )
