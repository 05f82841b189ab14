from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean,
    ForeignKey, Float, BigInteger, Enum as SQLEnum, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from enum import Enum
from typing import List, Optional

from padel_bot.config import Config

Base = declarative_base()

class MatchStatus(Enum):
    """Status of a match from creation to completion"""
    PENDING = "pending"      # Match created, not played yet
    ACTIVE = "active"        # Match in progress
    COMPLETED = "completed"  # Scores recorded and final
    CANCELLED = "cancelled"  # Match called off

class ConfirmationStatus(Enum):
    """Match-level outcome of the confirmation vote"""
    PENDING = "pending"      # Voting window open
    APPROVED = "approved"    # Quorum reached or window expired without dispute
    CANCELLED = "cancelled"  # Disputed by enough reports

class VoteAction(Enum):
    """A participant's vote on the recorded score"""
    PENDING = "pending"
    APPROVED = "approved"
    REPORTED = "reported"

class ReportReason(Enum):
    """Why a participant reported the recorded score"""
    INCORRECT_SCORE = "incorrect_score"
    WRONG_PLAYERS = "wrong_players"
    MATCH_NOT_PLAYED = "match_not_played"
    DUPLICATE_MATCH = "duplicate_match"
    OTHER = "other"

class Player(Base):
    __tablename__ = 'players'

    id = Column(Integer, primary_key=True)
    discord_id = Column(BigInteger, unique=True, nullable=True)
    username = Column(String(100), nullable=False)
    display_name = Column(String(100))

    # Glicko-2 rating fields, written only by settlement
    glicko_rating = Column(Float, default=Config.STARTING_RATING, nullable=False)
    glicko_rd = Column(Float, default=Config.STARTING_RD, nullable=False)
    glicko_vol = Column(Float, default=Config.STARTING_VOL, nullable=False)

    matches_played = Column(Integer, default=0)

    # Metadata
    created_at = Column(DateTime, default=func.now())

    @property
    def name(self) -> str:
        return self.display_name or self.username

    def __repr__(self):
        return f"<Player(id={self.id}, username='{self.username}', rating={self.glicko_rating:.1f})>"

class Match(Base):
    """
    A 2v2 padel match.

    Slots 1-2 form team one, slots 3-4 team two. The confirmation fields are
    filled in by settlement once the score is final.
    """
    __tablename__ = 'matches'

    id = Column(Integer, primary_key=True)

    # Participants
    player1_id = Column(Integer, ForeignKey('players.id'), nullable=False)
    player2_id = Column(Integer, ForeignKey('players.id'), nullable=False)
    player3_id = Column(Integer, ForeignKey('players.id'), nullable=False)
    player4_id = Column(Integer, ForeignKey('players.id'), nullable=False)

    # Set scores (third set optional)
    team1_score_set1 = Column(Integer, nullable=True)
    team2_score_set1 = Column(Integer, nullable=True)
    team1_score_set2 = Column(Integer, nullable=True)
    team2_score_set2 = Column(Integer, nullable=True)
    team1_score_set3 = Column(Integer, nullable=True)
    team2_score_set3 = Column(Integer, nullable=True)
    winner_team = Column(Integer, nullable=True)

    status = Column(SQLEnum(MatchStatus), default=MatchStatus.PENDING, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    # Confirmation / settlement
    confirmation_status = Column(SQLEnum(ConfirmationStatus), nullable=True, index=True)
    confirmation_deadline = Column(DateTime, nullable=True, index=True)
    approved_count = Column(Integer, default=0, nullable=False)
    reported_count = Column(Integer, default=0, nullable=False)
    rating_applied = Column(Boolean, default=False, nullable=False)
    approved_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)

    # Metadata
    created_by = Column(Integer, ForeignKey('players.id'), nullable=True)
    created_at = Column(DateTime, default=func.now())

    # Relationships
    player1 = relationship("Player", foreign_keys=[player1_id])
    player2 = relationship("Player", foreign_keys=[player2_id])
    player3 = relationship("Player", foreign_keys=[player3_id])
    player4 = relationship("Player", foreign_keys=[player4_id])
    confirmations = relationship("MatchConfirmation", back_populates="match", cascade="all, delete-orphan")
    rating_changes = relationship("RatingChangeRecord", back_populates="match", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint('winner_team IS NULL OR winner_team IN (1, 2)', name='check_winner_team'),
        CheckConstraint('approved_count >= 0 AND approved_count <= 4', name='check_approved_count'),
        CheckConstraint('reported_count >= 0 AND reported_count <= 4', name='check_reported_count'),
    )

    @property
    def player_ids(self) -> List[int]:
        """Participant IDs in slot order"""
        return [self.player1_id, self.player2_id, self.player3_id, self.player4_id]

    @property
    def set_scores(self) -> List[tuple]:
        """(team1, team2) games per played set"""
        sets = [
            (self.team1_score_set1, self.team2_score_set1),
            (self.team1_score_set2, self.team2_score_set2),
            (self.team1_score_set3, self.team2_score_set3),
        ]
        return [s for s in sets if s[0] is not None and s[1] is not None]

    @property
    def has_final_score(self) -> bool:
        """Both first sets recorded and a decisive winner set"""
        return (
            self.team1_score_set1 is not None and self.team2_score_set1 is not None
            and self.team1_score_set2 is not None and self.team2_score_set2 is not None
            and self.winner_team in (1, 2)
        )

    def team_of(self, player_id: int) -> Optional[int]:
        if player_id in (self.player1_id, self.player2_id):
            return 1
        if player_id in (self.player3_id, self.player4_id):
            return 2
        return None

    def __repr__(self):
        confirmation = self.confirmation_status.value if self.confirmation_status else None
        return (f"<Match(id={self.id}, status={self.status.value}, confirmation={confirmation}, "
                f"rating_applied={self.rating_applied})>")

class MatchConfirmation(Base):
    """
    One participant's vote on a match's recorded score.

    Created as PENDING for all four players when settlement is prepared;
    moves once to APPROVED or REPORTED.
    """
    __tablename__ = 'match_confirmations'

    id = Column(Integer, primary_key=True)

    match_id = Column(Integer, ForeignKey('matches.id'), nullable=False, index=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)

    action = Column(SQLEnum(VoteAction), default=VoteAction.PENDING, nullable=False)
    action_at = Column(DateTime, nullable=True)
    # Only set on reports
    report_reason = Column(SQLEnum(ReportReason), nullable=True)
    details = Column(String(500), nullable=True)

    # Discord tracking (audit trail)
    discord_user_id = Column(BigInteger)

    # Metadata
    created_at = Column(DateTime, default=func.now())

    # Relationships
    match = relationship("Match", back_populates="confirmations")
    player = relationship("Player")

    __table_args__ = (
        UniqueConstraint('match_id', 'player_id', name='unique_confirmation_per_player_match'),
        CheckConstraint("action = 'REPORTED' OR report_reason IS NULL", name='check_reason_only_on_report'),
    )

    def __repr__(self):
        return f"<MatchConfirmation(match_id={self.match_id}, player_id={self.player_id}, action={self.action.value})>"

class RatingChangeRecord(Base):
    """
    Deferred Glicko-2 delta for one player in one match.

    Computed once when the score becomes final. Only applied_at, is_reverted
    and reverted_at change afterwards.
    """
    __tablename__ = 'match_rating_changes'

    id = Column(Integer, primary_key=True)

    match_id = Column(Integer, ForeignKey('matches.id'), nullable=False, index=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)

    rating_before = Column(Float, nullable=False)
    rd_before = Column(Float, nullable=False)
    vol_before = Column(Float, nullable=False)
    rating_after = Column(Float, nullable=False)
    rd_after = Column(Float, nullable=False)
    vol_after = Column(Float, nullable=False)

    applied_at = Column(DateTime, nullable=True)
    is_reverted = Column(Boolean, default=False, nullable=False)
    reverted_at = Column(DateTime, nullable=True)

    # Metadata
    created_at = Column(DateTime, default=func.now())

    # Relationships
    match = relationship("Match", back_populates="rating_changes")
    player = relationship("Player")

    __table_args__ = (
        UniqueConstraint('match_id', 'player_id', name='unique_rating_change_per_player_match'),
    )

    @property
    def rating_change(self) -> float:
        return self.rating_after - self.rating_before

    def __repr__(self):
        return (f"<RatingChangeRecord(match_id={self.match_id}, player_id={self.player_id}, "
                f"{self.rating_before:.1f}->{self.rating_after:.1f}, applied={self.applied_at is not None}, "
                f"reverted={self.is_reverted})>")

class ProcessingLockRecord(Base):
    """Named advisory lock row. A row exists while the lock is held."""
    __tablename__ = 'processing_locks'

    name = Column(String(100), primary_key=True)
    holder = Column(String(200), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<ProcessingLockRecord(name='{self.name}', holder='{self.holder}', expires_at={self.expires_at})>"
