from dataclasses import dataclass
from typing import List, Sequence

import glicko2

from padel_bot.config import Config


@dataclass(frozen=True)
class GlickoRating:
    """A player's (rating, deviation, volatility) triple"""
    rating: float
    rd: float
    vol: float


class GlickoCalculator:
    """Handles Glicko-2 rating calculations for 2v2 padel matches"""

    @staticmethod
    def update_player(player: GlickoRating, opponents: Sequence[GlickoRating], score: float) -> GlickoRating:
        """
        Update one player's rating against a list of opponents

        Args:
            player: The player's pre-match rating
            opponents: Pre-match ratings of every opponent faced
            score: Actual score against each opponent (1.0 win, 0.0 loss)

        Returns:
            The player's post-match rating, RD capped at Config.MAX_RD
        """
        engine = glicko2.Player(rating=player.rating, rd=player.rd, vol=player.vol)
        engine.update_player(
            [o.rating for o in opponents],
            [o.rd for o in opponents],
            [score for _ in opponents]
        )
        return GlickoRating(
            rating=engine.rating,
            rd=min(engine.rd, Config.MAX_RD),
            vol=engine.vol
        )

    @staticmethod
    def calculate_match_ratings(players: Sequence[GlickoRating], winner_team: int) -> List[GlickoRating]:
        """
        Calculate new ratings for all four players of a padel match

        Each player is rated against both members of the opposing team,
        always using the opponents' pre-match values, so the result does not
        depend on the order the players are processed in.

        Args:
            players: Four ratings in slot order (1-2 team one, 3-4 team two)
            winner_team: 1 or 2

        Returns:
            Four updated ratings in the same slot order

        Raises:
            ValueError: If there are not exactly four players or no decisive winner
        """
        if len(players) != 4:
            raise ValueError("A padel match needs exactly 4 players")
        if winner_team not in (1, 2):
            raise ValueError(f"winner_team must be 1 or 2, got {winner_team!r}")

        team1 = list(players[:2])
        team2 = list(players[2:])
        team1_score = 1.0 if winner_team == 1 else 0.0
        team2_score = 1.0 - team1_score

        return [
            GlickoCalculator.update_player(team1[0], team2, team1_score),
            GlickoCalculator.update_player(team1[1], team2, team1_score),
            GlickoCalculator.update_player(team2[0], team1, team2_score),
            GlickoCalculator.update_player(team2[1], team1, team2_score),
        ]

    @staticmethod
    def format_rating_change(before: float, after: float) -> str:
        """Format a rating change for display, e.g. '1500 → 1532 (+32)'"""
        change = round(after) - round(before)
        sign = "+" if change > 0 else ""
        return f"{round(before)} → {round(after)} ({sign}{change})"

    @staticmethod
    def get_rating_description(rating: float) -> str:
        """Text description of a player's skill level"""
        if rating < 1300:
            return "Beginner"
        if rating < 1500:
            return "Intermediate"
        if rating < 1700:
            return "Advanced"
        if rating < 1900:
            return "Expert"
        if rating < 2100:
            return "Professional"
        return "Elite"
