"""
Shared embed utilities for the padel settlement bot.

Provides the embeds the settlement and housekeeping cogs send, so match
status looks the same wherever it is shown.
"""

import discord
from typing import List, Optional

from padel_bot.data_models.settlement import (
    ConfirmationSummary, PlayerVote, ProcessingStats, SweepResult, SettlementResult
)
from padel_bot.utils.glicko import GlickoCalculator
from padel_bot.utils.time_utils import format_time_remaining, utc_now

VOTE_EMOJI = {
    'pending': '⏳',
    'approved': '✅',
    'reported': '🚩',
}

REPORT_REASON_LABELS = {
    'incorrect_score': 'Incorrect score',
    'wrong_players': 'Wrong players',
    'match_not_played': 'Match not played',
    'duplicate_match': 'Duplicate match',
    'other': 'Other',
}

STATUS_COLORS = {
    'pending': discord.Color.orange(),
    'approved': discord.Color.green(),
    'cancelled': discord.Color.red(),
}


def build_confirmation_summary_embed(summary: ConfirmationSummary) -> discord.Embed:
    """
    Build the vote overview of a match: one line per player, split by team.

    Args:
        summary: Confirmation summary from the ledger

    Returns:
        Formatted Discord embed ready for display
    """
    status = summary.status or 'not open'
    embed = discord.Embed(
        title=f"🎾 Match #{summary.match_id} Confirmation",
        color=STATUS_COLORS.get(summary.status, discord.Color.light_grey()),
        timestamp=utc_now()
    )

    embed.add_field(
        name="📊 Status",
        value=(
            f"**Status:** {status.title()}\n"
            f"**Approved:** {summary.approved_count}/4\n"
            f"**Reported:** {summary.reported_count}\n"
            f"**Ratings applied:** {'Yes' if summary.rating_applied else 'No'}"
        ),
        inline=False
    )

    for team in (1, 2):
        lines = [
            f"{VOTE_EMOJI.get(vote.action, '❔')} {vote.display_name or f'Player {vote.player_id}'}"
            + (f" ({REPORT_REASON_LABELS.get(vote.reason, vote.reason)})" if vote.reason else "")
            for vote in summary.per_player if vote.team == team
        ]
        embed.add_field(name=f"Team {team}", value="\n".join(lines) or "-", inline=True)

    if summary.status == 'pending':
        embed.set_footer(text=f"⏰ {format_time_remaining(summary.time_remaining)}")

    return embed


def build_reports_embed(match_id: int, reports: List[PlayerVote]) -> discord.Embed:
    """One field per report filed against a match."""
    embed = discord.Embed(
        title=f"🚩 Reports on Match #{match_id}",
        description=None if reports else "No player has reported this match.",
        color=discord.Color.red() if reports else discord.Color.green()
    )
    for vote in reports[:25]:
        when = vote.action_at.strftime("%Y-%m-%d %H:%M UTC") if vote.action_at else "unknown time"
        embed.add_field(
            name=f"{vote.display_name or f'Player {vote.player_id}'} (team {vote.team})",
            value=(
                f"**Reason:** {REPORT_REASON_LABELS.get(vote.reason, vote.reason or 'Other')}\n"
                f"**Details:** {(vote.details or '-')[:900]}\n"
                f"**Filed:** {when}"
            ),
            inline=False
        )
    return embed


def build_settlement_result_embed(result: SettlementResult, title: str) -> discord.Embed:
    """Embed for an apply/overturn result, listing rating movements if any."""
    embed = discord.Embed(
        title=title,
        description=result.message,
        color=discord.Color.green() if result.success else discord.Color.red()
    )
    if result.rating_changes:
        embed.add_field(
            name="Rating changes",
            value="\n".join(
                f"Player {change.player_id}: "
                f"{GlickoCalculator.format_rating_change(change.rating_before, change.rating_after)} "
                f"({GlickoCalculator.get_rating_description(change.rating_after)})"
                for change in result.rating_changes
            ),
            inline=False
        )
    return embed


def build_sweep_embed(result: SweepResult) -> discord.Embed:
    if result.skipped:
        return discord.Embed(
            title="⏸️ Settlement Sweep Skipped",
            description="Another worker is already running the sweep.",
            color=discord.Color.blue()
        )

    embed = discord.Embed(
        title="✅ Settlement Sweep Complete" if not result.errors else "⚠️ Settlement Sweep Finished With Errors",
        description=(
            f"**Processed:** {result.processed}\n"
            f"**Approved:** {result.approved}\n"
            f"**Cancelled:** {result.cancelled}\n"
            f"**Ratings calculated:** {result.prepared}"
        ),
        color=discord.Color.green() if not result.errors else discord.Color.orange(),
        timestamp=utc_now()
    )
    if result.errors:
        # Embed field values are capped at 1024 characters
        errors = "\n".join(result.errors[:10])
        embed.add_field(name=f"Errors ({len(result.errors)})", value=errors[:1024], inline=False)
    return embed


def build_stats_embed(stats: ProcessingStats, title: Optional[str] = None) -> discord.Embed:
    embed = discord.Embed(
        title=title or "📈 Settlement Statistics",
        color=discord.Color.blue(),
        timestamp=utc_now()
    )
    embed.add_field(name="⏳ Awaiting confirmation", value=str(stats.pending_confirmation), inline=True)
    embed.add_field(name="⚙️ Ready to process", value=str(stats.ready_to_process), inline=True)
    embed.add_field(name="🚩 Disputed", value=str(stats.disputed), inline=True)
    embed.add_field(name="✅ Ratings applied", value=str(stats.completed), inline=True)
    return embed
