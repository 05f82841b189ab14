"""
Settlement Cog - Match Recording & Confirmation Commands

Players record a finished 2v2 match, then each of the four participants
confirms or reports the score. Ratings change only after everyone has
confirmed or the confirmation window has run out without enough reports.
"""

import discord
from discord import app_commands
from discord.ext import commands
from typing import Optional

from padel_bot.database.database import Database
from padel_bot.database.match_operations import (
    MatchOperations, MatchOperationError, parse_set_scores
)
from padel_bot.services.settlement_services import SettlementServices
from padel_bot.database.models import VoteAction
from padel_bot.utils.embeds import build_confirmation_summary_embed, REPORT_REASON_LABELS
from padel_bot.utils.settlement_exceptions import SettlementError
from padel_bot.utils.logger import setup_logger

logger = setup_logger(__name__)


class SettlementCog(commands.Cog):
    """Match recording and player confirmation commands"""

    def __init__(self, bot):
        self.bot = bot
        self.db: Database = bot.db
        self.services: SettlementServices = bot.settlement
        self.match_ops = MatchOperations(bot.db, self.services.settlement_engine)
        self.logger = logger

    async def _get_player(self, user: discord.abc.User):
        return await self.db.get_or_create_player(
            discord_id=user.id,
            username=user.name,
            display_name=getattr(user, 'display_name', None)
        )

    @app_commands.command(name="record-match", description="Record a finished 2v2 match")
    @app_commands.describe(
        partner="Your teammate",
        opponent1="First opponent",
        opponent2="Second opponent",
        score="Set scores from your team's side, e.g. 6-4 3-6 7-5"
    )
    async def record_match(self, interaction: discord.Interaction, partner: discord.Member,
                           opponent1: discord.Member, opponent2: discord.Member, score: str):
        await interaction.response.defer()

        try:
            set_scores = parse_set_scores(score)
            members = [interaction.user, partner, opponent1, opponent2]
            players = [await self._get_player(member) for member in members]

            match = await self.match_ops.create_match([p.id for p in players], created_by=players[0].id)
            match = await self.match_ops.record_match_result(match.id, set_scores)
        except MatchOperationError as e:
            await interaction.followup.send(f"❌ {e}", ephemeral=True)
            return

        summary = await self.services.confirmation_ledger.get_confirmation_summary(match.id)
        embed = build_confirmation_summary_embed(summary)
        embed.description = (
            f"Team {match.winner_team} won. All four players: use `/confirm-match {match.id}` "
            f"or `/report-match {match.id}`."
        )
        mentions = " ".join(member.mention for member in members)
        await interaction.followup.send(content=mentions, embed=embed)
        self.logger.info(f"Match {match.id} recorded by {interaction.user.id}: {score}")

    @app_commands.command(name="confirm-match", description="Confirm the recorded score of a match you played")
    @app_commands.describe(match_id="Match number")
    async def confirm_match(self, interaction: discord.Interaction, match_id: int):
        await self._vote(interaction, match_id, VoteAction.APPROVED)

    @app_commands.command(name="report-match", description="Report an incorrect score for a match you played")
    @app_commands.describe(
        match_id="Match number",
        reason="What is wrong with the recorded match",
        details="Anything the other players or an admin should know"
    )
    @app_commands.choices(reason=[
        app_commands.Choice(name=label, value=value) for value, label in REPORT_REASON_LABELS.items()
    ])
    async def report_match(self, interaction: discord.Interaction, match_id: int,
                           reason: app_commands.Choice[str], details: Optional[str] = None):
        await self._vote(interaction, match_id, VoteAction.REPORTED, reason.value, details)

    async def _vote(self, interaction: discord.Interaction, match_id: int, action: VoteAction,
                    reason: Optional[str] = None, details: Optional[str] = None):
        await interaction.response.defer(ephemeral=True)

        player = await self.db.get_player_by_discord_id(interaction.user.id)
        if not player:
            await interaction.followup.send("❌ You have not played any recorded match yet.", ephemeral=True)
            return

        try:
            result = await self.services.confirmation_ledger.record_vote(
                match_id, player.id, action, reason=reason, details=details,
                discord_user_id=interaction.user.id
            )
        except SettlementError as e:
            self.logger.error(f"Vote on Match {match_id} by {interaction.user.id} failed: {e}")
            await interaction.followup.send(e.user_message, ephemeral=True)
            return

        await interaction.followup.send(result.message, ephemeral=True)

        if result.success and result.new_status != 'pending':
            summary = await self.services.confirmation_ledger.get_confirmation_summary(match_id)
            if summary and interaction.channel:
                await interaction.channel.send(embed=build_confirmation_summary_embed(summary))

    @app_commands.command(name="match-status", description="Show the confirmation status of a match")
    @app_commands.describe(match_id="Match number")
    async def match_status(self, interaction: discord.Interaction, match_id: int):
        try:
            summary = await self.services.confirmation_ledger.get_confirmation_summary(match_id)
        except SettlementError as e:
            await interaction.response.send_message(e.user_message, ephemeral=True)
            return

        if not summary:
            await interaction.response.send_message("❌ That match doesn't exist.", ephemeral=True)
            return

        content = None
        player = await self.db.get_player_by_discord_id(interaction.user.id)
        if player and player.id in [vote.player_id for vote in summary.per_player]:
            allowed, reason = await self.services.confirmation_ledger.can_vote(match_id, player.id)
            if allowed:
                content = f"🗳️ You have not voted yet: `/confirm-match {match_id}` or `/report-match {match_id}`."
            else:
                content = reason

        await interaction.response.send_message(
            content=content, embed=build_confirmation_summary_embed(summary), ephemeral=True
        )


async def setup(bot):
    await bot.add_cog(SettlementCog(bot))
