"""
Housekeeping Cog - Settlement Sweep & Admin Commands

Runs the expiry sweep on a fixed interval and gives the bot owner manual
control over running the sweep, overturning a settled match and reading
the reports and backlog.
"""

import discord
from discord import app_commands
from discord.ext import commands, tasks
from typing import Optional

from padel_bot.config import Config
from padel_bot.services.settlement_services import SettlementServices
from padel_bot.utils.embeds import (
    build_sweep_embed, build_stats_embed, build_settlement_result_embed, build_reports_embed
)
from padel_bot.utils.settlement_exceptions import SettlementError
from padel_bot.utils.logger import setup_logger

logger = setup_logger(__name__)


class HousekeepingCog(commands.Cog):
    """Background settlement sweep and owner-only settlement tools"""

    def __init__(self, bot):
        self.bot = bot
        self.services: SettlementServices = bot.settlement
        self.logger = logger

    @commands.Cog.listener()
    async def on_ready(self):
        """Start the sweep once the bot is connected"""
        if not self.settle_expired_matches.is_running():
            self.settle_expired_matches.start()
            self.logger.info("HousekeepingCog: Settlement sweep started")

    def cog_unload(self):
        """Stop background tasks when cog is unloaded"""
        self.settle_expired_matches.cancel()
        self.logger.info("HousekeepingCog: Settlement sweep stopped")

    @tasks.loop(minutes=Config.SWEEP_INTERVAL_MINUTES)
    async def settle_expired_matches(self):
        """Apply or cancel every match whose confirmation window has closed"""
        try:
            result = await self.services.expiry_processor.sweep()
            if result.errors:
                self.logger.warning(f"Settlement sweep finished with {len(result.errors)} errors: {result.errors}")
        except Exception as e:
            self.logger.error(f"Error in settlement sweep task: {e}", exc_info=True)

    @settle_expired_matches.before_loop
    async def before_settlement_task(self):
        """Wait for bot to be ready before starting the sweep"""
        await self.bot.wait_until_ready()

    async def _deny_non_owner(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != Config.OWNER_DISCORD_ID:
            await interaction.response.send_message(
                "❌ **Access Denied**\nThis command is restricted to the bot owner.",
                ephemeral=True
            )
            return True
        return False

    @app_commands.command(
        name="admin-run-settlement",
        description="Run the settlement sweep now (Owner only)"
    )
    async def admin_run_settlement(self, interaction: discord.Interaction):
        if await self._deny_non_owner(interaction):
            return

        await interaction.response.defer(ephemeral=True)
        result = await self.services.expiry_processor.sweep()
        await interaction.followup.send(embed=build_sweep_embed(result))

        self.logger.info(
            f"Admin settlement sweep executed by {interaction.user.id} ({interaction.user.name}): "
            f"{result.to_dict()}"
        )

    @app_commands.command(
        name="admin-overturn-match",
        description="Cancel a match and restore pre-match ratings (Owner only)"
    )
    @app_commands.describe(match_id="Match number", reason="Why the result is being overturned")
    async def admin_overturn_match(self, interaction: discord.Interaction, match_id: int,
                                   reason: Optional[str] = None):
        if await self._deny_non_owner(interaction):
            return

        await interaction.response.defer(ephemeral=True)
        try:
            result = await self.services.dispute_handler.overturn(
                match_id, reason=reason or f"Overturned by {interaction.user.name}"
            )
        except SettlementError as e:
            self.logger.error(f"Admin overturn of Match {match_id} failed: {e}")
            await interaction.followup.send(e.user_message)
            return

        await interaction.followup.send(
            embed=build_settlement_result_embed(result, f"Overturn Match #{match_id}")
        )
        self.logger.warning(
            f"Admin overturn of Match {match_id} by {interaction.user.id} ({interaction.user.name}): {result.message}"
        )

    @app_commands.command(
        name="admin-match-reports",
        description="List the reports filed against a match (Owner only)"
    )
    @app_commands.describe(match_id="Match number")
    async def admin_match_reports(self, interaction: discord.Interaction, match_id: int):
        if await self._deny_non_owner(interaction):
            return

        try:
            reports = await self.services.confirmation_ledger.get_match_reports(match_id)
        except SettlementError as e:
            await interaction.response.send_message(e.user_message, ephemeral=True)
            return
        await interaction.response.send_message(embed=build_reports_embed(match_id, reports), ephemeral=True)

    @app_commands.command(
        name="admin-settlement-stats",
        description="Show the settlement backlog (Owner only)"
    )
    async def admin_settlement_stats(self, interaction: discord.Interaction):
        if await self._deny_non_owner(interaction):
            return

        stats = await self.services.expiry_processor.get_processing_stats()
        await interaction.response.send_message(embed=build_stats_embed(stats), ephemeral=True)


async def setup(bot):
    await bot.add_cog(HousekeepingCog(bot))
