# cogs/features/invite_manager.py
import discord
from discord import app_commands
from discord.ext import commands
import logging

from utils.database import get_user_balances, get_invite_records
from utils.errors import InviteError
from utils.helpers import (
    require_bot_channel, require_config, member_role_ids, is_admin, admin_role_id,
    format_balance_lines, format_invite_list,
)
from utils.reconciliation import ReconciliationEngine
from utils.ui_defaults import HELP_SECTIONS

logger = logging.getLogger(__name__)


class InviteManager(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        logger.info("InviteManager Cog가 성공적으로 초기화되었습니다.")

    @property
    def engine(self) -> ReconciliationEngine:
        return self.bot.invite_engine

    @app_commands.command(name="createinvite", description="Create a single-use invite link")
    @app_commands.guild_only()
    async def createinvite(self, interaction: discord.Interaction):
        await require_bot_channel(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)

        member = interaction.user
        result = await self.engine.mint_invite(
            interaction.guild_id, member.id, member_role_ids(member), interaction.channel,
            is_admin=is_admin(member), admin_role_id=admin_role_id(member),
        )
        remaining = "unlimited" if result.unlimited else result.remaining
        logger.info(f"[InviteManager] {member}({member.id})님이 초대 `{result.record.code}`를 만들었습니다.")
        await interaction.followup.send(
            f"✅ Here's your single-use invite link: {result.record.link}\nRemaining invites: {remaining}",
            ephemeral=True,
        )

    @app_commands.command(name="invites", description="Check your remaining invites and active invite links")
    @app_commands.guild_only()
    async def invites(self, interaction: discord.Interaction):
        await require_bot_channel(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)

        await self.engine.sweep_orphans(interaction.guild_id)
        member = interaction.user
        if is_admin(member):
            balance_text = "Remaining invites: unlimited"
        else:
            eligibility = await self.engine.resolver.resolve_eligibility(
                interaction.guild_id, member.id, member_role_ids(member)
            )
            if eligibility.has_unlimited:
                balance_text = "Remaining invites: unlimited"
            elif eligibility.balances:
                lines = format_balance_lines(eligibility.balances, interaction.guild)
                balance_text = f"Remaining invites: {eligibility.total_remaining}\n" + "\n".join(lines)
            else:
                balance_text = "You don't have any roles that grant invites."

        records = await get_invite_records(interaction.guild_id, member.id)
        await interaction.followup.send(
            f"{balance_text}\n\n**Your active invites:**\n{format_invite_list(records)}",
            ephemeral=True,
        )

    @app_commands.command(name="deleteinvite", description="Delete one of your active invites")
    @app_commands.describe(number="The number of the invite shown in /invites")
    @app_commands.guild_only()
    async def deleteinvite(self, interaction: discord.Interaction, number: app_commands.Range[int, 1]):
        await require_bot_channel(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)

        result = await self.engine.delete_user_invite(interaction.guild_id, interaction.user.id, number)
        balances = await get_user_balances(interaction.guild_id, interaction.user.id)
        lines = format_balance_lines(balances, interaction.guild)
        suffix = ("\nRemaining invites:\n" + "\n".join(lines)) if lines else ""
        await interaction.followup.send(f"🗑️ Invite {result.record.link} has been deleted.{suffix}", ephemeral=True)

    @app_commands.command(name="help", description="Show the invite bot commands")
    async def help(self, interaction: discord.Interaction):
        config_ready = True
        if interaction.guild_id:
            try:
                await require_config(interaction)
            except InviteError:
                config_ready = False

        parts = []
        for section, commands_ in HELP_SECTIONS.items():
            parts.append(f"**{section}**")
            parts.extend(f"`{name}` - {description}" for name, description in commands_)
            parts.append("")
        if not config_ready:
            parts.append("⚠️ This server is not set up yet. An administrator needs to run `/setup`.")
        await interaction.response.send_message("\n".join(parts).strip(), ephemeral=True)


async def setup(bot: commands.Bot):
    await bot.add_cog(InviteManager(bot))
