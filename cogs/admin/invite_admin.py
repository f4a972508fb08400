# cogs/admin/invite_admin.py
import discord
from discord import ui, app_commands
from discord.ext import commands
import logging
from typing import Optional

from utils.database import (
    get_role_quotas, get_user_balances, get_invite_records, count_joins_for_inviter, get_server_config,
)
from utils.errors import RemoteInviteError
from utils.helpers import require_config, is_admin, format_remaining, format_invite_list
from utils.models import UNLIMITED_RAW, balance_from_raw
from utils.quota import evaluate
from utils.reconciliation import ReconciliationEngine
from utils.ui_defaults import INVITE_TIMINGS

logger = logging.getLogger(__name__)


class ResetConfirmView(ui.View):
    def __init__(self, author_id: int):
        super().__init__(timeout=INVITE_TIMINGS["RESET_CONFIRM_TIMEOUT"])
        self.author_id = author_id
        self.confirmed: Optional[bool] = None
        self.message: Optional[discord.WebhookMessage] = None

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != self.author_id:
            await interaction.response.send_message("❌ Only the administrator who ran `/reset` can answer this.", ephemeral=True)
            return False
        return True

    def _disable_all(self):
        for item in self.children:
            item.disabled = True

    @ui.button(label="Confirm Reset", style=discord.ButtonStyle.danger, emoji="⚠️")
    async def confirm(self, interaction: discord.Interaction, button: ui.Button):
        self.confirmed = True
        self._disable_all()
        await interaction.response.edit_message(content="⏳ Resetting all invite data...", view=self)
        self.stop()

    @ui.button(label="Cancel", style=discord.ButtonStyle.secondary)
    async def cancel(self, interaction: discord.Interaction, button: ui.Button):
        self.confirmed = False
        self._disable_all()
        await interaction.response.edit_message(content="Reset cancelled.", view=self)
        self.stop()

    async def on_timeout(self) -> None:
        self.confirmed = False
        if self.message:
            self._disable_all()
            try:
                await self.message.edit(content="Reset cancelled - confirmation timed out.", view=self)
            except (discord.NotFound, discord.HTTPException):
                pass


class InviteAdmin(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        logger.info("InviteAdmin Cog가 성공적으로 초기화되었습니다.")

    @property
    def engine(self) -> ReconciliationEngine:
        return self.bot.invite_engine

    @app_commands.command(name="setrole", description="Set the maximum number of invites for a role")
    @app_commands.describe(role="The role to configure", maxinvites="Maximum number of invites (-1 for unlimited)")
    @app_commands.default_permissions(administrator=True)
    @app_commands.guild_only()
    async def setrole(self, interaction: discord.Interaction, role: discord.Role, maxinvites: app_commands.Range[int, UNLIMITED_RAW]):
        await require_config(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)

        max_invites = balance_from_raw(maxinvites)
        holder_ids = [member.id for member in role.members if not member.bot]
        _, updated = await self.engine.resolver.apply_role_quota(
            interaction.guild_id, role.id, role.name, max_invites, holder_ids
        )
        await self.bot.audit.log(
            "role_quota", "Role quota set",
            guild_id=interaction.guild_id, role_id=role.id, max_invites=max_invites, updated_members=updated,
            channel_message=f"⚙️ **Role Invite Limit Updated**\nRole: {role.mention}\nMax invites: {max_invites}\nUpdated by: {interaction.user.mention}",
        )
        await interaction.followup.send(
            f"✅ Set maximum invites for role {role.name} to {max_invites}. ({updated} members updated)", ephemeral=True
        )

    @app_commands.command(name="unsetrole", description="Remove the invite limit configuration from a role")
    @app_commands.describe(role="The role to remove")
    @app_commands.default_permissions(administrator=True)
    @app_commands.guild_only()
    async def unsetrole(self, interaction: discord.Interaction, role: discord.Role):
        await require_config(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)

        if not await self.engine.resolver.remove_role_quota(interaction.guild_id, role.id):
            quotas = await get_role_quotas(interaction.guild_id)
            configured = "\n".join(f"- {quota.name}: {quota.max_invites}" for quota in quotas) or "None"
            await interaction.followup.send(
                f"❌ Role {role.name} is not configured for invites.\n\n**Configured roles:**\n{configured}", ephemeral=True
            )
            return

        await self.bot.audit.log(
            "role_quota", "Role quota removed",
            guild_id=interaction.guild_id, role_id=role.id,
            channel_message=f"⚙️ **Role Invite Limit Removed**\nRole: {role.mention}\nRemoved by: {interaction.user.mention}",
        )
        await interaction.followup.send(
            f"✅ Role {role.name} no longer grants invites. Existing balances were kept.", ephemeral=True
        )

    @app_commands.command(name="addinvites", description="Give invites to a user")
    @app_commands.describe(user="The user to give invites to", amount="Number of invites to add")
    @app_commands.default_permissions(administrator=True)
    @app_commands.guild_only()
    async def addinvites(self, interaction: discord.Interaction, user: discord.Member, amount: app_commands.Range[int, 1]):
        await require_config(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)

        before = evaluate(await get_user_balances(interaction.guild_id, user.id))
        if before.has_unlimited:
            await interaction.followup.send(f"ℹ️ {user.display_name} already has unlimited invites.", ephemeral=True)
            return
        after = await self.engine.resolver.add_invites(interaction.guild_id, user.id, amount)
        await self.bot.audit.log(
            "balance", "Admin added invites",
            guild_id=interaction.guild_id, user_id=user.id, delta=f"+{amount}", admin_id=interaction.user.id,
        )
        await interaction.followup.send(
            f"✅ Added {amount} invites to {user.display_name}. They now have {format_remaining(after)} invites remaining.",
            ephemeral=True,
        )

    @app_commands.command(name="removeinvites", description="Take invites away from a user")
    @app_commands.describe(user="The user to remove invites from", amount="Number of invites to remove")
    @app_commands.default_permissions(administrator=True)
    @app_commands.guild_only()
    async def removeinvites(self, interaction: discord.Interaction, user: discord.Member, amount: app_commands.Range[int, 1]):
        await require_config(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)

        after = await self.engine.resolver.remove_invites(interaction.guild_id, user.id, amount)
        await self.bot.audit.log(
            "balance", "Admin removed invites",
            guild_id=interaction.guild_id, user_id=user.id, delta=f"-{amount}", admin_id=interaction.user.id,
        )
        await interaction.followup.send(
            f"✅ Removed {amount} invites from {user.display_name}. They now have {format_remaining(after)} invites remaining.",
            ephemeral=True,
        )

    @app_commands.command(name="checkinvites", description="Check a user's invite balance and active invites")
    @app_commands.describe(user="The user to check")
    @app_commands.default_permissions(administrator=True)
    @app_commands.guild_only()
    async def checkinvites(self, interaction: discord.Interaction, user: discord.Member):
        await require_config(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)

        await self.engine.sweep_orphans(interaction.guild_id)
        name = user.display_name
        lines = [f"**Invite Balance for {name}:**"]
        if is_admin(user):
            lines.append(f"{name} has unlimited invites (Administrator)")
        else:
            current = evaluate(await get_user_balances(interaction.guild_id, user.id))
            lines.append(f"{name} has {format_remaining(current)} invites remaining")

        joins = await count_joins_for_inviter(interaction.guild_id, user.id)
        lines.append(f"Members invited: {joins}")

        records = await get_invite_records(interaction.guild_id, user.id)
        lines.append("\n**Active Invites:**")
        lines.append(format_invite_list(records, empty_text=f"{name} has no active invites."))
        await interaction.followup.send("\n".join(lines), ephemeral=True)

    @app_commands.command(name="reset", description="Delete all bot invites and invite data for this server")
    @app_commands.default_permissions(administrator=True)
    @app_commands.guild_only()
    async def reset(self, interaction: discord.Interaction):
        await require_config(interaction)
        view = ResetConfirmView(interaction.user.id)
        await interaction.response.send_message(
            "⚠️ **This will delete every invite created by the bot and all invite data for this server.**\n"
            f"This cannot be undone. Confirm within {INVITE_TIMINGS['RESET_CONFIRM_TIMEOUT']} seconds.",
            view=view, ephemeral=True,
        )
        view.message = await interaction.original_response()
        await view.wait()
        if not view.confirmed:
            return

        config = await get_server_config(interaction.guild_id)
        try:
            result = await self.engine.reset_guild(interaction.guild_id)
        except RemoteInviteError as e:
            await interaction.followup.send(e.user_message, ephemeral=True)
            return

        logger.warning(f"🧹 {interaction.user}({interaction.user.id})님이 서버(ID: {interaction.guild_id})의 초대 데이터를 초기화했습니다.")
        summary = f"✅ Reset complete. Deleted {result.deleted_invites} bot invites and all invite data."
        if result.failed_codes:
            summary += f"\n⚠️ {len(result.failed_codes)} invites could not be deleted from Discord and were kept."
        await interaction.followup.send(summary, ephemeral=True)

        if config and (channel := self.bot.get_channel(config.logs_channel_id)):
            try:
                await channel.send(f"🧹 **Server Reset**\nAll invite data was reset by {interaction.user.mention}.")
            except discord.HTTPException as e:
                logger.error(f"❌ 초기화 알림 전송 실패: {e}")


async def setup(bot: commands.Bot):
    await bot.add_cog(InviteAdmin(bot))
