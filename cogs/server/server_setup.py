# cogs/server/server_setup.py

import discord
from discord.ext import commands
from discord import app_commands
import dataclasses
import logging

from utils.database import get_server_config, save_server_config, get_role_quotas
from utils.helpers import require_config, require_bot_channel
from utils.models import ServerConfig
from utils.quota import quota_rank

logger = logging.getLogger(__name__)

CHANGE_HINT = (
    "`/changedefaults logschannel` - Change logs channel\n"
    "`/changedefaults botchannel` - Change bot commands channel\n"
    "`/changedefaults defaultrole` - Change default invite role"
)


class ServerSetup(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        logger.info("ServerSetup Cog가 성공적으로 초기화되었습니다.")

    # --- 명령어 그룹 정의 ---
    changedefaults_group = app_commands.Group(
        name="changedefaults",
        description="Change default server settings",
        default_permissions=discord.Permissions(administrator=True),
        guild_only=True,
    )

    @app_commands.command(name="setup", description="Initial setup for the invite manager bot")
    @app_commands.describe(
        logs="Channel where this bot's logs are sent",
        botchannel="Channel where this bot's commands can be used",
        defaultrole="Role to give to users who join via invite (optional)",
    )
    @app_commands.default_permissions(administrator=True)
    @app_commands.guild_only()
    async def setup_command(self, interaction: discord.Interaction, logs: discord.TextChannel, botchannel: discord.TextChannel, defaultrole: discord.Role = None):
        await interaction.response.defer(ephemeral=True, thinking=True)
        guild = interaction.guild

        if await get_server_config(guild.id):
            await interaction.followup.send(
                f"❌ This server is already set up!\n\nTo modify existing settings, please use:\n{CHANGE_HINT}", ephemeral=True
            )
            return

        system_channel = guild.system_channel
        if system_channel is None:
            await interaction.followup.send(
                "❌ System Messages Channel is not set up! Please:\n"
                "1. Go to Server Settings\n2. Click on \"Overview\"\n"
                "3. Set a \"System Messages Channel\"\n4. Enable \"Show Join Messages\"",
                ephemeral=True,
            )
            return
        if not guild.system_channel_flags.join_notifications:
            await interaction.followup.send(
                "❌ Join Messages are disabled! Please:\n"
                "1. Go to Server Settings\n2. Click on \"Overview\"\n"
                "3. Under \"System Messages Channel\", enable \"Show Join Messages\"",
                ephemeral=True,
            )
            return

        config = await save_server_config(ServerConfig(
            guild_id=guild.id,
            logs_channel_id=logs.id,
            bot_channel_id=botchannel.id,
            system_channel_id=system_channel.id,
            default_role_id=defaultrole.id if defaultrole else None,
        ))
        logger.info(f"🔧 [{guild.name}] 서버 설정 완료: 로그 채널 {config.logs_channel_id}, 봇 채널 {config.bot_channel_id}")

        lines = [
            "🔧 **Bot Setup Complete**", "",
            f"📝 Logs Channel: {logs.mention}",
            f"🤖 Bot Commands Channel: {botchannel.mention}",
            f"📢 System Messages Channel: {system_channel.mention}",
        ]
        if defaultrole:
            lines.append(f"🎭 Default Invite Role: {defaultrole.mention}")
        lines.append("\nUse `/help` anywhere in the server to see all available commands.")
        await interaction.followup.send("\n".join(lines), ephemeral=True)

        try:
            await logs.send("✅ Bot logging has been configured for this channel.")
        except discord.HTTPException as e:
            logger.warning(f"⚠️ [{guild.name}] 로그 채널 테스트 메시지 전송 실패: {e}")

    async def _update_config(self, interaction: discord.Interaction, success_message: str, **changes):
        config = await require_config(interaction)
        await interaction.response.defer(ephemeral=True)
        await save_server_config(dataclasses.replace(config, **changes))
        await self.bot.audit.log(
            "config", "Server settings updated",
            guild_id=interaction.guild_id, admin_id=interaction.user.id, **changes,
            channel_message=f"⚙️ **Bot Settings Updated**\nAdmin: {interaction.user}\nChange: {success_message}",
        )
        await interaction.followup.send(success_message, ephemeral=True)

    @changedefaults_group.command(name="logschannel", description="Change where this bot's logs are sent")
    @app_commands.describe(channel="The new logs channel")
    async def change_logs_channel(self, interaction: discord.Interaction, channel: discord.TextChannel):
        await self._update_config(interaction, f"✅ Logs channel updated to {channel.mention}", logs_channel_id=channel.id)

    @changedefaults_group.command(name="botchannel", description="Change the channel where this bot's commands can be used")
    @app_commands.describe(channel="The new bot commands channel")
    async def change_bot_channel(self, interaction: discord.Interaction, channel: discord.TextChannel):
        await self._update_config(interaction, f"✅ Bot commands channel updated to {channel.mention}", bot_channel_id=channel.id)

    @changedefaults_group.command(name="defaultrole", description="Change the default invite role")
    @app_commands.describe(role="The new default invite role")
    async def change_default_role(self, interaction: discord.Interaction, role: discord.Role):
        await self._update_config(interaction, f"✅ Default invite role updated to {role.mention}", default_role_id=role.id)

    @app_commands.command(name="currentconfig", description="Show the current server configuration")
    @app_commands.default_permissions(administrator=True)
    @app_commands.guild_only()
    async def currentconfig(self, interaction: discord.Interaction):
        config = await require_bot_channel(interaction)
        await interaction.response.defer(ephemeral=True)
        guild = interaction.guild

        logs_channel = guild.get_channel(config.logs_channel_id)
        bot_channel = guild.get_channel(config.bot_channel_id)
        default_role = guild.get_role(config.default_role_id) if config.default_role_id else None
        lines = [
            "**Current Server Configuration:**", "",
            f"📝 Logs Channel: {logs_channel.mention if logs_channel else 'Channel not found!'}",
            f"🤖 Bot Commands Channel: {bot_channel.mention if bot_channel else 'Channel not found!'}",
            f"👥 Default Invite Role: {default_role.mention if default_role else 'None set'}",
            "", "**Current Role Configurations:**",
        ]

        quotas = sorted(await get_role_quotas(guild.id), key=quota_rank, reverse=True)
        shown = [
            f"{role.mention}: {'Unlimited' if quota.max_invites.is_unlimited else quota.max_invites} invites"
            for quota in quotas if (role := guild.get_role(quota.role_id))
        ]
        lines.extend(shown or ["No roles configured with invite limits yet."])
        lines.append(f"\n*To modify server settings, use:*\n{CHANGE_HINT}\n`/setrole` - Modify role invite limits")
        await interaction.followup.send("\n".join(lines), ephemeral=True)


async def setup(bot: commands.Bot):
    await bot.add_cog(ServerSetup(bot))
