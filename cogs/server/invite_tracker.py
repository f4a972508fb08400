# cogs/server/invite_tracker.py
import discord
from discord.ext import commands, tasks
import logging

from utils.database import get_server_config
from utils.errors import InviteError
from utils.models import LiveInvite
from utils.reconciliation import ReconciliationEngine
from utils.ui_defaults import INVITE_TIMINGS

logger = logging.getLogger(__name__)


class InviteTracker(commands.Cog):
    """게이트웨이 이벤트를 ReconciliationEngine으로 넘기는 리스너 모음."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        logger.info("InviteTracker Cog가 성공적으로 초기화되었습니다.")

    @property
    def engine(self) -> ReconciliationEngine:
        return self.bot.invite_engine

    async def cog_load(self):
        self.prune_deleted_invites.start()
        self.bot.loop.create_task(self.build_cache())

    async def cog_unload(self):
        self.prune_deleted_invites.cancel()

    async def build_cache(self):
        await self.bot.wait_until_ready()
        self.engine.cache.bot_user_id = self.bot.user.id
        logger.info("[InviteTracker] 서버 초대 정보 캐싱을 시작합니다...")
        for guild in self.bot.guilds:
            await self._seed(guild)
        logger.info("[InviteTracker] 초대 정보 캐싱이 완료되었습니다.")

    async def _seed(self, guild: discord.Guild):
        try:
            await self.engine.seed_guild(guild.id)
        except InviteError as e:
            logger.warning(f"[{guild.name}] 서버의 초대 링크를 캐시할 수 없습니다: {e}")

    @tasks.loop(minutes=INVITE_TIMINGS["DELETED_INVITE_CLEANUP_MINUTES"])
    async def prune_deleted_invites(self):
        self.engine.cache.prune()

    @commands.Cog.listener()
    async def on_guild_join(self, guild: discord.Guild):
        await self._seed(guild)

    @commands.Cog.listener()
    async def on_guild_remove(self, guild: discord.Guild):
        self.engine.cache.forget_guild(guild.id)

    @commands.Cog.listener()
    async def on_invite_create(self, invite: discord.Invite):
        if invite.guild is None:
            return
        await self.engine.handle_invite_create(
            invite.guild.id,
            LiveInvite(code=invite.code, uses=invite.uses or 0, inviter_id=invite.inviter.id if invite.inviter else None),
        )

    @commands.Cog.listener()
    async def on_invite_delete(self, invite: discord.Invite):
        if invite.guild is None:
            return
        try:
            await self.engine.handle_invite_delete(invite.guild.id, invite.code)
        except InviteError as e:
            logger.error(f"❌ 초대 `{invite.code}` 삭제 이벤트 처리 실패: {e}")

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member):
        if member.bot:
            return
        try:
            match = await self.engine.attribute_join(member.guild.id, member.id)
        except InviteError as e:
            logger.error(f"❌ [{member.guild.name}] 멤버 {member}({member.id})의 초대 추적 실패: {e}", exc_info=True)
            return
        if match is None:
            return

        config = await get_server_config(member.guild.id)
        if not config or not config.default_role_id:
            return
        role = member.guild.get_role(config.default_role_id)
        if role is None:
            logger.warning(f"[{member.guild.name}] 기본 역할(ID: {config.default_role_id})을 찾을 수 없습니다.")
            return
        try:
            await member.add_roles(role, reason=f"Joined via invite {match.record.code}")
        except discord.HTTPException as e:
            logger.error(f"❌ [{member.guild.name}] {member}에게 기본 역할 부여 실패: {e}")

    @commands.Cog.listener()
    async def on_member_update(self, before: discord.Member, after: discord.Member):
        before_ids = {role.id for role in before.roles}
        after_ids = {role.id for role in after.roles}
        if before_ids == after_ids:
            return
        try:
            created, removed = await self.engine.resolver.sync_member_roles(
                after.guild.id, after.id, after_ids - before_ids, before_ids - after_ids
            )
        except InviteError as e:
            logger.error(f"❌ [{after.guild.name}] {after}의 역할 변경에 따른 잔액 동기화 실패: {e}")
            return
        if created or removed:
            logger.info(f"[InviteTracker] {after}({after.id}) 역할 변경: 잔액 {created}개 생성, {removed}개 삭제")


async def setup(bot: commands.Bot):
    await bot.add_cog(InviteTracker(bot))
