# utils/invite_client.py
"""
디스코드 REST 호출(초대 생성/삭제/조회)을 감싸는 어댑터입니다.
모든 호출에 타임아웃을 걸고, 실패나 타임아웃은 RemoteInviteError로 바꿉니다.
"""
import asyncio
import logging
from typing import List

import discord

from .errors import RemoteInviteError
from .models import CreatedInvite, LiveInvite
from .ui_defaults import INVITE_TIMINGS

logger = logging.getLogger(__name__)


class DiscordInviteClient:
    def __init__(self, bot: discord.Client, timeout: float = INVITE_TIMINGS["REMOTE_CALL_TIMEOUT"]):
        self.bot = bot
        self.timeout = timeout

    async def _call(self, action: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"⚠️ 디스코드 초대 {action} 요청이 {self.timeout}초 안에 끝나지 않았습니다.")
            raise RemoteInviteError() from e
        except discord.Forbidden as e:
            logger.warning(f"⚠️ 디스코드 초대 {action} 권한이 없습니다: {e}")
            raise RemoteInviteError("❌ I don't have permission to manage invites here.") from e

    async def create_invite(self, channel: discord.abc.GuildChannel, *, max_uses: int, max_age: int, unique: bool = True) -> CreatedInvite:
        try:
            invite = await self._call("생성", channel.create_invite(max_uses=max_uses, max_age=max_age, unique=unique))
        except discord.HTTPException as e:
            logger.error(f"❌ 초대 생성 실패 (채널: {channel.id}): {e}")
            raise RemoteInviteError() from e
        return CreatedInvite(code=invite.code, url=invite.url)

    async def delete_invite(self, guild_id: int, code: str) -> bool:
        """삭제했으면 True, 이미 없던 초대(NotFound)면 False."""
        try:
            await self._call("삭제", self.bot.delete_invite(code))
        except discord.NotFound:
            logger.info(f"[InviteClient] 초대 `{code}`는 이미 디스코드에서 사라진 상태입니다. (서버: {guild_id})")
            return False
        except discord.HTTPException as e:
            logger.error(f"❌ 초대 `{code}` 삭제 실패 (서버: {guild_id}): {e}")
            raise RemoteInviteError() from e
        return True

    async def fetch_guild_invites(self, guild_id: int) -> List[LiveInvite]:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            raise RemoteInviteError("❌ I can't see this server right now.")
        try:
            invites = await self._call("조회", guild.invites())
        except discord.HTTPException as e:
            logger.error(f"❌ [{guild.name}] 서버 초대 목록 조회 실패: {e}")
            raise RemoteInviteError() from e
        return [
            LiveInvite(
                code=invite.code,
                uses=invite.uses or 0,
                inviter_id=invite.inviter.id if invite.inviter else None,
            )
            for invite in invites
        ]
