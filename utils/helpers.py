# utils/helpers.py
"""
여러 Cog에서 공통으로 쓰는 보조 함수들입니다.
"""
import discord
import logging
from typing import List, Optional

from .database import get_server_config
from .errors import ConfigurationMissingError, InviteError, WrongChannelError
from .models import InviteRecord, ServerConfig, UserBalance
from .quota import Eligibility

logger = logging.getLogger(__name__)


async def require_config(interaction: discord.Interaction) -> ServerConfig:
    """서버 설정이 끝나지 않았으면 ConfigurationMissingError."""
    config = await get_server_config(interaction.guild_id)
    if not config or not config.setup_completed:
        raise ConfigurationMissingError()
    return config


async def require_bot_channel(interaction: discord.Interaction) -> ServerConfig:
    config = await require_config(interaction)
    if interaction.channel_id != config.bot_channel_id:
        raise WrongChannelError(config.bot_channel_id)
    return config


def member_role_ids(member: discord.Member) -> List[int]:
    return [role.id for role in member.roles if not role.is_default()]


def is_admin(member: discord.Member) -> bool:
    return member.guild_permissions.administrator


def admin_role_id(member: discord.Member) -> Optional[int]:
    """관리자 권한이 있는 역할 중 가장 높은 것. 서버 소유자처럼 역할 없이 관리자인 경우 None."""
    for role in reversed(member.roles):
        if role.permissions.administrator:
            return role.id
    return None


def format_remaining(eligibility: Eligibility) -> str:
    return "unlimited" if eligibility.has_unlimited else str(eligibility.total_remaining)


def format_balance_lines(balances: List[UserBalance], guild: Optional[discord.Guild] = None) -> List[str]:
    lines = []
    for balance in balances:
        role = guild.get_role(balance.role_id) if guild else None
        role_name = role.name if role else f"Role {balance.role_id}"
        lines.append(f"{role_name}: {balance.remaining}")
    return lines


def format_invite_list(records: List[InviteRecord], empty_text: str = "You have no active invites.") -> str:
    """기록이 남아있는 초대는 아직 쓰이지 않은 1회용 초대입니다."""
    if not records:
        return empty_text
    return "\n".join(f"{index}. {record.link} (unused, single-use)" for index, record in enumerate(records, start=1))


async def reply(interaction: discord.Interaction, content: str, ephemeral: bool = True):
    """응답 여부와 상관없이 메시지를 보냅니다."""
    if interaction.response.is_done():
        await interaction.followup.send(content, ephemeral=ephemeral)
    else:
        await interaction.response.send_message(content, ephemeral=ephemeral)


async def reply_error(interaction: discord.Interaction, error: InviteError):
    try:
        await reply(interaction, error.user_message)
    except discord.HTTPException as e:
        logger.error(f"❌ 오류 메시지 전송 실패: {e}")
