# utils/audit.py
"""
초대 관련 감사 로그.
파일에는 '시간 [카테고리] 메시지 key=value ...' 형식으로 한 줄씩 남기고,
필요하면 서버에 설정된 로그 채널에도 메시지를 보냅니다.
"""
import os
import logging
import logging.handlers
from typing import Any, Awaitable, Callable, Optional

import discord

from .models import ServerConfig
from .ui_defaults import INVITE_LIMITS

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "invite_audit"


def build_audit_file_logger(log_dir: str, retention_days: int = INVITE_LIMITS["AUDIT_LOG_RETENTION_DAYS"]) -> logging.Logger:
    """하루 단위로 파일을 바꾸고, retention_days 일이 지난 파일은 자동으로 지웁니다."""
    os.makedirs(log_dir, exist_ok=True)
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    if not audit_logger.handlers:
        handler = logging.handlers.TimedRotatingFileHandler(
            os.path.join(log_dir, "audit.log"), when="midnight", backupCount=retention_days, encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter('%(asctime)s %(message)s', datefmt='%Y-%m-%d %H:%M:%S'))
        audit_logger.addHandler(handler)
    return audit_logger


def format_audit_line(category: str, message: str, **context: Any) -> str:
    fields = " ".join(f"{key}={value}" for key, value in context.items() if value is not None)
    return f"[{category}] {message}" + (f" {fields}" if fields else "")


class AuditLogger:
    def __init__(
        self,
        bot: Optional[discord.Client],
        config_getter: Callable[[int], Awaitable[Optional[ServerConfig]]],
        file_logger: Optional[logging.Logger] = None,
    ):
        self.bot = bot
        self.config_getter = config_getter
        self.file_logger = file_logger or logging.getLogger(AUDIT_LOGGER_NAME)

    async def log(self, category: str, message: str, *, guild_id: int, channel_message: Optional[str] = None, **context: Any):
        self.file_logger.info(format_audit_line(category, message, guild_id=guild_id, **context))
        if channel_message:
            await self.send_to_log_channel(guild_id, channel_message)

    async def send_to_log_channel(self, guild_id: int, text: str):
        if self.bot is None:
            return
        try:
            config = await self.config_getter(guild_id)
        except Exception as e:
            logger.error(f"❌ 서버(ID: {guild_id}) 설정을 불러오지 못해 로그 채널 전송을 건너뜁니다: {e}")
            return
        if not config or not config.logs_channel_id:
            logger.warning(f"[Audit] 서버(ID: {guild_id})에 로그 채널이 설정되지 않았습니다.")
            return
        channel = self.bot.get_channel(config.logs_channel_id)
        if channel is None:
            logger.warning(f"[Audit] 로그 채널(ID: {config.logs_channel_id})을 찾을 수 없습니다.")
            return
        try:
            await channel.send(text, allowed_mentions=discord.AllowedMentions.none())
        except discord.HTTPException as e:
            logger.error(f"❌ 로그 채널 메시지 전송 실패 (서버: {guild_id}): {e}", exc_info=True)
