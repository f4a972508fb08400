# main.py (초대 관리 봇)

import discord
from discord import app_commands
import os
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional
from discord.ext import commands, tasks
from dotenv import load_dotenv

load_dotenv()

from utils import database
from utils.audit import AuditLogger, build_audit_file_logger
from utils.errors import InviteError
from utils.helpers import reply, reply_error
from utils.invite_cache import LiveInviteCache
from utils.invite_client import DiscordInviteClient
from utils.quota import QuotaResolver
from utils.reconciliation import ReconciliationEngine
from utils.ui_defaults import INVITE_TIMINGS, INVITE_LIMITS

# --- 중앙 로깅 설정 ---
log_formatter = logging.Formatter('%(asctime)s - %(levelname)s - [%(name)s] %(message)s', datefmt='%Y-%m-%d %H:%M:%S')
log_handler = logging.StreamHandler()
log_handler.setFormatter(log_formatter)

root_logger = logging.getLogger()
root_logger.setLevel(logging.INFO)
if root_logger.hasHandlers():
    root_logger.handlers.clear()
root_logger.addHandler(log_handler)

logging.getLogger('discord').setLevel(logging.WARNING)
logging.getLogger('discord.http').setLevel(logging.WARNING)
logging.getLogger('websockets').setLevel(logging.WARNING)
logging.getLogger('supabase').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

# --- 환경 변수 및 인텐트 설정 ---
BOT_TOKEN = os.environ.get('BOT_TOKEN')
AUDIT_LOG_DIR = os.environ.get('AUDIT_LOG_DIR', 'logs')
RAW_TEST_GUILD_ID = os.environ.get('TEST_GUILD_ID')
TEST_GUILD_ID: Optional[int] = None
if RAW_TEST_GUILD_ID:
    try:
        TEST_GUILD_ID = int(RAW_TEST_GUILD_ID)
        logger.info(f"테스트 서버 ID가 '{TEST_GUILD_ID}'(으)로 설정되었습니다.")
    except ValueError:
        logger.error(f"❌ TEST_GUILD_ID 환경 변수가 유효한 숫자가 아닙니다: '{RAW_TEST_GUILD_ID}'")

intents = discord.Intents.default()
intents.members = True
intents.invites = True
BOT_VERSION = "v1.0-invite-economy"


# --- 커스텀 봇 클래스 ---
class InviteBot(commands.Bot):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.invite_cache: Optional[LiveInviteCache] = None
        self.invite_engine: Optional[ReconciliationEngine] = None
        self.audit: Optional[AuditLogger] = None

    async def setup_hook(self):
        # 1. DB에서 서버 설정을 읽어 캐시를 채웁니다.
        try:
            await database.load_server_configs_from_db()
        except InviteError:
            logger.critical("❌ 서버 설정을 불러오지 못했습니다. 설정이 필요한 명령어는 DB가 복구될 때까지 실패합니다.")

        # 2. 초대 시스템 구성 요소를 만듭니다.
        self.invite_cache = LiveInviteCache()
        self.audit = AuditLogger(
            self,
            database.get_server_config,
            build_audit_file_logger(AUDIT_LOG_DIR, INVITE_LIMITS["AUDIT_LOG_RETENTION_DAYS"]),
        )
        self.invite_engine = ReconciliationEngine(
            db=database,
            cache=self.invite_cache,
            gateway=DiscordInviteClient(self),
            audit=self.audit,
            resolver=QuotaResolver(database),
        )

        # 3. 모든 기능(Cogs) 로드
        await self.load_all_extensions()

        # 4. 명령어 오류 처리
        self.tree.on_error = self.on_app_command_error

    async def on_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        original = getattr(error, 'original', error)
        if isinstance(original, InviteError):
            logger.info(f"[Command] '{interaction.command.qualified_name if interaction.command else '?'}' 요청 거절: {type(original).__name__}")
            await reply_error(interaction, original)
            return
        if isinstance(error, app_commands.MissingPermissions):
            await reply(interaction, f"❌ You need these permissions to use this command: `{', '.join(error.missing_permissions)}`")
            return
        if isinstance(error, app_commands.CheckFailure):
            await reply(interaction, "❌ You can't use this command here.")
            return

        logger.error(f"'{interaction.command.qualified_name if interaction.command else '?'}' 명령어 처리 중 오류 발생: {original}", exc_info=original)
        try:
            await reply(interaction, "❌ An unexpected error occurred while processing the command.")
        except discord.HTTPException:
            pass

    @tasks.loop(minutes=INVITE_TIMINGS["CONFIG_REFRESH_MINUTES"])
    async def refresh_cache_periodically(self):
        logger.info("🔄 주기적인 서버 설정 캐시 새로고침을 시작합니다...")
        try:
            await database.load_server_configs_from_db()
        except InviteError:
            logger.error("❌ 서버 설정 캐시 새로고침에 실패했습니다. 기존 캐시를 유지합니다.")
            return
        logger.info("🔄 주기적인 서버 설정 캐시 새로고침이 완료되었습니다.")

    async def load_all_extensions(self):
        logger.info("------ [ Cog 로드 시작 ] ------")
        cogs_dir = 'cogs'
        loaded_count, failed_count = 0, 0
        for root, dirs, files in os.walk(cogs_dir):
            if '__pycache__' in dirs:
                dirs.remove('__pycache__')

            for filename in files:
                if filename.endswith('.py') and not filename.startswith('__'):
                    extension_path = os.path.join(root, filename).replace(os.path.sep, '.')[:-3]
                    try:
                        await self.load_extension(extension_path)
                        logger.info(f" M> Cog 로드 성공: {extension_path}")
                        loaded_count += 1
                    except Exception as e:
                        logger.error(f" M> Cog 로드 실패: {extension_path} | {e}", exc_info=True)
                        failed_count += 1
        logger.info(f"------ [ Cog 로드 완료 | 성공: {loaded_count} / 실패: {failed_count} ] ------")


bot = InviteBot(command_prefix="/", intents=intents)


@bot.event
async def on_ready():
    logger.info("==================================================")
    logger.info(f"✅ {bot.user.name} ({bot.user.id})")
    logger.info(f"✅ 봇 버전: {BOT_VERSION}")
    logger.info(f"✅ 현재 UTC 시간: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"✅ 참여 중인 서버: {len(bot.guilds)}개")
    logger.info("==================================================")

    # 주기적 캐시 새로고침 루프를 시작합니다.
    if not bot.refresh_cache_periodically.is_running():
        bot.refresh_cache_periodically.start()
        logger.info("✅ 주기적인 서버 설정 캐시 새로고침 루프를 시작합니다.")

    # 슬래시 명령어를 동기화합니다.
    try:
        if TEST_GUILD_ID:
            guild = discord.Object(id=TEST_GUILD_ID)
            bot.tree.copy_global_to(guild=guild)
            await bot.tree.sync(guild=guild)
            logger.info(f"✅ 테스트 서버({TEST_GUILD_ID})에 슬래시 명령어를 동기화했습니다.")
        else:
            synced = await bot.tree.sync()
            logger.info(f"✅ {len(synced)}개의 슬래시 명령어를 전체 서버에 동기화했습니다.")
    except Exception as e:
        logger.error(f"❌ 명령어 동기화 중 오류가 발생했습니다: {e}", exc_info=True)


async def main():
    async with bot:
        await bot.start(BOT_TOKEN)

if __name__ == "__main__":
    if BOT_TOKEN is None:
        logger.critical("❌ BOT_TOKEN 환경 변수가 설정되지 않았습니다. 프로그램을 종료합니다.")
    else:
        try:
            asyncio.run(main())
        except discord.errors.LoginFailure:
            logger.critical("❌ 봇 토큰이 유효하지 않습니다. 토큰을 다시 확인해주세요.")
        except Exception as e:
            logger.critical(f"🚨 봇 실행 중 치명적인 오류 발생: {e}", exc_info=True)
