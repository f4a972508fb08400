import asyncio
import logging
import logging.handlers

from utils.audit import AuditLogger, build_audit_file_logger, format_audit_line
from utils.models import ServerConfig

from conftest import GUILD_ID

LOGS_CHANNEL = 77


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.lines = []

    def emit(self, record):
        self.lines.append(record.getMessage())


class FakeTextChannel:
    def __init__(self):
        self.sent = []

    async def send(self, text, allowed_mentions=None):
        self.sent.append(text)


class FakeBot:
    def __init__(self, channel):
        self.channel = channel

    def get_channel(self, channel_id):
        return self.channel if channel_id == LOGS_CHANNEL else None


def make_file_logger(name):
    file_logger = logging.getLogger(name)
    file_logger.propagate = False
    handler = ListHandler()
    file_logger.handlers = [handler]
    file_logger.setLevel(logging.INFO)
    return file_logger, handler


def test_format_audit_line_skips_empty_context():
    line = format_audit_line("join", "Member joined", guild_id=1, user_id=2, role_id=None)
    assert line == "[join] Member joined guild_id=1 user_id=2"


def test_log_writes_line_and_posts_channel_message():
    channel = FakeTextChannel()
    file_logger, handler = make_file_logger("test_audit.posts")

    async def config_getter(guild_id):
        return ServerConfig(guild_id=guild_id, logs_channel_id=LOGS_CHANNEL, bot_channel_id=1)

    audit = AuditLogger(FakeBot(channel), config_getter, file_logger)
    asyncio.run(audit.log("invite_create", "Invite created", guild_id=GUILD_ID, invite_code="abc", channel_message="hello"))

    assert handler.lines == [f"[invite_create] Invite created guild_id={GUILD_ID} invite_code=abc"]
    assert channel.sent == ["hello"]


def test_log_without_config_only_writes_file():
    channel = FakeTextChannel()
    file_logger, handler = make_file_logger("test_audit.no_config")

    async def config_getter(guild_id):
        return None

    audit = AuditLogger(FakeBot(channel), config_getter, file_logger)
    asyncio.run(audit.log("join", "Member joined", guild_id=GUILD_ID, channel_message="hello"))

    assert len(handler.lines) == 1
    assert channel.sent == []


def test_audit_file_logger_rotates_daily_with_retention(tmp_path):
    audit_logger = build_audit_file_logger(str(tmp_path), retention_days=30)
    try:
        handler = audit_logger.handlers[0]
        assert isinstance(handler, logging.handlers.TimedRotatingFileHandler)
        assert handler.backupCount == 30
        assert audit_logger.propagate is False

        audit_logger.info(format_audit_line("reset", "Guild data reset", guild_id=GUILD_ID))
        handler.flush()
        assert "[reset] Guild data reset" in (tmp_path / "audit.log").read_text(encoding="utf-8")
    finally:
        for handler in list(audit_logger.handlers):
            handler.close()
            audit_logger.removeHandler(handler)
