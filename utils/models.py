# utils/models.py
"""
DB 행과 초대 시스템 내부에서 주고받는 데이터 모델입니다.
잔여 초대 수는 Finite / Unlimited 두 가지로만 표현하며, -1 값은 DB 경계에서만 사용합니다.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

UNLIMITED_RAW = -1


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 1. 잔여 초대 수 (Finite | Unlimited)
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
@dataclass(frozen=True)
class Finite:
    count: int

    def __post_init__(self):
        if self.count < 0:
            raise ValueError(f"Finite balance cannot be negative: {self.count}")

    @property
    def is_unlimited(self) -> bool:
        return False

    def __str__(self) -> str:
        return str(self.count)


@dataclass(frozen=True)
class Unlimited:
    @property
    def is_unlimited(self) -> bool:
        return True

    def __str__(self) -> str:
        return "unlimited"


UNLIMITED = Unlimited()
Balance = Union[Finite, Unlimited]


def balance_from_raw(raw: Optional[int]) -> Balance:
    if raw is None:
        return Finite(0)
    raw = int(raw)
    if raw == UNLIMITED_RAW:
        return UNLIMITED
    if raw < UNLIMITED_RAW:
        raise ValueError(f"Invalid stored balance: {raw}")
    return Finite(raw)


def balance_to_raw(balance: Balance) -> int:
    return UNLIMITED_RAW if balance.is_unlimited else balance.count


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not value:
        return datetime.now(timezone.utc)
    text = str(value)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return datetime.fromisoformat(text)


def _opt_int(value: Any) -> Optional[int]:
    return int(value) if value not in (None, '', '0', 0) else None


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 2. 테이블 행 모델
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
@dataclass
class RoleQuota:
    guild_id: int
    role_id: int
    name: str
    max_invites: Balance

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RoleQuota":
        return cls(
            guild_id=int(row['guild_id']),
            role_id=int(row['role_id']),
            name=row.get('name') or "",
            max_invites=balance_from_raw(row.get('max_invites')),
        )


@dataclass
class UserBalance:
    id: int
    guild_id: int
    user_id: int
    role_id: int
    remaining: Balance
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_unlimited(self) -> bool:
        return self.remaining.is_unlimited

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserBalance":
        return cls(
            id=int(row['id']),
            guild_id=int(row['guild_id']),
            user_id=int(row['user_id']),
            role_id=int(row['role_id']),
            remaining=balance_from_raw(row.get('invites_remaining')),
            created_at=_parse_ts(row.get('created_at')),
        )


@dataclass
class InviteRecord:
    id: int
    guild_id: int
    user_id: int
    code: str
    link: str
    max_uses: int
    role_id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "InviteRecord":
        return cls(
            id=int(row['id']),
            guild_id=int(row['guild_id']),
            user_id=int(row['user_id']),
            code=row['invite_code'],
            link=row.get('link') or f"https://discord.gg/{row['invite_code']}",
            max_uses=int(row.get('max_uses') or 1),
            role_id=_opt_int(row.get('role_id')),
            created_at=_parse_ts(row.get('created_at')),
        )


@dataclass
class JoinAttribution:
    id: int
    guild_id: int
    invite_id: int
    inviter_id: int
    joined_user_id: int
    joined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JoinAttribution":
        return cls(
            id=int(row['id']),
            guild_id=int(row['guild_id']),
            invite_id=int(row['invite_id']),
            inviter_id=int(row['inviter_id']),
            joined_user_id=int(row['joined_user_id']),
            joined_at=_parse_ts(row.get('joined_at')),
        )


@dataclass
class ServerConfig:
    guild_id: int
    logs_channel_id: int
    bot_channel_id: int
    system_channel_id: Optional[int] = None
    default_role_id: Optional[int] = None
    setup_completed: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ServerConfig":
        return cls(
            guild_id=int(row['guild_id']),
            logs_channel_id=int(row['logs_channel_id']),
            bot_channel_id=int(row['bot_channel_id']),
            system_channel_id=_opt_int(row.get('system_channel_id')),
            default_role_id=_opt_int(row.get('default_role_id')),
            setup_completed=bool(row.get('setup_completed', True)),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "guild_id": self.guild_id,
            "logs_channel_id": self.logs_channel_id,
            "bot_channel_id": self.bot_channel_id,
            "system_channel_id": self.system_channel_id,
            "default_role_id": self.default_role_id,
            "setup_completed": self.setup_completed,
        }


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 3. 디스코드 쪽 초대 정보 (캐시/게이트웨이용)
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
@dataclass(frozen=True)
class LiveInvite:
    code: str
    uses: int = 0
    inviter_id: Optional[int] = None


@dataclass(frozen=True)
class CreatedInvite:
    code: str
    url: str


@dataclass
class RecentDeletion:
    code: str
    guild_id: int
    record: Optional[InviteRecord]
    deleted_at: float
