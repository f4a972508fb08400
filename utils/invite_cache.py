# utils/invite_cache.py
"""
서버별로 현재 살아있는 '봇이 만든' 초대 코드를 메모리에 들고 있는 캐시입니다.
언제든 다시 만들 수 있는 투영(projection)일 뿐이며, 잔액 판단의 근거로 쓰지 않습니다.

recently_deleted 버퍼는 초대 삭제 이벤트와 멤버 참여 이벤트 사이의 경쟁을 잇기 위한
짧은 수명의 보관소입니다.
"""
import logging
import time
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .models import InviteRecord, LiveInvite, RecentDeletion
from .ui_defaults import INVITE_TIMINGS

logger = logging.getLogger(__name__)


class LiveInviteCache:
    def __init__(
        self,
        bot_user_id: Optional[int] = None,
        match_window: float = INVITE_TIMINGS["DELETED_INVITE_MATCH_WINDOW"],
        retention: float = INVITE_TIMINGS["DELETED_INVITE_MAX_AGE"],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.bot_user_id = bot_user_id
        self.match_window = match_window
        self.retention = retention
        self.clock = clock
        # { guild_id: { code: LiveInvite } }
        self._live: Dict[int, "OrderedDict[str, LiveInvite]"] = {}
        # { code: RecentDeletion }
        self._recently_deleted: "OrderedDict[str, RecentDeletion]" = OrderedDict()
        # 봇이 직접 삭제 중인 코드. 이 코드의 삭제 이벤트는 참여 매칭에 쓰지 않습니다.
        self._expected_deletions: Set[Tuple[int, str]] = set()

    def is_bot_invite(self, invite: LiveInvite) -> bool:
        if self.bot_user_id is None:
            return True
        return invite.inviter_id == self.bot_user_id

    def has_guild(self, guild_id: int) -> bool:
        return guild_id in self._live

    def codes(self, guild_id: int) -> List[str]:
        return list(self._live.get(guild_id, {}))

    def seed(self, guild_id: int, invites: Iterable[LiveInvite]) -> int:
        """서버 전체 초대 목록으로 캐시를 새로 채웁니다. 봇이 만든 초대만 남깁니다."""
        self._live[guild_id] = OrderedDict(
            (invite.code, invite) for invite in invites if self.is_bot_invite(invite)
        )
        return len(self._live[guild_id])

    # diff 후 최신 목록으로 갈아끼울 때도 같은 동작
    replace = seed

    def on_create(self, guild_id: int, invite: LiveInvite) -> bool:
        if not self.is_bot_invite(invite):
            return False
        self._live.setdefault(guild_id, OrderedDict())[invite.code] = invite
        return True

    def on_delete(self, guild_id: int, code: str, record: Optional[InviteRecord] = None) -> bool:
        """
        라이브 목록에서 제거하고, 봇 기록이 있던 초대라면 recently_deleted 버퍼에 넣습니다.
        버퍼에 들어갔으면 True.
        """
        self._live.get(guild_id, {}).pop(code, None)
        if (guild_id, code) in self._expected_deletions:
            self._expected_deletions.discard((guild_id, code))
            return False
        if record is None or code in self._recently_deleted:
            return False
        self._recently_deleted[code] = RecentDeletion(
            code=code, guild_id=guild_id, record=record, deleted_at=self.clock()
        )
        return True

    def on_missing(self, guild_id: int, code: str) -> bool:
        """
        diff로 사라진 것이 확인된 코드를 기록 조회 없이 바로 버퍼에 넣습니다.
        동시에 처리 중인 다른 참여 이벤트도 await 없이 이 코드를 볼 수 있습니다.
        """
        self._live.get(guild_id, {}).pop(code, None)
        if (guild_id, code) in self._expected_deletions or code in self._recently_deleted:
            return False
        self._recently_deleted[code] = RecentDeletion(
            code=code, guild_id=guild_id, record=None, deleted_at=self.clock()
        )
        return True

    def diff(self, guild_id: int, fresh_codes: Iterable[str]) -> List[str]:
        """캐시에는 있었지만 최신 목록에서 사라진 코드들 (캐시에 들어온 순서대로)."""
        fresh = set(fresh_codes)
        return [code for code in self._live.get(guild_id, {}) if code not in fresh]

    def take_recent_deletion(self, guild_id: int) -> Optional[RecentDeletion]:
        """매칭 윈도우 안에 삭제된 이 서버의 초대 중 가장 오래된 것을 꺼냅니다. 한 번 꺼내면 다시 나오지 않습니다."""
        now = self.clock()
        for code, entry in list(self._recently_deleted.items()):
            if entry.guild_id != guild_id:
                continue
            if now - entry.deleted_at <= self.match_window:
                return self._recently_deleted.pop(code)
        return None

    def expect_deletion(self, guild_id: int, code: str):
        self._expected_deletions.add((guild_id, code))

    def cancel_expected_deletion(self, guild_id: int, code: str):
        self._expected_deletions.discard((guild_id, code))

    def forget_code(self, guild_id: int, code: str):
        self._live.get(guild_id, {}).pop(code, None)
        entry = self._recently_deleted.get(code)
        if entry and entry.guild_id == guild_id:
            del self._recently_deleted[code]
        self._expected_deletions.discard((guild_id, code))

    def forget_guild(self, guild_id: int):
        self._live.pop(guild_id, None)
        for code, entry in list(self._recently_deleted.items()):
            if entry.guild_id == guild_id:
                del self._recently_deleted[code]
        self._expected_deletions = {item for item in self._expected_deletions if item[0] != guild_id}

    def prune(self) -> int:
        now = self.clock()
        stale = [code for code, entry in self._recently_deleted.items() if now - entry.deleted_at > self.retention]
        for code in stale:
            del self._recently_deleted[code]
        if stale:
            logger.debug(f"[InviteCache] 오래된 삭제 기록 {len(stale)}개를 정리했습니다.")
        return len(stale)

    def recently_deleted_count(self) -> int:
        return len(self._recently_deleted)
