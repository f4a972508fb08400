import asyncio
import itertools
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from utils.errors import RemoteInviteError, StoreError
from utils.invite_cache import LiveInviteCache
from utils.models import (
    Finite, CreatedInvite, InviteRecord, JoinAttribution, LiveInvite, RoleQuota, UserBalance,
)
from utils.quota import QuotaResolver
from utils.reconciliation import ReconciliationEngine

GUILD_ID = 1000
BOT_ID = 999
OTHER_ID = 555


class FakeDatabase:
    """utils.database와 같은 이름의 함수를 가진 메모리 저장소. 모든 호출은 한 번 양보한 뒤 실행됩니다."""

    def __init__(self, record_age=timedelta(minutes=10)):
        self.record_age = record_age
        self.quotas = {}
        self.balances = {}
        self.records = OrderedDict()
        self.attributions = []
        self.configs = {}
        self.fail = set()
        # { 함수 이름: 남은 실패 횟수 }
        self.fail_times = {}
        self.calls = []
        self._ids = itertools.count(1)

    async def _tick(self, name):
        self.calls.append(name)
        await asyncio.sleep(0)
        if name in self.fail:
            raise StoreError()
        if self.fail_times.get(name):
            self.fail_times[name] -= 1
            raise StoreError()

    # --- 설정 ---
    async def get_server_config(self, guild_id):
        await self._tick("get_server_config")
        return self.configs.get(guild_id)

    # --- 역할 한도 ---
    async def get_role_quotas(self, guild_id, role_ids=None):
        await self._tick("get_role_quotas")
        wanted = None if role_ids is None else set(role_ids)
        return [q for (g, r), q in self.quotas.items() if g == guild_id and (wanted is None or r in wanted)]

    async def upsert_role_quota(self, guild_id, role_id, name, max_invites):
        await self._tick("upsert_role_quota")
        self.quotas[(guild_id, role_id)] = RoleQuota(guild_id, role_id, name, max_invites)
        return self.quotas[(guild_id, role_id)]

    async def delete_role_quota(self, guild_id, role_id):
        await self._tick("delete_role_quota")
        return self.quotas.pop((guild_id, role_id), None) is not None

    # --- 잔액 ---
    async def get_user_balances(self, guild_id, user_id):
        await self._tick("get_user_balances")
        rows = [b for b in self.balances.values() if b.guild_id == guild_id and b.user_id == user_id]
        return sorted(rows, key=lambda b: (b.created_at, b.id))

    def _find_balance(self, guild_id, user_id, role_id):
        for balance in self.balances.values():
            if (balance.guild_id, balance.user_id, balance.role_id) == (guild_id, user_id, role_id):
                return balance
        return None

    async def insert_user_balance(self, guild_id, user_id, role_id, balance):
        await self._tick("insert_user_balance")
        if self._find_balance(guild_id, user_id, role_id):
            return False
        new_id = next(self._ids)
        self.balances[new_id] = UserBalance(new_id, guild_id, user_id, role_id, balance)
        return True

    async def set_user_balance(self, guild_id, user_id, role_id, balance):
        await self._tick("set_user_balance")
        if existing := self._find_balance(guild_id, user_id, role_id):
            self.balances[existing.id] = replace(existing, remaining=balance)
        else:
            new_id = next(self._ids)
            self.balances[new_id] = UserBalance(new_id, guild_id, user_id, role_id, balance)

    async def adjust_user_balance(self, balance_id, delta):
        await self._tick("adjust_user_balance")
        current = self.balances.get(balance_id)
        if current is None or current.is_unlimited or current.remaining.count + delta < 0:
            return None
        updated = replace(current, remaining=Finite(current.remaining.count + delta))
        self.balances[balance_id] = updated
        return updated

    async def delete_user_balances(self, guild_id, user_id, role_ids=None):
        await self._tick("delete_user_balances")
        wanted = None if role_ids is None else set(role_ids)
        doomed = [
            b.id for b in self.balances.values()
            if b.guild_id == guild_id and b.user_id == user_id and (wanted is None or b.role_id in wanted)
        ]
        for balance_id in doomed:
            del self.balances[balance_id]
        return len(doomed)

    # --- 초대 기록 ---
    async def count_invite_records(self, guild_id):
        await self._tick("count_invite_records")
        return sum(1 for (g, _) in self.records if g == guild_id)

    async def create_invite_record(self, guild_id, user_id, code, link, max_uses, role_id):
        await self._tick("create_invite_record")
        record = InviteRecord(
            next(self._ids), guild_id, user_id, code, link, max_uses, role_id,
            created_at=datetime.now(timezone.utc) - self.record_age,
        )
        self.records[(guild_id, code)] = record
        return record

    async def get_invite_record(self, guild_id, code):
        await self._tick("get_invite_record")
        return self.records.get((guild_id, code))

    async def get_invite_records(self, guild_id, user_id=None):
        await self._tick("get_invite_records")
        return [
            r for (g, _), r in self.records.items()
            if g == guild_id and (user_id is None or r.user_id == user_id)
        ]

    async def delete_invite_record(self, guild_id, code):
        await self._tick("delete_invite_record")
        return self.records.pop((guild_id, code), None) is not None

    # --- 참여 기록 ---
    async def add_join_attribution(self, guild_id, invite_id, inviter_id, joined_user_id):
        await self._tick("add_join_attribution")
        attribution = JoinAttribution(next(self._ids), guild_id, invite_id, inviter_id, joined_user_id)
        self.attributions.append(attribution)
        return attribution

    async def count_joins_for_inviter(self, guild_id, user_id):
        await self._tick("count_joins_for_inviter")
        return sum(1 for a in self.attributions if a.guild_id == guild_id and a.inviter_id == user_id)

    async def wipe_guild_data(self, guild_id, keep_codes=()):
        await self._tick("wipe_guild_data")
        keep = set(keep_codes)
        self.quotas = {k: v for k, v in self.quotas.items() if k[0] != guild_id}
        self.balances = {k: v for k, v in self.balances.items() if v.guild_id != guild_id}
        self.records = OrderedDict((k, v) for k, v in self.records.items() if k[0] != guild_id or k[1] in keep)
        self.attributions = [a for a in self.attributions if a.guild_id != guild_id]
        self.configs.pop(guild_id, None)

    # --- 테스트용 헬퍼 ---
    def seed_balance(self, user_id, role_id, balance, guild_id=GUILD_ID):
        new_id = next(self._ids)
        self.balances[new_id] = UserBalance(
            new_id, guild_id, user_id, role_id, balance,
            created_at=datetime.now(timezone.utc) + timedelta(microseconds=new_id),
        )
        return self.balances[new_id]

    def seed_quota(self, role_id, max_invites, name="role", guild_id=GUILD_ID):
        self.quotas[(guild_id, role_id)] = RoleQuota(guild_id, role_id, name, max_invites)
        return self.quotas[(guild_id, role_id)]

    def total_finite(self, user_id, guild_id=GUILD_ID):
        return sum(
            b.remaining.count for b in self.balances.values()
            if b.guild_id == guild_id and b.user_id == user_id and not b.is_unlimited
        )


class FakeChannel:
    def __init__(self, guild_id=GUILD_ID, channel_id=42):
        self.guild_id = guild_id
        self.id = channel_id


class FakeGateway:
    """디스코드 초대 REST를 흉내 냅니다. 1회용 초대 소비는 consume()으로 표현합니다."""

    def __init__(self, bot_user_id=BOT_ID):
        self.bot_user_id = bot_user_id
        self.live = {}
        self.fail_create = False
        self.fail_fetch = False
        self.fail_delete = set()
        self.deleted = []
        self.create_calls = []
        self._codes = itertools.count(1)

    def _guild(self, guild_id):
        return self.live.setdefault(guild_id, OrderedDict())

    async def create_invite(self, channel, *, max_uses, max_age, unique=True):
        self.create_calls.append({"max_uses": max_uses, "max_age": max_age, "unique": unique})
        await asyncio.sleep(0)
        if self.fail_create:
            raise RemoteInviteError()
        code = f"code{next(self._codes)}"
        self._guild(channel.guild_id)[code] = LiveInvite(code=code, uses=0, inviter_id=self.bot_user_id)
        return CreatedInvite(code=code, url=f"https://discord.gg/{code}")

    async def delete_invite(self, guild_id, code):
        await asyncio.sleep(0)
        if code in self.fail_delete:
            raise RemoteInviteError()
        existed = self._guild(guild_id).pop(code, None) is not None
        if existed:
            self.deleted.append(code)
        return existed

    async def fetch_guild_invites(self, guild_id):
        await asyncio.sleep(0)
        if self.fail_fetch:
            raise RemoteInviteError()
        return list(self._guild(guild_id).values())

    def consume(self, code, guild_id=GUILD_ID):
        self._guild(guild_id).pop(code)

    def add_foreign(self, code, guild_id=GUILD_ID, inviter_id=OTHER_ID):
        self._guild(guild_id)[code] = LiveInvite(code=code, uses=0, inviter_id=inviter_id)


class RecordingAudit:
    def __init__(self):
        self.entries = []

    async def log(self, category, message, *, guild_id, channel_message=None, **context):
        self.entries.append({
            "category": category, "message": message, "guild_id": guild_id,
            "channel_message": channel_message, **context,
        })

    def categories(self):
        return [entry["category"] for entry in self.entries]


class ManualClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class Harness:
    def __init__(self, **engine_kwargs):
        self.db = FakeDatabase()
        self.gateway = FakeGateway()
        self.audit = RecordingAudit()
        self.clock = ManualClock()
        self.cache = LiveInviteCache(bot_user_id=BOT_ID, clock=self.clock)
        self.resolver = QuotaResolver(self.db)
        self.engine = ReconciliationEngine(
            self.db, self.cache, self.gateway, self.audit, resolver=self.resolver, **engine_kwargs
        )
        self.channel = FakeChannel()

    def mint(self, user_id, role_ids=(), **kwargs):
        return asyncio.run(self.engine.mint_invite(GUILD_ID, user_id, list(role_ids), self.channel, **kwargs))


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache(clock):
    return LiveInviteCache(bot_user_id=BOT_ID, clock=clock)


