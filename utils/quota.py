# utils/quota.py
"""
유저가 가진 역할과 잔여 초대 기록을 보고
초대를 만들 수 있는지, 어떤 잔액에서 차감/환불할지를 결정합니다.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from .errors import ConcurrencyGuardRejection, InsufficientInvitesError, NoInvitePermissionError
from .models import UNLIMITED, Balance, RoleQuota, UserBalance

logger = logging.getLogger(__name__)

# 거절 사유
REASON_NO_PERMISSION = "no_permission"
REASON_REVOKED = "revoked"
REASON_EXHAUSTED = "exhausted"


@dataclass
class Eligibility:
    eligible: bool
    has_unlimited: bool
    chargeable: Optional[UserBalance]
    total_remaining: int
    balances: List[UserBalance] = field(default_factory=list)
    quotas: List[RoleQuota] = field(default_factory=list)
    is_admin: bool = False
    reason: Optional[str] = None


def quota_rank(quota: RoleQuota) -> float:
    return float("inf") if quota.max_invites.is_unlimited else quota.max_invites.count


def chargeable_candidates(balances: Iterable[UserBalance]) -> List[UserBalance]:
    """차감 가능한 유한 잔액을 남은 수가 적은 순서로. 같으면 원래 순서를 유지합니다."""
    positive = [b for b in balances if not b.is_unlimited and b.remaining.count > 0]
    return sorted(positive, key=lambda b: b.remaining.count)


def pick_chargeable(balances: Iterable[UserBalance]) -> Optional[UserBalance]:
    """남은 수가 1 이상인 유한 잔액 중 가장 적은 것. 같으면 먼저 나온 것."""
    candidates = chargeable_candidates(balances)
    return candidates[0] if candidates else None


def pick_credit_target(balances: Iterable[UserBalance]) -> Optional[UserBalance]:
    """남은 수가 0 이상인 유한 잔액 중 가장 적은 것 (관리자 지급용)."""
    chosen = None
    for balance in balances:
        if balance.is_unlimited:
            continue
        if chosen is None or balance.remaining.count < chosen.remaining.count:
            chosen = balance
    return chosen


def pick_refund_target(balances: Iterable[UserBalance], preferred_role_id: Optional[int] = None) -> Optional[UserBalance]:
    balances = list(balances)
    if any(balance.is_unlimited for balance in balances):
        return None
    if preferred_role_id is not None:
        for balance in balances:
            if balance.role_id == preferred_role_id:
                return balance
    return pick_credit_target(balances)


def evaluate(balances: List[UserBalance], quotas: Optional[List[RoleQuota]] = None, is_admin: bool = False) -> Eligibility:
    quotas = quotas or []
    has_unlimited = is_admin or any(b.is_unlimited for b in balances) or any(q.max_invites.is_unlimited for q in quotas)
    if has_unlimited:
        return Eligibility(
            eligible=True, has_unlimited=True, chargeable=None, total_remaining=0,
            balances=balances, quotas=quotas, is_admin=is_admin,
        )
    total = sum(max(b.remaining.count, 0) for b in balances)
    return Eligibility(
        eligible=total > 0,
        has_unlimited=False,
        chargeable=pick_chargeable(balances),
        total_remaining=total,
        balances=balances,
        quotas=quotas,
        reason=None if total > 0 else REASON_EXHAUSTED,
    )


class QuotaResolver:
    def __init__(self, db):
        self.db = db

    async def resolve_eligibility(self, guild_id: int, user_id: int, role_ids: Iterable[int], *, is_admin: bool = False) -> Eligibility:
        """
        관리자는 기록 없이도 무제한으로 판정합니다.
        설정된 역할이 하나도 없는데 예전 잔액 기록이 남아 있으면 권한이 회수된 것으로 보고 기록을 지웁니다.
        잔액 기록이 아직 하나도 없으면 가진 역할 중 한도가 가장 큰 역할로 처음 한 번 채워둡니다.
        """
        balances = await self.db.get_user_balances(guild_id, user_id)
        if is_admin:
            return evaluate(balances, is_admin=True)

        quotas = await self.db.get_role_quotas(guild_id, list(role_ids))
        if not quotas:
            if balances:
                purged = await self.db.delete_user_balances(guild_id, user_id)
                logger.info(f"[Quota] 유저(ID: {user_id})가 초대 역할을 잃어 잔액 기록 {purged}개를 정리했습니다. (서버: {guild_id})")
                return Eligibility(False, False, None, 0, reason=REASON_REVOKED)
            return Eligibility(False, False, None, 0, reason=REASON_NO_PERMISSION)

        if not balances:
            balances = await self.initialize(guild_id, user_id, quotas)
        return evaluate(balances, quotas)

    async def initialize(self, guild_id: int, user_id: int, quotas: List[RoleQuota]) -> List[UserBalance]:
        highest = max(quotas, key=quota_rank)
        created = await self.db.insert_user_balance(guild_id, user_id, highest.role_id, highest.max_invites)
        if created:
            logger.info(f"[Quota] 유저(ID: {user_id})의 잔액을 '{highest.name}' 역할 기준 {highest.max_invites}개로 초기화했습니다. (서버: {guild_id})")
        return await self.db.get_user_balances(guild_id, user_id)

    async def ensure_admin_balance(self, guild_id: int, user_id: int, admin_role_id: Optional[int]):
        if admin_role_id is None:
            return
        await self.db.insert_user_balance(guild_id, user_id, admin_role_id, UNLIMITED)

    async def apply_charge(self, balance: UserBalance, delta: int) -> UserBalance:
        """무제한 잔액은 건드리지 않습니다. 결과가 0 미만이 되면 DB가 거절하고 ConcurrencyGuardRejection이 납니다."""
        if balance.is_unlimited:
            return balance
        updated = await self.db.adjust_user_balance(balance.id, delta)
        if updated is None:
            raise ConcurrencyGuardRejection()
        return updated

    async def refund(self, guild_id: int, user_id: int, preferred_role_id: Optional[int] = None) -> Optional[UserBalance]:
        balances = await self.db.get_user_balances(guild_id, user_id)
        target = pick_refund_target(balances, preferred_role_id)
        if target is None:
            return None
        return await self.apply_charge(target, +1)

    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    # 관리자 조작
    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    async def add_invites(self, guild_id: int, user_id: int, amount: int) -> Eligibility:
        balances = await self.db.get_user_balances(guild_id, user_id)
        if not balances:
            raise NoInvitePermissionError("❌ That user doesn't have any roles that grant invites.")
        current = evaluate(balances)
        if current.has_unlimited:
            return current
        target = pick_credit_target(balances)
        await self.apply_charge(target, amount)
        return evaluate(await self.db.get_user_balances(guild_id, user_id))

    async def remove_invites(self, guild_id: int, user_id: int, amount: int) -> Eligibility:
        balances = await self.db.get_user_balances(guild_id, user_id)
        if not balances:
            raise NoInvitePermissionError("❌ That user doesn't have any invites to remove.")
        if evaluate(balances).has_unlimited:
            raise InsufficientInvitesError("❌ That user has unlimited invites. Change their role limit with `/setrole` instead.")
        target = max(balances, key=lambda b: b.remaining.count)
        if target.remaining.count < amount:
            raise InsufficientInvitesError(
                f"❌ That user only has {target.remaining.count} invites remaining. Cannot remove {amount}."
            )
        try:
            await self.apply_charge(target, -amount)
        except ConcurrencyGuardRejection:
            raise InsufficientInvitesError("❌ That user's balance changed while removing invites. Please try again.")
        return evaluate(await self.db.get_user_balances(guild_id, user_id))

    async def apply_role_quota(self, guild_id: int, role_id: int, name: str, max_invites: Balance, holder_ids: Iterable[int]) -> Tuple[RoleQuota, int]:
        """역할 한도를 저장하고, 그 역할을 가진 멤버들의 잔액을 맞춥니다. (변경된 멤버 수 반환)"""
        quota = await self.db.upsert_role_quota(guild_id, role_id, name, max_invites)
        updated = 0
        for user_id in holder_ids:
            if max_invites.is_unlimited:
                await self.db.set_user_balance(guild_id, user_id, role_id, UNLIMITED)
                updated += 1
            elif await self.db.insert_user_balance(guild_id, user_id, role_id, max_invites):
                updated += 1
        logger.info(f"[Quota] 역할 '{name}'의 초대 한도를 {max_invites}(으)로 설정했습니다. 반영된 멤버: {updated}명 (서버: {guild_id})")
        return quota, updated

    async def remove_role_quota(self, guild_id: int, role_id: int) -> bool:
        # 기존 잔액은 그대로 둡니다.
        return await self.db.delete_role_quota(guild_id, role_id)

    async def sync_member_roles(self, guild_id: int, user_id: int, added_role_ids: Iterable[int], removed_role_ids: Iterable[int]) -> Tuple[int, int]:
        """역할이 추가되면 해당 역할의 잔액을 만들고, 빠지면 그 역할의 잔액을 지웁니다. (생성 수, 삭제 수)"""
        added_role_ids, removed_role_ids = list(added_role_ids), list(removed_role_ids)
        created = 0
        if added_role_ids:
            for quota in await self.db.get_role_quotas(guild_id, added_role_ids):
                if await self.db.insert_user_balance(guild_id, user_id, quota.role_id, quota.max_invites):
                    created += 1
        removed = await self.db.delete_user_balances(guild_id, user_id, removed_role_ids) if removed_role_ids else 0
        return created, removed
