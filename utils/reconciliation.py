# utils/reconciliation.py
"""
초대 기록/잔액을 디스코드의 실제 초대 목록, 그리고 멤버 참여 이벤트와 맞추는 엔진입니다.

초대 코드 하나의 상태:
    PENDING_CREATE -> ACTIVE -> CONSUMED | MANUALLY_DELETED | EXPIRED_ORPHAN

원격(디스코드)과 로컬(DB)을 함께 바꾸는 작업은 원격을 먼저 처리하고, 성공이 확인된 뒤에만
로컬을 바꿉니다. 예외는 발급 시의 선차감(reserve) 하나뿐이며, 원격 실패 시 release로 되돌립니다.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from .errors import (
    ConcurrencyGuardRejection, InviteCapacityError, InviteNotFoundError,
    NoInvitePermissionError, QuotaExceededError, RemoteInviteError, StoreError,
)
from .invite_cache import LiveInviteCache
from .models import InviteRecord, JoinAttribution, LiveInvite, UserBalance
from .quota import REASON_REVOKED, Eligibility, QuotaResolver, chargeable_candidates
from .ui_defaults import INVITE_LIMITS

logger = logging.getLogger(__name__)

RESERVED, RELEASING, CONFIRMED, RELEASED = "reserved", "releasing", "confirmed", "released"


@dataclass
class Reservation:
    guild_id: int
    user_id: int
    balance: Optional[UserBalance]
    remaining_after: Optional[int]
    state: str = RESERVED

    @property
    def unlimited(self) -> bool:
        return self.balance is None

    @property
    def role_id(self) -> Optional[int]:
        return self.balance.role_id if self.balance else None


@dataclass
class MintResult:
    record: InviteRecord
    unlimited: bool
    remaining: Optional[int]


@dataclass
class JoinMatch:
    attribution: JoinAttribution
    record: InviteRecord
    source: str


@dataclass
class RevokeResult:
    record: InviteRecord
    remote_existed: bool
    record_removed: bool
    refunded: Optional[UserBalance] = None


@dataclass
class ResetResult:
    deleted_invites: int
    failed_codes: List[str] = field(default_factory=list)


class ReconciliationEngine:
    def __init__(
        self,
        db,
        cache: LiveInviteCache,
        gateway,
        audit,
        resolver: Optional[QuotaResolver] = None,
        max_guild_invites: int = INVITE_LIMITS["MAX_GUILD_INVITES"],
        reserve_attempts: int = INVITE_LIMITS["RESERVE_ATTEMPTS"],
        release_attempts: int = INVITE_LIMITS["RELEASE_ATTEMPTS"],
        release_retry_delay: float = INVITE_LIMITS["RELEASE_RETRY_DELAY"],
        sweep_grace: timedelta = timedelta(seconds=60),
    ):
        self.db = db
        self.cache = cache
        self.gateway = gateway
        self.audit = audit
        self.resolver = resolver or QuotaResolver(db)
        self.max_guild_invites = max_guild_invites
        self.reserve_attempts = reserve_attempts
        self.release_attempts = release_attempts
        self.release_retry_delay = release_retry_delay
        self.sweep_grace = sweep_grace

    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    # 1. 캐시 시딩
    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    async def seed_guild(self, guild_id: int) -> int:
        invites = await self.gateway.fetch_guild_invites(guild_id)
        count = self.cache.seed(guild_id, invites)
        logger.info(f"[Reconciliation] 서버(ID: {guild_id})의 봇 초대 {count}개를 캐시했습니다.")
        return count

    async def handle_invite_create(self, guild_id: int, invite: LiveInvite) -> bool:
        return self.cache.on_create(guild_id, invite)

    async def handle_invite_delete(self, guild_id: int, code: str) -> bool:
        """봇 기록이 남아있는 초대라면 recently_deleted 버퍼에 넣습니다."""
        record = await self.db.get_invite_record(guild_id, code)
        buffered = self.cache.on_delete(guild_id, code, record)
        if buffered:
            logger.info(f"[Reconciliation] 초대 `{code}` 삭제 이벤트를 참여 매칭용으로 보관합니다. (서버: {guild_id})")
        return buffered

    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    # 2. 발급 (reserve -> confirm / release)
    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    @staticmethod
    def _denial(eligibility: Eligibility, contended: bool):
        if eligibility.reason == REASON_REVOKED:
            return NoInvitePermissionError(revoked=True)
        if eligibility.quotas or eligibility.balances:
            return ConcurrencyGuardRejection() if contended else QuotaExceededError()
        return NoInvitePermissionError()

    async def reserve(self, guild_id: int, user_id: int, role_ids: Iterable[int], *, is_admin: bool = False, admin_role_id: Optional[int] = None) -> Reservation:
        """
        차감 가능한 잔액을 적은 것부터 차례로 시도합니다. 같은 시점에 읽은 후보가 모두 거절되면 다시 읽습니다.
        후보가 거절됐다는 것은 그 잔액이 0이 됐다는 뜻이므로, 다시 읽었을 때 남은 잔액이 없으면 거절 사유를 그대로 돌려줍니다.
        """
        role_ids = list(role_ids)
        contended = False
        for _ in range(self.reserve_attempts):
            eligibility = await self.resolver.resolve_eligibility(guild_id, user_id, role_ids, is_admin=is_admin)
            if not eligibility.eligible:
                raise self._denial(eligibility, contended)
            if eligibility.has_unlimited:
                if is_admin:
                    await self.resolver.ensure_admin_balance(guild_id, user_id, admin_role_id)
                return Reservation(guild_id, user_id, balance=None, remaining_after=None)
            for candidate in chargeable_candidates(eligibility.balances):
                try:
                    charged = await self.resolver.apply_charge(candidate, -1)
                except ConcurrencyGuardRejection:
                    contended = True
                    continue
                await self._log_balance(guild_id, user_id, charged.role_id, -1, "reserve")
                return Reservation(guild_id, user_id, balance=charged, remaining_after=eligibility.total_remaining - 1)
            logger.info(f"[Reconciliation] 유저(ID: {user_id})의 잔액이 모두 동시에 사용되어 다시 계산합니다.")
        raise ConcurrencyGuardRejection()

    def confirm(self, reservation: Reservation):
        if reservation.state != RESERVED:
            raise RuntimeError(f"Reservation already {reservation.state}")
        reservation.state = CONFIRMED

    async def release(self, reservation: Reservation) -> bool:
        """
        선차감한 1개를 되돌립니다. 여러 번 불러도 한 번만 되돌립니다.
        DB 오류가 계속되면 StoreError를 던지고 예약 상태로 남겨두므로 나중에 다시 부를 수 있습니다.
        """
        if reservation.state != RESERVED:
            return False
        if reservation.unlimited:
            reservation.state = RELEASED
            return False

        reservation.state = RELEASING
        for attempt in range(1, self.release_attempts + 1):
            try:
                await self.resolver.apply_charge(reservation.balance, +1)
            except ConcurrencyGuardRejection:
                # 잔액 행이 지워졌거나 무제한으로 바뀌어 되돌릴 곳이 없습니다.
                reservation.state = RELEASED
                logger.warning(f"⚠️ 유저(ID: {reservation.user_id})의 잔액(ID: {reservation.balance.id})이 사라져 선차감을 되돌리지 않습니다.")
                return False
            except StoreError:
                if attempt == self.release_attempts:
                    reservation.state = RESERVED
                    raise
                logger.warning(f"⚠️ 선차감 되돌리기 실패 (시도 {attempt}/{self.release_attempts}), 다시 시도합니다. (잔액 ID: {reservation.balance.id})")
                await asyncio.sleep(self.release_retry_delay * attempt)
                continue
            reservation.state = RELEASED
            await self._log_balance(reservation.guild_id, reservation.user_id, reservation.role_id, +1, "release")
            return True
        return False

    async def _compensate(self, reservation: Reservation):
        try:
            await self.release(reservation)
        except StoreError:
            logger.critical(
                f"❌ 유저(ID: {reservation.user_id})의 선차감 1개를 되돌리지 못했습니다. (잔액 ID: {reservation.balance.id})",
                exc_info=True,
            )

    async def mint_invite(self, guild_id: int, user_id: int, role_ids: Iterable[int], channel, *, is_admin: bool = False, admin_role_id: Optional[int] = None) -> MintResult:
        if await self.db.count_invite_records(guild_id) >= self.max_guild_invites:
            raise InviteCapacityError(self.max_guild_invites)

        reservation = await self.reserve(guild_id, user_id, role_ids, is_admin=is_admin, admin_role_id=admin_role_id)
        try:
            created = await self.gateway.create_invite(
                channel,
                max_uses=INVITE_LIMITS["INVITE_MAX_USES"],
                max_age=INVITE_LIMITS["INVITE_MAX_AGE"],
                unique=True,
            )
        except Exception:
            await self._compensate(reservation)
            raise

        try:
            record = await self.db.create_invite_record(
                guild_id, user_id, created.code, created.url, INVITE_LIMITS["INVITE_MAX_USES"], reservation.role_id
            )
        except Exception:
            # 기록을 남기지 못한 초대는 아무도 찾을 수 없으므로 원격에서도 지웁니다.
            logger.error(f"❌ 초대 `{created.code}` 기록 저장 실패, 디스코드 초대를 삭제하고 잔액을 되돌립니다.", exc_info=True)
            try:
                await self.gateway.delete_invite(guild_id, created.code)
            except RemoteInviteError:
                logger.error(f"❌ 기록 없는 초대 `{created.code}`를 디스코드에서 삭제하지 못했습니다. (서버: {guild_id})")
            await self._compensate(reservation)
            raise

        self.confirm(reservation)
        self.cache.on_create(guild_id, LiveInvite(code=created.code, uses=0, inviter_id=self.cache.bot_user_id))
        await self.audit.log(
            "invite_create", "Invite created",
            guild_id=guild_id, user_id=user_id, invite_code=created.code,
            channel_message=f"🎟️ **New Single-Use Invite Created**\nCreated by: <@{user_id}>\nLink: {created.url}",
        )
        return MintResult(record=record, unlimited=reservation.unlimited, remaining=reservation.remaining_after)

    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    # 3. 소비 (멤버 참여)
    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    async def attribute_join(self, guild_id: int, member_id: int) -> Optional[JoinMatch]:
        """
        1) 매칭 윈도우 안에 삭제된 초대가 있으면 그것을 우선 사용합니다.
        2) 없으면 캐시와 최신 초대 목록을 비교해 사라진 코드를 모두 삭제 버퍼에 넣고 가장 오래된 것부터 가져갑니다.
        같은 패스에서 여러 코드가 사라지면 어느 멤버의 것인지 구분할 수 없으므로,
        남은 코드는 동시에 들어온 다른 멤버가 가져갈 수 있도록 버퍼에 남겨둡니다.
        """
        if match := await self._claim_recent(guild_id, member_id, "recently_deleted"):
            return match

        try:
            fresh = await self.gateway.fetch_guild_invites(guild_id)
        except RemoteInviteError:
            logger.warning(f"⚠️ 서버(ID: {guild_id}) 초대 목록을 가져오지 못해 멤버(ID: {member_id})의 초대자를 확인할 수 없습니다.")
            return None

        for code in self.cache.diff(guild_id, [invite.code for invite in fresh]):
            self.cache.on_missing(guild_id, code)
        self.cache.replace(guild_id, fresh)

        match = await self._claim_recent(guild_id, member_id, "cache_diff")
        if match is None:
            logger.info(f"[Reconciliation] 멤버(ID: {member_id})가 사용한 봇 초대를 찾지 못했습니다. (서버: {guild_id})")
        return match

    async def _claim_recent(self, guild_id: int, member_id: int, source: str) -> Optional[JoinMatch]:
        while (entry := self.cache.take_recent_deletion(guild_id)) is not None:
            record = entry.record or await self.db.get_invite_record(guild_id, entry.code)
            if record is None:
                continue
            if match := await self._consume(guild_id, record, member_id, source):
                return match
        return None

    async def _consume(self, guild_id: int, record: InviteRecord, member_id: int, source: str) -> Optional[JoinMatch]:
        # 조건부 삭제에 성공한 쪽만 참여 기록을 남깁니다.
        if not await self.db.delete_invite_record(guild_id, record.code):
            return None
        self.cache.forget_code(guild_id, record.code)
        attribution = await self.db.add_join_attribution(guild_id, record.id, record.user_id, member_id)
        await self.audit.log(
            "join", "Member joined via invite",
            guild_id=guild_id, user_id=member_id, inviter_id=record.user_id, invite_code=record.code, source=source,
            channel_message=(
                f"👋 **New Member Joined**\nMember: <@{member_id}>\n"
                f"Invited by: <@{record.user_id}>\nInvite Code: {record.code}"
            ),
        )
        return JoinMatch(attribution=attribution, record=record, source=source)

    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    # 4. 수동 삭제
    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    async def revoke_invite(self, guild_id: int, record: InviteRecord, *, refund: bool = True) -> RevokeResult:
        """디스코드에서 먼저 지우고(NotFound는 이미 삭제된 것으로 간주), 확인된 뒤에만 기록을 지우고 환불합니다."""
        self.cache.expect_deletion(guild_id, record.code)
        try:
            existed = await self.gateway.delete_invite(guild_id, record.code)
        except Exception:
            self.cache.cancel_expected_deletion(guild_id, record.code)
            raise

        removed = await self.db.delete_invite_record(guild_id, record.code)
        self.cache.forget_code(guild_id, record.code)

        refunded = None
        if removed and refund:
            refunded = await self.resolver.refund(guild_id, record.user_id, record.role_id)
            if refunded is not None:
                await self._log_balance(guild_id, record.user_id, refunded.role_id, +1, "refund")

        await self.audit.log(
            "invite_delete", "Invite deleted",
            guild_id=guild_id, user_id=record.user_id, invite_code=record.code,
            remote_existed=existed, refunded=refunded is not None,
            channel_message=f"🗑️ **Invite Deleted**\nOwner: <@{record.user_id}>\nLink: {record.link}",
        )
        return RevokeResult(record=record, remote_existed=existed, record_removed=removed, refunded=refunded)

    async def delete_user_invite(self, guild_id: int, user_id: int, number: int) -> RevokeResult:
        """/invites 목록의 번호(1부터)로 초대를 지웁니다."""
        records = await self.db.get_invite_records(guild_id, user_id)
        if number < 1 or number > len(records):
            raise InviteNotFoundError(f"❌ Invalid invite number. You have {len(records)} active invites.")
        return await self.revoke_invite(guild_id, records[number - 1], refund=True)

    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    # 5. 고아 기록 정리
    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    async def sweep_orphans(self, guild_id: int) -> List[InviteRecord]:
        """
        디스코드에 더 이상 없는 초대 기록을 환불 없이 지웁니다.
        조회를 시작한 시점 직전에 만들어진 기록은 조회 결과에 없을 수 있으므로 건너뜁니다.
        """
        started = datetime.now(timezone.utc)
        try:
            live = await self.gateway.fetch_guild_invites(guild_id)
        except RemoteInviteError:
            logger.warning(f"⚠️ 서버(ID: {guild_id}) 초대 목록을 가져오지 못해 고아 기록 정리를 건너뜁니다.")
            return []
        live_codes = {invite.code for invite in live}
        cutoff = started - self.sweep_grace

        stale: List[InviteRecord] = []
        for record in await self.db.get_invite_records(guild_id):
            if not self._is_stale(record, live_codes, cutoff):
                continue
            if await self.db.delete_invite_record(guild_id, record.code):
                self.cache.forget_code(guild_id, record.code)
                stale.append(record)

        if stale:
            await self.audit.log(
                "orphan_sweep", f"Removed {len(stale)} stale invite records",
                guild_id=guild_id, invite_codes=",".join(record.code for record in stale),
            )
        return stale

    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    # 6. 서버 초기화
    # =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
    async def reset_guild(self, guild_id: int) -> ResetResult:
        """봇이 만든 초대를 디스코드에서 지우고 서버 데이터를 모두 삭제합니다. 삭제에 실패한 초대의 기록은 남깁니다."""
        live = await self.gateway.fetch_guild_invites(guild_id)
        bot_codes = [invite.code for invite in live if self.cache.is_bot_invite(invite)]
        for code in bot_codes:
            self.cache.expect_deletion(guild_id, code)

        results = await asyncio.gather(
            *[self.gateway.delete_invite(guild_id, code) for code in bot_codes], return_exceptions=True
        )
        failed = []
        for code, result in zip(bot_codes, results):
            if isinstance(result, RemoteInviteError):
                failed.append(code)
                self.cache.cancel_expected_deletion(guild_id, code)
            elif isinstance(result, BaseException):
                raise result

        await self.db.wipe_guild_data(guild_id, keep_codes=failed)
        self.cache.forget_guild(guild_id)
        await self.audit.log(
            "reset", "Guild data reset",
            guild_id=guild_id, deleted_invites=len(bot_codes) - len(failed), failed_invites=len(failed),
        )
        return ResetResult(deleted_invites=len(bot_codes) - len(failed), failed_codes=failed)

    @staticmethod
    def _is_stale(record: InviteRecord, live_codes, cutoff: datetime) -> bool:
        return record.code not in live_codes and record.created_at <= cutoff

    async def _log_balance(self, guild_id: int, user_id: int, role_id: Optional[int], delta: int, reason: str):
        await self.audit.log(
            "balance", "Balance changed",
            guild_id=guild_id, user_id=user_id, role_id=role_id, delta=f"{delta:+d}", reason=reason,
        )
