# invite-manager/utils/database.py

import os
import asyncio
import logging
from functools import wraps
from datetime import datetime, timezone

from typing import Dict, Callable, Any, List, Optional, Iterable

from supabase import AsyncClient
from postgrest.exceptions import APIError

from .errors import StoreError
from .models import (
    Balance, RoleQuota, UserBalance, InviteRecord, JoinAttribution, ServerConfig,
    balance_to_raw,
)

logger = logging.getLogger(__name__)


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 1. 클라이언트 초기화 및 캐시
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
supabase: AsyncClient = None
try:
    url: str = os.environ.get("SUPABASE_URL")
    key: str = os.environ.get("SUPABASE_KEY")
    if not url or not key:
        raise ValueError("SUPABASE_URL 또는 SUPABASE_KEY 환경 변수가 설정되지 않았습니다.")
    supabase = AsyncClient(supabase_url=url, supabase_key=key)
    logger.info("✅ Supabase 비동기 클라이언트가 성공적으로 생성되었습니다.")
except Exception as e:
    logger.critical(f"❌ Supabase 클라이언트 생성 실패: {e}", exc_info=True)
    supabase = None

# { guild_id: ServerConfig }
_server_config_cache: Dict[int, ServerConfig] = {}


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 2. DB 오류 처리 데코레이터
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
def supabase_retry_handler(retries: int = 3, delay: int = 2):
    """
    읽기/멱등 쓰기는 여러 번 재시도하고, 모두 실패하면 StoreError를 던집니다.
    잔액 증감이나 참여 기록처럼 멱등이 아닌 작업은 retries=1로 사용합니다.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            if not supabase:
                logger.error(f"❌ Supabase 클라이언트가 초기화되지 않아 '{func.__name__}' 함수를 실행할 수 없습니다.")
                raise StoreError()

            last_exception = None
            for attempt in range(retries):
                try:
                    return await func(*args, **kwargs)
                except APIError as e:
                    logger.warning(f"⚠️ '{func.__name__}' 함수 실행 중 Supabase API 오류 발생 (시도 {attempt + 1}/{retries}): {e.message}")
                    last_exception = e
                except Exception as e:
                    logger.warning(f"⚠️ '{func.__name__}' 함수 실행 중 예기치 않은 오류 발생 (시도 {attempt + 1}/{retries}): {e}")
                    last_exception = e

                if attempt < retries - 1:
                    await asyncio.sleep(delay * (attempt + 1))

            logger.error(f"❌ '{func.__name__}' 함수가 모든 재시도({retries}번)에 실패했습니다. 마지막 오류: {last_exception}")
            raise StoreError() from last_exception
        return wrapper
    return decorator


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 3. 서버 설정 (server_configs)
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
@supabase_retry_handler()
async def load_server_configs_from_db():
    global _server_config_cache
    response = await supabase.table('server_configs').select('*').execute()
    if response and response.data:
        _server_config_cache = {int(row['guild_id']): ServerConfig.from_row(row) for row in response.data}
    else:
        _server_config_cache = {}
    logger.info(f"✅ {len(_server_config_cache)}개 서버의 설정을 DB에서 캐시로 로드했습니다.")

async def get_server_config(guild_id: int) -> Optional[ServerConfig]:
    if guild_id in _server_config_cache:
        return _server_config_cache[guild_id]
    return await fetch_server_config(guild_id)

@supabase_retry_handler()
async def fetch_server_config(guild_id: int) -> Optional[ServerConfig]:
    response = await supabase.table('server_configs').select('*').eq('guild_id', guild_id).limit(1).execute()
    if response and response.data:
        config = ServerConfig.from_row(response.data[0])
        _server_config_cache[guild_id] = config
        return config
    return None

@supabase_retry_handler()
async def save_server_config(config: ServerConfig) -> ServerConfig:
    await supabase.table('server_configs').upsert(config.to_row(), on_conflict='guild_id').execute()
    _server_config_cache[config.guild_id] = config
    logger.info(f"⚙️ 서버(ID: {config.guild_id})의 설정을 DB와 캐시에 저장했습니다.")
    return config


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 4. 역할별 초대 한도 (role_quotas)
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
@supabase_retry_handler()
async def get_role_quotas(guild_id: int, role_ids: Optional[Iterable[int]] = None) -> List[RoleQuota]:
    query = supabase.table('role_quotas').select('*').eq('guild_id', guild_id)
    if role_ids is not None:
        role_ids = list(role_ids)
        if not role_ids:
            return []
        query = query.in_('role_id', role_ids)
    response = await query.execute()
    return [RoleQuota.from_row(row) for row in response.data] if response and response.data else []

@supabase_retry_handler()
async def upsert_role_quota(guild_id: int, role_id: int, name: str, max_invites: Balance) -> RoleQuota:
    record = {"guild_id": guild_id, "role_id": role_id, "name": name, "max_invites": balance_to_raw(max_invites)}
    await supabase.table('role_quotas').upsert(record, on_conflict='guild_id,role_id').execute()
    return RoleQuota(guild_id=guild_id, role_id=role_id, name=name, max_invites=max_invites)

@supabase_retry_handler()
async def delete_role_quota(guild_id: int, role_id: int) -> bool:
    response = await supabase.table('role_quotas').delete().eq('guild_id', guild_id).eq('role_id', role_id).execute()
    return bool(response and response.data)


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 5. 유저 잔여 초대 (user_balances)
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
@supabase_retry_handler()
async def get_user_balances(guild_id: int, user_id: int) -> List[UserBalance]:
    response = await supabase.table('user_balances').select('*').eq('guild_id', guild_id).eq('user_id', user_id).order('created_at').order('id').execute()
    return [UserBalance.from_row(row) for row in response.data] if response and response.data else []

@supabase_retry_handler()
async def insert_user_balance(guild_id: int, user_id: int, role_id: int, balance: Balance) -> bool:
    """(guild, user, role) 행이 없을 때만 생성합니다. 새로 만들었으면 True."""
    record = {
        "guild_id": guild_id, "user_id": user_id, "role_id": role_id,
        "invites_remaining": balance_to_raw(balance),
    }
    response = await supabase.table('user_balances').upsert(
        record, on_conflict='guild_id,user_id,role_id', ignore_duplicates=True
    ).execute()
    return bool(response and response.data)

@supabase_retry_handler()
async def set_user_balance(guild_id: int, user_id: int, role_id: int, balance: Balance):
    record = {
        "guild_id": guild_id, "user_id": user_id, "role_id": role_id,
        "invites_remaining": balance_to_raw(balance),
    }
    await supabase.table('user_balances').upsert(record, on_conflict='guild_id,user_id,role_id').execute()

@supabase_retry_handler(retries=1)
async def adjust_user_balance(balance_id: int, delta: int) -> Optional[UserBalance]:
    """
    원자적 조건부 증감. 무제한(-1) 행이거나 결과가 0 미만이 되면 아무것도 바꾸지 않고 None을 반환합니다.
    """
    response = await supabase.rpc('adjust_invite_balance', {'p_balance_id': balance_id, 'p_delta': delta}).execute()
    return UserBalance.from_row(response.data[0]) if response and response.data else None

@supabase_retry_handler()
async def delete_user_balances(guild_id: int, user_id: int, role_ids: Optional[Iterable[int]] = None) -> int:
    query = supabase.table('user_balances').delete().eq('guild_id', guild_id).eq('user_id', user_id)
    if role_ids is not None:
        role_ids = list(role_ids)
        if not role_ids:
            return 0
        query = query.in_('role_id', role_ids)
    response = await query.execute()
    return len(response.data) if response and response.data else 0


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 6. 초대 기록 (invite_records)
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
@supabase_retry_handler()
async def count_invite_records(guild_id: int) -> int:
    response = await supabase.table('invite_records').select('id', count='exact').eq('guild_id', guild_id).limit(1).execute()
    return (response.count or 0) if response else 0

@supabase_retry_handler(retries=1)
async def create_invite_record(guild_id: int, user_id: int, code: str, link: str, max_uses: int, role_id: Optional[int]) -> InviteRecord:
    response = await supabase.table('invite_records').insert({
        "guild_id": guild_id,
        "user_id": user_id,
        "invite_code": code,
        "link": link,
        "max_uses": max_uses,
        "role_id": role_id,
    }).execute()
    if not response or not response.data:
        raise StoreError()
    return InviteRecord.from_row(response.data[0])

@supabase_retry_handler()
async def get_invite_record(guild_id: int, code: str) -> Optional[InviteRecord]:
    response = await supabase.table('invite_records').select('*').eq('guild_id', guild_id).eq('invite_code', code).limit(1).execute()
    return InviteRecord.from_row(response.data[0]) if response and response.data else None

@supabase_retry_handler()
async def get_invite_records(guild_id: int, user_id: Optional[int] = None) -> List[InviteRecord]:
    query = supabase.table('invite_records').select('*').eq('guild_id', guild_id)
    if user_id is not None:
        query = query.eq('user_id', user_id)
    response = await query.order('created_at').order('id').execute()
    return [InviteRecord.from_row(row) for row in response.data] if response and response.data else []

@supabase_retry_handler()
async def delete_invite_record(guild_id: int, code: str) -> bool:
    """삭제된 행이 있을 때만 True. 동시에 여러 곳에서 호출해도 True는 한 번만 나옵니다."""
    response = await supabase.table('invite_records').delete().eq('guild_id', guild_id).eq('invite_code', code).execute()
    return bool(response and response.data)


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 7. 참여 추적 (join_attributions)
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
@supabase_retry_handler(retries=1)
async def add_join_attribution(guild_id: int, invite_id: int, inviter_id: int, joined_user_id: int) -> JoinAttribution:
    response = await supabase.table('join_attributions').insert({
        "guild_id": guild_id,
        "invite_id": invite_id,
        "inviter_id": inviter_id,
        "joined_user_id": joined_user_id,
        "joined_at": datetime.now(timezone.utc).isoformat(),
    }).execute()
    if not response or not response.data:
        raise StoreError()
    return JoinAttribution.from_row(response.data[0])

@supabase_retry_handler()
async def count_joins_for_inviter(guild_id: int, user_id: int) -> int:
    response = await supabase.table('join_attributions').select('id', count='exact').eq('guild_id', guild_id).eq('inviter_id', user_id).limit(1).execute()
    return (response.count or 0) if response else 0


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 8. 서버 데이터 초기화
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
@supabase_retry_handler()
async def wipe_guild_data(guild_id: int, keep_codes: Iterable[str] = ()):
    """서버의 모든 데이터를 삭제합니다. keep_codes의 초대 기록은 남겨둡니다."""
    keep_codes = list(keep_codes)
    invite_delete = supabase.table('invite_records').delete().eq('guild_id', guild_id)
    if keep_codes:
        invite_delete = invite_delete.not_.in_('invite_code', keep_codes)
    await asyncio.gather(
        supabase.table('user_balances').delete().eq('guild_id', guild_id).execute(),
        supabase.table('role_quotas').delete().eq('guild_id', guild_id).execute(),
        supabase.table('join_attributions').delete().eq('guild_id', guild_id).execute(),
        invite_delete.execute(),
        supabase.table('server_configs').delete().eq('guild_id', guild_id).execute(),
    )
    _server_config_cache.pop(guild_id, None)
    logger.info(f"🧹 서버(ID: {guild_id})의 초대 관련 데이터를 모두 삭제했습니다. (보존된 초대: {len(keep_codes)}개)")
