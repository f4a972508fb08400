# utils/ui_defaults.py
"""
초대 시스템의 기본 설정값과 안내 문구를 모아둔 파일입니다.
"""

# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 1. 시간 관련 설정 (초 단위)
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
INVITE_TIMINGS = {
    # 삭제된 초대와 멤버 참여를 연결할 수 있는 시간
    "DELETED_INVITE_MATCH_WINDOW": 5,
    # 삭제된 초대를 버퍼에 보관하는 최대 시간
    "DELETED_INVITE_MAX_AGE": 30,
    # 삭제 버퍼 정리 주기 (분)
    "DELETED_INVITE_CLEANUP_MINUTES": 5,
    # 디스코드 REST 호출 타임아웃
    "REMOTE_CALL_TIMEOUT": 10,
    # /reset 확인 버튼 대기 시간
    "RESET_CONFIRM_TIMEOUT": 30,
    # 서버 설정 캐시 새로고침 주기 (분)
    "CONFIG_REFRESH_MINUTES": 5,
}

# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 2. 한도 설정
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
INVITE_LIMITS = {
    # 서버당 봇이 관리하는 초대 기록 최대 개수
    "MAX_GUILD_INVITES": 1000,
    # 발급되는 초대는 항상 1회용, 만료 없음
    "INVITE_MAX_USES": 1,
    "INVITE_MAX_AGE": 0,
    # 동시 요청으로 잔액 차감이 거절됐을 때 다시 계산하는 횟수
    "RESERVE_ATTEMPTS": 3,
    # 발급 실패 후 선차감을 되돌릴 때 DB 오류가 나면 다시 시도하는 횟수와 간격(초)
    "RELEASE_ATTEMPTS": 3,
    "RELEASE_RETRY_DELAY": 1,
    # 감사 로그 파일 보관 일수
    "AUDIT_LOG_RETENTION_DAYS": 30,
}

# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
# 3. /help 안내 문구
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=
HELP_SECTIONS = {
    "Member commands": [
        ("/createinvite", "Create a single-use invite link (uses one of your invites)"),
        ("/invites", "Show your remaining invites and your active invite links"),
        ("/deleteinvite", "Delete one of your invite links and get the invite back"),
    ],
    "Admin commands": [
        ("/setup", "Initial setup: logs channel, bot channel and optional default role"),
        ("/changedefaults", "Change the logs channel, bot channel or default role"),
        ("/currentconfig", "Show the current configuration and role limits"),
        ("/setrole", "Set the maximum number of invites for a role (-1 for unlimited)"),
        ("/unsetrole", "Remove the invite limit configuration from a role"),
        ("/addinvites", "Give invites to a user"),
        ("/removeinvites", "Take invites away from a user"),
        ("/checkinvites", "Check a user's invite balance and active invites"),
        ("/reset", "Delete all bot data and bot invites for this server"),
    ],
}
