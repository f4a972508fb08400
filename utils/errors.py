# utils/errors.py
"""
초대 시스템에서 사용하는 예외 목록입니다.
InviteError 계열은 사용자에게 그대로 보여줄 메시지(user_message)를 가지고 있습니다.
"""
from typing import Optional


class InviteError(Exception):
    user_message = "❌ Something went wrong while handling your invites."

    def __init__(self, user_message: Optional[str] = None, *args):
        if user_message:
            self.user_message = user_message
        super().__init__(self.user_message, *args)


class QuotaExceededError(InviteError):
    user_message = "❌ You don't have any invites remaining."


class ConcurrencyGuardRejection(QuotaExceededError):
    user_message = "❌ Another request already used your last invite."


class NoInvitePermissionError(InviteError):
    user_message = "❌ You don't have permission to create invites. You need a role with invite permissions."

    def __init__(self, user_message: Optional[str] = None, revoked: bool = False):
        self.revoked = revoked
        if revoked and not user_message:
            user_message = "❌ Your invite permissions have been revoked. Contact an administrator if you think this is a mistake."
        super().__init__(user_message)


class InsufficientInvitesError(InviteError):
    user_message = "❌ That user doesn't have enough invites to remove."


class RemoteInviteError(InviteError):
    user_message = "❌ Discord did not accept the invite request. Please try again in a moment."


class StaleRecordError(InviteError):
    user_message = "❌ That invite no longer exists on Discord."


class ConfigurationMissingError(InviteError):
    user_message = "❌ Server not set up! Please ask an administrator to run `/setup` first."


class WrongChannelError(InviteError):
    def __init__(self, channel_id: int):
        self.channel_id = channel_id
        super().__init__(f"❌ This command can only be used in <#{channel_id}>.\nPlease try again in the correct channel.")


class InviteCapacityError(InviteError):
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(
            f"❌ This server has reached its maximum invite capacity ({limit} invites).\n"
            "Please contact a server administrator to remove unused invites."
        )


class InviteNotFoundError(InviteError):
    user_message = "❌ That invite could not be found."


class StoreError(InviteError):
    user_message = "❌ The database is not responding right now. Please try again later."
