import pytest
from datetime import timezone
from hypothesis import given, strategies as st

from utils.models import (
    UNLIMITED, Finite, InviteRecord, ServerConfig, UserBalance, balance_from_raw, balance_to_raw,
)


def test_minus_one_is_unlimited():
    assert balance_from_raw(-1) is UNLIMITED
    assert balance_to_raw(UNLIMITED) == -1


def test_missing_balance_reads_as_zero():
    assert balance_from_raw(None) == Finite(0)


def test_finite_cannot_be_negative():
    with pytest.raises(ValueError):
        Finite(-1)


@given(raw=st.integers(max_value=-2))
def test_stored_values_below_minus_one_are_rejected(raw):
    with pytest.raises(ValueError):
        balance_from_raw(raw)


@given(count=st.integers(min_value=0, max_value=10_000))
def test_finite_survives_storage_boundary(count):
    balance = balance_from_raw(count)
    assert not balance.is_unlimited
    assert balance_to_raw(balance) == count


def test_user_balance_from_row_unlimited():
    balance = UserBalance.from_row({
        "id": 7, "guild_id": "1", "user_id": "2", "role_id": "3",
        "invites_remaining": -1, "created_at": "2024-05-01T10:00:00Z",
    })
    assert balance.is_unlimited
    assert balance.created_at.tzinfo == timezone.utc
    assert str(balance.remaining) == "unlimited"


def test_invite_record_from_row_defaults():
    record = InviteRecord.from_row({
        "id": 1, "guild_id": 10, "user_id": 20, "invite_code": "abc",
        "max_uses": None, "role_id": None, "created_at": "2024-05-01T10:00:00+00:00",
    })
    assert record.code == "abc"
    assert record.link == "https://discord.gg/abc"
    assert record.max_uses == 1
    assert record.role_id is None


def test_server_config_row_round_trip():
    config = ServerConfig(guild_id=1, logs_channel_id=2, bot_channel_id=3, default_role_id=4)
    assert ServerConfig.from_row(config.to_row()) == config
