import asyncio

import pytest

from utils.errors import InsufficientInvitesError, NoInvitePermissionError
from utils.models import UNLIMITED, Finite, RoleQuota, UserBalance
from utils.quota import (
    REASON_EXHAUSTED, REASON_NO_PERMISSION, REASON_REVOKED,
    QuotaResolver, evaluate, pick_chargeable, pick_refund_target,
)

from conftest import GUILD_ID

USER = 1
ROLE_SMALL, ROLE_BIG, ROLE_VIP = 10, 20, 30


def balance(id_, role_id, remaining):
    return UserBalance(id=id_, guild_id=GUILD_ID, user_id=USER, role_id=role_id, remaining=remaining)


def test_pick_chargeable_prefers_lowest_positive_finite():
    balances = [balance(1, ROLE_BIG, Finite(5)), balance(2, ROLE_SMALL, Finite(0)), balance(3, ROLE_VIP, Finite(2))]
    assert pick_chargeable(balances).id == 3


def test_pick_chargeable_ties_go_to_first():
    balances = [balance(1, ROLE_BIG, Finite(2)), balance(2, ROLE_SMALL, Finite(2))]
    assert pick_chargeable(balances).id == 1


def test_evaluate_unlimited_from_quota_alone():
    result = evaluate([balance(1, ROLE_SMALL, Finite(0))], [RoleQuota(GUILD_ID, ROLE_VIP, "vip", UNLIMITED)])
    assert result.eligible and result.has_unlimited


def test_evaluate_exhausted():
    result = evaluate([balance(1, ROLE_SMALL, Finite(0))])
    assert not result.eligible
    assert result.reason == REASON_EXHAUSTED


def test_refund_prefers_charged_role_then_lowest():
    balances = [balance(1, ROLE_BIG, Finite(5)), balance(2, ROLE_SMALL, Finite(1))]
    assert pick_refund_target(balances, ROLE_BIG).id == 1
    assert pick_refund_target(balances, 999).id == 2
    assert pick_refund_target(balances + [balance(3, ROLE_VIP, UNLIMITED)], ROLE_BIG) is None


def test_lazy_init_uses_highest_quota(db):
    db.seed_quota(ROLE_SMALL, Finite(2))
    db.seed_quota(ROLE_BIG, Finite(5))
    resolver = QuotaResolver(db)

    result = asyncio.run(resolver.resolve_eligibility(GUILD_ID, USER, [ROLE_SMALL, ROLE_BIG]))
    assert result.eligible
    assert result.total_remaining == 5
    assert [b.role_id for b in result.balances] == [ROLE_BIG]


def test_lazy_init_ranks_unlimited_highest(db):
    db.seed_quota(ROLE_BIG, Finite(50))
    db.seed_quota(ROLE_VIP, UNLIMITED)
    result = asyncio.run(QuotaResolver(db).resolve_eligibility(GUILD_ID, USER, [ROLE_BIG, ROLE_VIP]))
    assert result.has_unlimited
    assert result.balances[0].role_id == ROLE_VIP


def test_no_roles_and_no_rows_is_no_permission(db):
    result = asyncio.run(QuotaResolver(db).resolve_eligibility(GUILD_ID, USER, []))
    assert not result.eligible
    assert result.reason == REASON_NO_PERMISSION


def test_lost_roles_revoke_and_purge_rows(db):
    db.seed_quota(ROLE_SMALL, Finite(2))
    db.seed_balance(USER, ROLE_SMALL, Finite(2))
    result = asyncio.run(QuotaResolver(db).resolve_eligibility(GUILD_ID, USER, []))
    assert result.reason == REASON_REVOKED
    assert db.balances == {}


def test_admin_is_unlimited_without_rows(db):
    result = asyncio.run(QuotaResolver(db).resolve_eligibility(GUILD_ID, USER, [], is_admin=True))
    assert result.eligible and result.has_unlimited and result.is_admin
    assert db.balances == {}


def test_add_invites_credits_lowest_non_negative(db):
    db.seed_balance(USER, ROLE_BIG, Finite(4))
    low = db.seed_balance(USER, ROLE_SMALL, Finite(0))
    result = asyncio.run(QuotaResolver(db).add_invites(GUILD_ID, USER, 3))
    assert db.balances[low.id].remaining == Finite(3)
    assert result.total_remaining == 7


def test_add_invites_leaves_unlimited_alone(db):
    db.seed_balance(USER, ROLE_VIP, UNLIMITED)
    result = asyncio.run(QuotaResolver(db).add_invites(GUILD_ID, USER, 3))
    assert result.has_unlimited


def test_add_invites_without_rows_is_refused(db):
    with pytest.raises(NoInvitePermissionError):
        asyncio.run(QuotaResolver(db).add_invites(GUILD_ID, USER, 1))


def test_remove_invites_takes_from_largest(db):
    db.seed_balance(USER, ROLE_SMALL, Finite(1))
    big = db.seed_balance(USER, ROLE_BIG, Finite(5))
    asyncio.run(QuotaResolver(db).remove_invites(GUILD_ID, USER, 2))
    assert db.balances[big.id].remaining == Finite(3)


def test_remove_invites_more_than_available_is_refused(db):
    row = db.seed_balance(USER, ROLE_SMALL, Finite(1))
    with pytest.raises(InsufficientInvitesError):
        asyncio.run(QuotaResolver(db).remove_invites(GUILD_ID, USER, 2))
    assert db.balances[row.id].remaining == Finite(1)


def test_apply_role_quota_seeds_holders_without_rows(db):
    existing = db.seed_balance(2, ROLE_SMALL, Finite(0))
    _, updated = asyncio.run(QuotaResolver(db).apply_role_quota(GUILD_ID, ROLE_SMALL, "small", Finite(3), [USER, 2]))
    assert updated == 1
    assert db.balances[existing.id].remaining == Finite(0)
    assert db.total_finite(USER) == 3


def test_apply_unlimited_role_quota_overrides_holders(db):
    existing = db.seed_balance(USER, ROLE_VIP, Finite(1))
    asyncio.run(QuotaResolver(db).apply_role_quota(GUILD_ID, ROLE_VIP, "vip", UNLIMITED, [USER]))
    assert db.balances[existing.id].is_unlimited


def test_remove_role_quota_keeps_balances(db):
    db.seed_quota(ROLE_SMALL, Finite(2))
    db.seed_balance(USER, ROLE_SMALL, Finite(2))
    assert asyncio.run(QuotaResolver(db).remove_role_quota(GUILD_ID, ROLE_SMALL)) is True
    assert db.total_finite(USER) == 2


def test_sync_member_roles(db):
    db.seed_quota(ROLE_BIG, Finite(5))
    db.seed_balance(USER, ROLE_SMALL, Finite(1))
    created, removed = asyncio.run(QuotaResolver(db).sync_member_roles(GUILD_ID, USER, [ROLE_BIG, 77], [ROLE_SMALL]))
    assert (created, removed) == (1, 1)
    assert [b.role_id for b in db.balances.values()] == [ROLE_BIG]
