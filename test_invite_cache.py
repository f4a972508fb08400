from utils.models import InviteRecord, LiveInvite

from conftest import BOT_ID, GUILD_ID, OTHER_ID


def make_record(code, user_id=1):
    return InviteRecord(id=1, guild_id=GUILD_ID, user_id=user_id, code=code, link=f"https://discord.gg/{code}", max_uses=1)


def test_seed_keeps_only_bot_invites(cache):
    count = cache.seed(GUILD_ID, [
        LiveInvite("mine", inviter_id=BOT_ID),
        LiveInvite("theirs", inviter_id=OTHER_ID),
    ])
    assert count == 1
    assert cache.codes(GUILD_ID) == ["mine"]


def test_on_create_ignores_foreign_invites(cache):
    assert cache.on_create(GUILD_ID, LiveInvite("theirs", inviter_id=OTHER_ID)) is False
    assert cache.on_create(GUILD_ID, LiveInvite("mine", inviter_id=BOT_ID)) is True
    assert cache.codes(GUILD_ID) == ["mine"]


def test_delete_with_record_is_buffered_within_window(cache, clock):
    cache.on_create(GUILD_ID, LiveInvite("a", inviter_id=BOT_ID))
    assert cache.on_delete(GUILD_ID, "a", make_record("a")) is True
    assert cache.codes(GUILD_ID) == []

    clock.advance(4)
    entry = cache.take_recent_deletion(GUILD_ID)
    assert entry.code == "a"
    assert cache.take_recent_deletion(GUILD_ID) is None


def test_delete_outside_window_is_not_matched(cache, clock):
    cache.on_delete(GUILD_ID, "a", make_record("a"))
    clock.advance(6)
    assert cache.take_recent_deletion(GUILD_ID) is None


def test_delete_without_record_is_not_buffered(cache):
    cache.on_create(GUILD_ID, LiveInvite("a", inviter_id=BOT_ID))
    assert cache.on_delete(GUILD_ID, "a") is False
    assert cache.recently_deleted_count() == 0


def test_expected_deletion_is_not_buffered(cache):
    cache.expect_deletion(GUILD_ID, "a")
    assert cache.on_delete(GUILD_ID, "a", make_record("a")) is False
    # 기대 삭제는 한 번만 소비됩니다.
    assert cache.on_delete(GUILD_ID, "a", make_record("a")) is True


def test_take_returns_oldest_for_the_requested_guild(cache, clock):
    cache.on_delete(GUILD_ID + 1, "other-guild", make_record("other-guild"))
    clock.advance(1)
    cache.on_delete(GUILD_ID, "first", make_record("first"))
    clock.advance(1)
    cache.on_delete(GUILD_ID, "second", make_record("second"))

    assert cache.take_recent_deletion(GUILD_ID).code == "first"
    assert cache.take_recent_deletion(GUILD_ID).code == "second"
    assert cache.take_recent_deletion(GUILD_ID + 1).code == "other-guild"


def test_diff_reports_missing_codes_in_insertion_order(cache):
    cache.seed(GUILD_ID, [LiveInvite(c, inviter_id=BOT_ID) for c in ("a", "b", "c")])
    assert cache.diff(GUILD_ID, ["b"]) == ["a", "c"]


def test_on_missing_buffers_without_record(cache):
    cache.seed(GUILD_ID, [LiveInvite("a", inviter_id=BOT_ID)])
    assert cache.on_missing(GUILD_ID, "a") is True
    entry = cache.take_recent_deletion(GUILD_ID)
    assert entry.code == "a" and entry.record is None


def test_on_missing_skips_expected_deletions(cache):
    cache.expect_deletion(GUILD_ID, "a")
    assert cache.on_missing(GUILD_ID, "a") is False


def test_prune_drops_entries_older_than_retention(cache, clock):
    cache.on_delete(GUILD_ID, "old", make_record("old"))
    clock.advance(20)
    cache.on_delete(GUILD_ID, "new", make_record("new"))
    clock.advance(15)
    assert cache.prune() == 1
    assert cache.recently_deleted_count() == 1


def test_forget_guild_clears_everything_for_that_guild(cache):
    cache.seed(GUILD_ID, [LiveInvite("a", inviter_id=BOT_ID)])
    cache.on_delete(GUILD_ID, "b", make_record("b"))
    cache.expect_deletion(GUILD_ID, "c")
    cache.forget_guild(GUILD_ID)

    assert not cache.has_guild(GUILD_ID)
    assert cache.recently_deleted_count() == 0
    assert cache.on_delete(GUILD_ID, "c", make_record("c")) is True
