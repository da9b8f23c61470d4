from __future__ import annotations

import pytest

from quizbot_core.errors import PermissionDenied, PersistenceFailure
from quizbot_core.invites import InviteTracker
from quizbot_core.platform import InviteInfo
from quizbot_core.state import InviteRecord
from tests.quizbot_core.support.fakes import FailingStore, FakeLogger, FakePlatform

pytestmark = pytest.mark.asyncio


@pytest.fixture
def tracker(
    platform: FakePlatform, store: FailingStore, fake_logger: FakeLogger
) -> InviteTracker:
    return InviteTracker(platform=platform, store=store, logger=fake_logger)


async def test_sync_persists_only_invites_with_an_inviter(
    tracker: InviteTracker, platform: FakePlatform, store: FailingStore
) -> None:
    platform.invites["guild-1"] = [
        InviteInfo("abc", "u1", 3),
        InviteInfo("vanity", None, 40),
    ]

    assert await tracker.sync("guild-1") is True

    assert await store.load_invites("guild-1") == [InviteRecord("abc", "u1", 3)]
    assert tracker.cached_uses("guild-1") == {"abc": 3, "vanity": 40}


async def test_sync_without_permission_is_skipped(
    tracker: InviteTracker,
    platform: FakePlatform,
    store: FailingStore,
    fake_logger: FakeLogger,
) -> None:
    await store.replace_invites("guild-1", [InviteRecord("old", "u9", 1)])
    platform.errors["fetch_invites"] = PermissionDenied("Missing Manage Server")

    assert await tracker.sync("guild-1") is False

    assert await store.load_invites("guild-1") == [InviteRecord("old", "u9", 1)]
    assert "invites_unavailable" in fake_logger.events


async def test_sync_surfaces_store_failures(
    tracker: InviteTracker, platform: FakePlatform, store: FailingStore
) -> None:
    platform.invites["guild-1"] = [InviteInfo("abc", "u1", 3)]
    store.failing.add("replace_invites")

    with pytest.raises(PersistenceFailure):
        await tracker.sync("guild-1")


async def test_detect_used_invite_diffs_use_counts(
    tracker: InviteTracker, platform: FakePlatform, fake_logger: FakeLogger
) -> None:
    platform.invites["guild-1"] = [
        InviteInfo("abc", "u1", 3),
        InviteInfo("def", "u2", 7),
    ]
    await tracker.sync("guild-1")
    platform.invites["guild-1"] = [
        InviteInfo("abc", "u1", 3),
        InviteInfo("def", "u2", 8),
    ]

    used = await tracker.detect_used_invite("guild-1")

    assert used == InviteInfo("def", "u2", 8)
    assert tracker.cached_uses("guild-1") == {"abc": 3, "def": 8}
    assert fake_logger.fields("invite_attributed")["inviter_id"] == "u2"


async def test_new_invite_counts_from_zero(
    tracker: InviteTracker, platform: FakePlatform
) -> None:
    await tracker.sync("guild-1")
    platform.invites["guild-1"] = [InviteInfo("fresh", "u3", 1)]

    assert await tracker.detect_used_invite("guild-1") == InviteInfo("fresh", "u3", 1)


async def test_unchanged_counts_are_not_attributed(
    tracker: InviteTracker, platform: FakePlatform, fake_logger: FakeLogger
) -> None:
    platform.invites["guild-1"] = [InviteInfo("abc", "u1", 3)]
    await tracker.sync("guild-1")

    assert await tracker.detect_used_invite("guild-1") is None
    assert "invite_not_attributed" in fake_logger.events


async def test_detect_without_permission_returns_none(
    tracker: InviteTracker, platform: FakePlatform
) -> None:
    platform.invites["guild-1"] = [InviteInfo("abc", "u1", 3)]
    await tracker.sync("guild-1")
    platform.errors["fetch_invites"] = PermissionDenied("Missing Manage Server")

    assert await tracker.detect_used_invite("guild-1") is None
    assert tracker.cached_uses("guild-1") == {"abc": 3}
