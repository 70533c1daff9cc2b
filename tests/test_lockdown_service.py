import pytest

from chatwarden.models.events import ChannelSnapshot
from chatwarden.services.lockdown_service import LOCKDOWN_CHANNEL_NAME, NIGHT_LOCKDOWN_CHANNEL_NAME, LockdownService


@pytest.fixture
def lockdown(platform):
    platform.channels["t1"] = [
        ChannelSnapshot(id="c1", name="general"),
        ChannelSnapshot(id="c2", name="announcements", default_send_messages=False),
        ChannelSnapshot(id="c3", name="lounge", default_send_messages=True),
    ]
    return LockdownService(platform)


@pytest.mark.asyncio
async def test_lock_denies_every_channel(lockdown, platform):
    assert await lockdown.lock("t1", "CHANNEL_DELETE")
    assert lockdown.is_locked("t1")

    edits = platform.called("edit_channel_permission_overwrite")
    assert [(e[1], e[2]) for e in edits] == [("c1", False), ("c2", False), ("c3", False)]
    (created,) = platform.called("create_channel")
    assert created[1] == LOCKDOWN_CHANNEL_NAME
    assert lockdown.locked_tenants() == ["t1"]


@pytest.mark.asyncio
async def test_second_lock_is_a_no_op(lockdown, platform):
    await lockdown.lock("t1", "first")
    calls = len(platform.calls)
    assert not await lockdown.lock("t1", "second")
    assert len(platform.calls) == calls


@pytest.mark.asyncio
async def test_unlock_restores_prior_overwrites(lockdown, platform):
    await lockdown.lock("t1", "ROLE_DELETE")
    platform.calls.clear()

    assert await lockdown.unlock("t1") == 3
    assert not lockdown.is_locked("t1")
    edits = platform.called("edit_channel_permission_overwrite")
    assert [(e[1], e[2]) for e in edits] == [("c1", None), ("c2", False), ("c3", True)]
    assert platform.called("delete_channel")[0][1] == "created-1"


@pytest.mark.asyncio
async def test_night_lockdown_uses_its_own_channel_name(lockdown, platform):
    await lockdown.lock("t1", "MASS_BAN", night_mode=True)
    (created,) = platform.called("create_channel")
    assert created[1] == NIGHT_LOCKDOWN_CHANNEL_NAME
    assert created[3].startswith("Anti-Nuke [NIGHT MODE]")


@pytest.mark.asyncio
async def test_unlock_without_saved_state_clears_overwrites(platform):
    platform.channels["t1"] = [
        ChannelSnapshot(id="c1", name="general", default_send_messages=False),
        ChannelSnapshot(id="c9", name=LOCKDOWN_CHANNEL_NAME),
    ]
    service = LockdownService(platform)

    assert await service.unlock("t1") == 1
    assert platform.called("edit_channel_permission_overwrite")[0][1:3] == ("c1", None)
    assert platform.called("delete_channel")[0][1] == "c9"


@pytest.mark.asyncio
async def test_channel_listing_failure_leaves_tenant_unlocked(lockdown, platform):
    platform.failing.add("list_text_channels")
    assert not await lockdown.lock("t1", "CHANNEL_DELETE")
    assert not lockdown.is_locked("t1")
