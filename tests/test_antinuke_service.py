from datetime import datetime, timedelta, timezone

import pytest

from chatwarden.lib.config import EngineSettings
from chatwarden.lib.database import InMemoryStore, PersistenceError
from chatwarden.models.enums import ActionKind, SecurityEventType, Severity
from chatwarden.models.events import (
    AuditEntry, BotAdded, ChannelDeleted, ChannelSnapshot, MemberBanned, MemberKicked,
    MemberSnapshot, RoleSnapshot, RoleUpdated, TenantUpdated, WebhookCreated
)
from chatwarden.models.policy import NightModePolicy, TenantPolicy
from chatwarden.services.moderation_service import ModerationEngine

from conftest import BOT_OWNER_ID, OWNER_ID, TENANT_ID


DAY = datetime(2024, 1, 15, 14, 0, tzinfo=timezone.utc)
NIGHT = datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def tenant(platform):
    platform.members["nuker"] = MemberSnapshot(actor_id="nuker", roles=[
        RoleSnapshot(id="r-admin", name="Admins", permissions=["ADMINISTRATOR"]),
        RoleSnapshot(id="r-chat", name="Regulars", permissions=["SEND_MESSAGES"]),
    ])
    platform.channels[TENANT_ID] = [
        ChannelSnapshot(id="general", name="general"),
        ChannelSnapshot(id="rules", name="rules", default_send_messages=False),
    ]


def channel_deleted(i: int, at: datetime) -> ChannelDeleted:
    return ChannelDeleted(
        tenant_id=TENANT_ID,
        occurred_at=at,
        channel=ChannelSnapshot(id=f"c{i}", name=f"channel-{i}", topic="important", position=i),
    )


async def send(engine, platform, event, actor="nuker", target=None, entry_at=None):
    """Deliver an event with a matching audit-log entry."""
    platform.audit[event.kind] = [AuditEntry(
        actor_id=actor,
        target_id=target if target is not None else event.target_id,
        created_at=entry_at or event.occurred_at,
    )]
    return await engine.on_administrative_event(event)


async def nuke_channels(engine, platform, n=3, start=DAY, spacing=1.0, actor="nuker"):
    return [
        await send(engine, platform, channel_deleted(i, start + timedelta(seconds=i * spacing)), actor=actor)
        for i in range(n)
    ]


@pytest.mark.asyncio
async def test_channel_nuke_is_punished_and_healed(engine, platform, store):
    outcomes = await nuke_channels(engine, platform)

    assert [o.count for o in outcomes] == [1, 2, 3]
    assert [o.escalated for o in outcomes] == [False, False, True]
    last = outcomes[-1]
    assert (last.actor_id, last.limit, last.punished, last.healed, last.lockdown) == ("nuker", 3, True, True, True)

    # Privileged role stripped before the ban
    assert platform.called("remove_role") == [(TENANT_ID, "nuker", "r-admin", platform.called("ban_member")[0][2])]
    assert platform.names().index("remove_role") < platform.names().index("ban_member")
    assert platform.called("ban_member") == [
        (TENANT_ID, "nuker", "Anti-Nuke: CHANNEL_DELETE - 3 malicious actions detected"),
    ]

    # The channel from the breaching event is recreated from its snapshot
    (restored,) = platform.called("recreate_channel")
    assert restored[1].id == "c2"
    assert restored[1].topic == "important"

    # Owner notified, tenant locked
    (alert,) = platform.called("notify_owner")
    assert "ANTI-NUKE ALERT" in alert[1]
    assert engine.lockdown.is_locked(TENANT_ID)

    events = store.security_events
    assert [e.event_type for e in events] == [SecurityEventType.CHANNEL_DELETE] * 3
    assert [e.severity for e in events] == [Severity.HIGH, Severity.HIGH, Severity.CRITICAL]
    assert [e.escalated for e in events] == [False, False, True]

    (warning,) = store.warnings[(TENANT_ID, "nuker")]
    assert warning.severity == Severity.CRITICAL
    assert engine.escalation.open_warnings(TENANT_ID, "nuker") == 1


@pytest.mark.asyncio
async def test_actions_spread_beyond_the_window_are_not_punished(engine, platform):
    outcomes = await nuke_channels(engine, platform, spacing=6.0)
    assert [o.count for o in outcomes] == [1, 2, 2]
    assert not any(o.escalated for o in outcomes)
    assert platform.called("ban_member") == []


@pytest.mark.asyncio
async def test_kick_needs_matching_audit_target(engine, platform, store):
    event = MemberKicked(tenant_id=TENANT_ID, member_id="m1", occurred_at=DAY)
    outcome = await send(engine, platform, event, target="someone-else")
    assert outcome.skipped_reason == "unattributed"
    assert store.security_events == []


@pytest.mark.asyncio
async def test_burst_is_attributed_from_the_newest_audit_entry(engine, platform):
    # Handlers for c0 and c1 run after c2 already heads the audit log
    platform.audit[ActionKind.CHANNEL_DELETE] = [
        AuditEntry(actor_id="nuker", target_id="c2", created_at=DAY + timedelta(seconds=2)),
    ]
    outcomes = [
        await engine.on_administrative_event(channel_deleted(i, DAY + timedelta(seconds=i)))
        for i in range(3)
    ]

    assert [o.count for o in outcomes] == [1, 2, 3]
    assert [o.escalated for o in outcomes] == [False, False, True]
    assert len(platform.called("ban_member")) == 1


@pytest.mark.asyncio
async def test_stale_audit_entry_is_not_attributed(engine, platform):
    event = channel_deleted(1, DAY)
    outcome = await send(engine, platform, event, entry_at=DAY - timedelta(minutes=5))
    assert outcome.skipped_reason == "unattributed"


@pytest.mark.asyncio
async def test_missing_or_failing_audit_log_drops_event(engine, platform):
    outcome = await engine.on_administrative_event(channel_deleted(1, DAY))
    assert outcome.skipped_reason == "unattributed"

    platform.failing.add("fetch_audit_log")
    outcome = await send(engine, platform, channel_deleted(2, DAY))
    assert outcome.skipped_reason == "unattributed"


@pytest.mark.asyncio
async def test_owner_is_audited_but_never_punished(engine, platform, store):
    outcomes = await nuke_channels(engine, platform, n=5, actor=OWNER_ID)
    assert {o.skipped_reason for o in outcomes} == {"owner"}
    assert platform.called("ban_member") == []
    assert len(store.security_events) == 5
    assert all(e.count == 0 and e.details["exempt"] == "owner" for e in store.security_events)
    assert {e.limit for e in store.security_events} == {3}


@pytest.mark.asyncio
async def test_policy_allow_list_exempts_actor(engine, platform):
    await engine.update_policy(TENANT_ID, TenantPolicy(allow_list=["nuker"]))
    outcomes = await nuke_channels(engine, platform)
    assert {o.skipped_reason for o in outcomes} == {"allow-listed"}
    assert platform.called("ban_member") == []


@pytest.mark.asyncio
async def test_trusted_actor_is_exempt(engine, platform):
    await engine.set_trusted(TENANT_ID, "nuker")
    outcomes = await nuke_channels(engine, platform)
    assert outcomes[-1].skipped_reason == "allow-listed"


@pytest.mark.asyncio
async def test_disabled_policy_skips_detection(engine, platform):
    await engine.update_policy(TENANT_ID, TenantPolicy(enabled=False))
    outcomes = await nuke_channels(engine, platform)
    assert {o.skipped_reason for o in outcomes} == {"disabled"}
    assert platform.called("fetch_audit_log") == []


@pytest.mark.asyncio
async def test_night_mode_lowers_limit_and_locks(engine, platform):
    policy = TenantPolicy(lockdown_on_trigger=False, night_mode=NightModePolicy(enabled=True))
    await engine.update_policy(TENANT_ID, policy)

    outcome = await send(engine, platform, channel_deleted(1, NIGHT))

    assert outcome.night_mode
    assert (outcome.count, outcome.limit, outcome.escalated) == (1, 1, True)
    assert outcome.lockdown
    reason = platform.called("ban_member")[0][2]
    assert reason == "Anti-Nuke [NIGHT MODE]: CHANNEL_DELETE - 1 malicious actions detected"
    assert platform.called("create_channel")[0][1] == "night-lockdown"


@pytest.mark.asyncio
async def test_no_lockdown_when_disabled_in_policy(engine, platform):
    await engine.update_policy(TENANT_ID, TenantPolicy(lockdown_on_trigger=False))
    outcomes = await nuke_channels(engine, platform)
    assert outcomes[-1].punished
    assert not outcomes[-1].lockdown
    assert platform.called("create_channel") == []
    assert len(platform.called("recreate_channel")) == 1


@pytest.mark.asyncio
async def test_failed_lockdown_is_not_reported(engine, platform):
    platform.failing.add("list_text_channels")
    outcomes = await nuke_channels(engine, platform)

    assert outcomes[-1].punished
    assert not outcomes[-1].lockdown
    assert not engine.lockdown.is_locked(TENANT_ID)


@pytest.mark.asyncio
async def test_idle_counters_are_swept(platform, store):
    settings = EngineSettings(owner_id=BOT_OWNER_ID, counter_sweep_every=3, counter_idle_seconds=60)
    engine = ModerationEngine(platform, store, settings)
    later = DAY + timedelta(hours=2)

    await send(engine, platform, channel_deleted(0, DAY), actor="early")
    await send(engine, platform, channel_deleted(1, later))
    outcome = await send(engine, platform, channel_deleted(2, later + timedelta(seconds=1)))

    assert outcome.count == 2
    assert len(engine.counter) == 1
    assert engine.counter.count(TENANT_ID, "early", ActionKind.CHANNEL_DELETE, DAY.timestamp()) == 0


@pytest.mark.asyncio
async def test_policy_update_applies_to_next_event(engine, platform):
    await engine.update_policy(TENANT_ID, TenantPolicy(limits={ActionKind.CHANNEL_DELETE: 1}))
    outcome = await send(engine, platform, channel_deleted(1, DAY))
    assert outcome.escalated


@pytest.mark.asyncio
async def test_kick_punishment_policy(engine, platform):
    await engine.update_policy(TENANT_ID, TenantPolicy(punishment="KICK"))
    await nuke_channels(engine, platform)
    assert platform.called("ban_member") == []
    assert platform.called("kick_member")[0][1] == "nuker"


@pytest.mark.asyncio
async def test_failed_ban_falls_back_to_kick(engine, platform):
    platform.failing.add("ban_member")
    outcomes = await nuke_channels(engine, platform)
    assert outcomes[-1].punished
    assert platform.called("kick_member")[0][1] == "nuker"


@pytest.mark.asyncio
async def test_unknown_owner_aborts_punishment_but_still_heals(engine, platform):
    platform.owner_id = None
    outcomes = await nuke_channels(engine, platform)
    last = outcomes[-1]
    assert last.escalated
    assert not last.punished
    assert last.healed
    assert platform.called("ban_member") == []
    assert engine.escalation.open_warnings(TENANT_ID, "nuker") == 0


@pytest.mark.asyncio
async def test_mass_ban_is_reversed(engine, platform, store):
    for i in range(3):
        event = MemberBanned(tenant_id=TENANT_ID, member_id=f"m{i}", occurred_at=DAY + timedelta(seconds=i))
        outcome = await send(engine, platform, event)
    assert outcome.escalated
    assert [c[1] for c in platform.called("unban_member")] == ["m2"]
    assert store.security_events[-1].event_type == SecurityEventType.MASS_BAN


@pytest.mark.asyncio
async def test_webhook_spam_is_removed(engine, platform):
    for i in range(3):
        event = WebhookCreated(tenant_id=TENANT_ID, channel_id="general", occurred_at=DAY + timedelta(seconds=i))
        outcome = await send(engine, platform, event)
    assert outcome.escalated
    assert platform.called("delete_webhooks")[0][1] == "general"


@pytest.mark.asyncio
async def test_permission_escalation_is_reverted_then_punished(engine, platform, store):
    event = RoleUpdated(
        tenant_id=TENANT_ID,
        occurred_at=DAY,
        before=RoleSnapshot(id="r5", name="helpers", permissions=["SEND_MESSAGES"]),
        after=RoleSnapshot(id="r5", name="helpers", permissions=["SEND_MESSAGES", "ADMINISTRATOR"]),
    )
    outcome = await send(engine, platform, event)

    assert (outcome.escalated, outcome.healed, outcome.punished) == (True, True, True)
    assert platform.called("set_role_permissions")[0][1:3] == ("r5", ["SEND_MESSAGES"])
    assert platform.names().index("set_role_permissions") < platform.names().index("ban_member")
    record = store.security_events[-1]
    assert record.event_type == SecurityEventType.PERMISSION_ESCALATION
    assert record.severity == Severity.CRITICAL
    assert record.details["added_permissions"] == ["ADMINISTRATOR"]


@pytest.mark.asyncio
async def test_harmless_role_update_is_ignored(engine, platform):
    event = RoleUpdated(
        tenant_id=TENANT_ID,
        before=RoleSnapshot(id="r5", name="helpers"),
        after=RoleSnapshot(id="r5", name="helpers", permissions=["SEND_MESSAGES"]),
    )
    outcome = await send(engine, platform, event)
    assert outcome.skipped_reason == "benign"
    assert platform.called("fetch_audit_log") == []


@pytest.mark.asyncio
async def test_tenant_rename_is_punished_then_reverted(engine, platform):
    event = TenantUpdated(tenant_id=TENANT_ID, occurred_at=DAY, name_before="Cozy Place", name_after="HACKED")
    outcome = await send(engine, platform, event)

    assert outcome.punished and outcome.healed
    assert platform.called("set_tenant_name")[0][1] == "Cozy Place"
    assert platform.names().index("ban_member") < platform.names().index("set_tenant_name")


@pytest.mark.asyncio
async def test_vanity_change_is_punished_without_revert(engine, platform):
    event = TenantUpdated(
        tenant_id=TENANT_ID, occurred_at=DAY, name_before="Cozy", name_after="Cozy",
        vanity_before="cozy", vanity_after="scam",
    )
    outcome = await send(engine, platform, event)
    assert outcome.punished
    assert platform.called("set_tenant_name") == []


@pytest.mark.asyncio
async def test_dangerous_bot_is_removed_and_adder_punished(engine, platform, store):
    event = BotAdded(tenant_id=TENANT_ID, occurred_at=DAY, bot_id="evil-bot", permissions=["ADMINISTRATOR"])
    outcome = await send(engine, platform, event)

    assert outcome.punished and outcome.healed
    assert platform.called("kick_member")[0][1] == "evil-bot"
    assert platform.names().index("kick_member") < platform.names().index("ban_member")
    assert platform.called("ban_member")[0][1] == "nuker"
    assert store.security_events[-1].event_type == SecurityEventType.DANGEROUS_BOT_ADD


@pytest.mark.asyncio
async def test_harmless_bot_is_ignored(engine, platform):
    event = BotAdded(tenant_id=TENANT_ID, bot_id="music-bot", permissions=["SEND_MESSAGES"])
    outcome = await send(engine, platform, event)
    assert outcome.skipped_reason == "benign"


@pytest.mark.asyncio
async def test_raw_payloads_are_parsed(engine, platform):
    platform.audit[ActionKind.ROLE_DELETE] = [AuditEntry(actor_id="nuker", target_id="r9")]
    outcome = await engine.on_administrative_event({
        "kind": "role_delete",
        "tenant_id": TENANT_ID,
        "role": {"id": "r9", "name": "Moderators", "permissions": ["KICK_MEMBERS"]},
    })
    assert outcome.actor_id == "nuker"
    assert outcome.count == 1

    outcome = await engine.on_administrative_event({"kind": "role_delete", "tenant_id": TENANT_ID})
    assert outcome.skipped_reason == "malformed"


@pytest.mark.asyncio
async def test_audit_failures_do_not_stop_enforcement(platform, settings):
    class BrokenStore(InMemoryStore):
        async def record_security_event(self, event):
            raise PersistenceError("database unavailable")

    engine = ModerationEngine(platform, BrokenStore(), settings)
    outcomes = await nuke_channels(engine, platform)
    assert outcomes[-1].punished
