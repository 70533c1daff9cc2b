from datetime import datetime, timezone

import pytest

from chatwarden.models.enums import ActionKind
from chatwarden.models.policy import NightModePolicy, TenantPolicy
from chatwarden.services.threshold_policy import effective_limit, in_night_interval, is_night_mode, local_hour


def night_policy(**night) -> TenantPolicy:
    return TenantPolicy(night_mode=NightModePolicy(enabled=True, **night))


@pytest.mark.parametrize(
    "hour,expected",
    [(22, False), (23, True), (0, True), (3, True), (6, True), (7, False), (12, False)],
)
def test_wrapping_interval(hour, expected):
    assert in_night_interval(hour, 23, 7) is expected


@pytest.mark.parametrize("hour,expected", [(0, True), (5, True), (6, False), (23, False)])
def test_interval_starting_at_midnight(hour, expected):
    assert in_night_interval(hour, 0, 6) is expected


@pytest.mark.parametrize("hour,expected", [(0, False), (1, True), (3, True), (5, False), (12, False)])
def test_same_day_interval(hour, expected):
    assert in_night_interval(hour, 1, 5) is expected


def test_disabled_night_mode_is_never_active():
    policy = TenantPolicy()
    assert not is_night_mode(policy, datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc))


def test_night_mode_uses_tenant_timezone():
    policy = night_policy(timezone="America/New_York")
    # 04:00 UTC is 23:00 in New York
    assert is_night_mode(policy, datetime(2024, 1, 15, 4, 0, tzinfo=timezone.utc))
    # 16:00 UTC is 11:00 in New York
    assert not is_night_mode(policy, datetime(2024, 1, 15, 16, 0, tzinfo=timezone.utc))


def test_unknown_timezone_is_treated_as_day():
    policy = night_policy(timezone="Mars/Olympus_Mons")
    assert not is_night_mode(policy, datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc))


def test_naive_datetime_is_utc():
    assert local_hour(datetime(2024, 1, 15, 2, 30), "UTC") == 2


def test_effective_limit_day_and_night():
    policy = night_policy()
    night = datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)
    day = datetime(2024, 1, 15, 14, 0, tzinfo=timezone.utc)

    assert effective_limit(policy, ActionKind.CHANNEL_DELETE, night) == 1
    assert effective_limit(policy, ActionKind.CHANNEL_DELETE, day) == 3
    assert effective_limit(policy, ActionKind.MEMBER_KICK, night) == 2


def test_kind_without_night_limit_keeps_standard_limit():
    policy = night_policy()
    night = datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)
    assert effective_limit(policy, ActionKind.MEMBER_PRUNE, night) == 10


def test_stricter_limits_can_be_switched_off():
    policy = night_policy(stricter_limits=False)
    night = datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)
    assert is_night_mode(policy, night)
    assert effective_limit(policy, ActionKind.CHANNEL_DELETE, night) == 3
