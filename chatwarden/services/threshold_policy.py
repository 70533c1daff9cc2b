"""
Threshold policy.
Resolves the limit in force for an action kind, honoring night mode.
"""

import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from chatwarden.models.enums import ActionKind
from chatwarden.models.policy import TenantPolicy

logger = logging.getLogger(__name__)


def local_hour(now: datetime, tz_name: str) -> int:
    """Hour of `now` in the named timezone. Naive datetimes are taken as UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name)).hour


def in_night_interval(hour: int, start_hour: int, end_hour: int) -> bool:
    """Whether `hour` falls in [start, end), wrapping midnight when start > end."""
    if start_hour > end_hour:
        return hour >= start_hour or hour < end_hour
    return start_hour <= hour < end_hour


def is_night_mode(policy: TenantPolicy, now: datetime) -> bool:
    """Whether the tenant's night mode is active at `now`."""
    night = policy.night_mode
    if not night.enabled:
        return False
    try:
        hour = local_hour(now, night.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning(f"Night mode timezone '{night.timezone}' could not be resolved, treating as day: {e}")
        return False
    return in_night_interval(hour, night.start_hour, night.end_hour)


def effective_limit(policy: TenantPolicy, kind: ActionKind, now: datetime) -> int:
    """Limit in force for `kind` at `now`."""
    standard = policy.limit_for(kind)
    if not policy.night_mode.stricter_limits or not is_night_mode(policy, now):
        return standard
    return policy.night_mode.limits.get(kind, standard)
