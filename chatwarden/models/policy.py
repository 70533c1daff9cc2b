"""
Per-tenant abuse-rate policy.
Standard limits, punishment settings and the night-mode sub-policy.
"""

from typing import Dict, List
from pydantic import BaseModel, Field, field_validator

from chatwarden.models.enums import ActionKind, PunishmentKind, RATE_LIMITED_KINDS


DEFAULT_LIMITS: Dict[ActionKind, int] = {
    ActionKind.CHANNEL_DELETE: 3,
    ActionKind.CHANNEL_CREATE: 5,
    ActionKind.ROLE_DELETE: 3,
    ActionKind.ROLE_CREATE: 5,
    ActionKind.MEMBER_BAN: 3,
    ActionKind.MEMBER_KICK: 5,
    ActionKind.WEBHOOK_CREATE: 3,
    ActionKind.MEMBER_PRUNE: 10,
}

DEFAULT_NIGHT_LIMITS: Dict[ActionKind, int] = {
    ActionKind.CHANNEL_DELETE: 1,
    ActionKind.CHANNEL_CREATE: 2,
    ActionKind.ROLE_DELETE: 1,
    ActionKind.ROLE_CREATE: 2,
    ActionKind.MEMBER_BAN: 1,
    ActionKind.MEMBER_KICK: 2,
    ActionKind.WEBHOOK_CREATE: 1,
}


def _check_limits(value: Dict[ActionKind, int]) -> Dict[ActionKind, int]:
    for kind, limit in value.items():
        if kind not in RATE_LIMITED_KINDS:
            raise ValueError(f"{kind.value} is not a rate-limited action kind")
        if limit < 1:
            raise ValueError(f"limit for {kind.value} must be >= 1, got {limit}")
    return value


class NightModePolicy(BaseModel):
    """Stricter limits during a local-time interval."""
    enabled: bool = False
    start_hour: int = Field(ge=0, le=23, default=23)
    end_hour: int = Field(ge=0, le=23, default=7)
    timezone: str = "UTC"
    stricter_limits: bool = True
    auto_lock: bool = True
    limits: Dict[ActionKind, int] = Field(default_factory=lambda: dict(DEFAULT_NIGHT_LIMITS))

    @field_validator('limits')
    @classmethod
    def validate_limits(cls, v: Dict[ActionKind, int]) -> Dict[ActionKind, int]:
        return _check_limits(v)


class TenantPolicy(BaseModel):
    """
    Abuse-rate configuration for one tenant.
    Loaded lazily, cached for the process lifetime, replaced on update.
    """
    enabled: bool = True
    limits: Dict[ActionKind, int] = Field(default_factory=lambda: dict(DEFAULT_LIMITS))
    window_seconds: float = Field(gt=0, default=10.0)
    punishment: PunishmentKind = PunishmentKind.BAN
    notify_owner: bool = True
    lockdown_on_trigger: bool = True
    allow_list: List[str] = Field(default_factory=list)
    night_mode: NightModePolicy = Field(default_factory=NightModePolicy)

    @field_validator('limits')
    @classmethod
    def validate_limits(cls, v: Dict[ActionKind, int]) -> Dict[ActionKind, int]:
        # Partial dicts are filled from defaults so every kind has a limit
        merged = dict(DEFAULT_LIMITS)
        merged.update(_check_limits(v))
        return merged

    def limit_for(self, kind: ActionKind) -> int:
        """Standard (daytime) limit for an action kind."""
        return self.limits[kind]
