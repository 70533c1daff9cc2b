"""
Enumeration definitions for the abuse detection engine.
Risk bands, moderation actions, administrative action kinds and punishments.
"""

from enum import Enum, IntEnum
from typing import Dict


class RiskLevel(str, Enum):
    """Risk band of a scored message."""
    SAFE = "SAFE"                 # 0-30
    SUSPICIOUS = "SUSPICIOUS"     # 31-65
    DANGEROUS = "DANGEROUS"       # 66-100


class ModerationAction(str, Enum):
    """Action recommended for (or applied to) a message author."""
    ALLOW = "ALLOW"
    REQUIRE_CHALLENGE = "CAPTCHA"     # Unverified actor must pass a challenge
    WARN = "WARN"
    DELETE = "DELETE"
    MUTE = "MUTE"
    KICK = "KICK"
    BAN = "BAN"


# Relative strength of each action, used by escalation monotonicity checks
ACTION_SEVERITY: Dict[ModerationAction, int] = {
    ModerationAction.ALLOW: 0,
    ModerationAction.REQUIRE_CHALLENGE: 1,
    ModerationAction.WARN: 1,
    ModerationAction.DELETE: 2,
    ModerationAction.MUTE: 3,
    ModerationAction.KICK: 4,
    ModerationAction.BAN: 5,
}


class DetectedCategory(str, Enum):
    """Categories attached to a decision."""
    SPAM = "SPAM"
    SCAM = "SCAM"
    HARASSMENT = "HARASSMENT"
    HATE_SPEECH = "HATE_SPEECH"
    NSFW = "NSFW"
    PHISHING = "PHISHING"
    RAID = "RAID"
    NEW_ACCOUNT = "NEW_ACCOUNT"
    IMMEDIATE_POST_JOIN = "IMMEDIATE_POST_JOIN"
    CONTAINS_LINKS = "CONTAINS_LINKS"
    REPEAT_OFFENDER = "REPEAT_OFFENDER"
    NEW_USER_UNVERIFIED = "NEW_USER_UNVERIFIED"
    OTHER = "OTHER"


class DecisionSource(str, Enum):
    """Which stage produced a decision."""
    OWNER_BYPASS = "owner_bypass"
    CHALLENGE_GATE = "challenge_gate"
    CLASSIFIER = "classifier"         # External LLM classifier
    FALLBACK = "fallback"             # Local deterministic scorer


class ActionKind(str, Enum):
    """Administrative action kinds observed by the abuse-rate detector."""
    CHANNEL_CREATE = "channel_create"
    CHANNEL_DELETE = "channel_delete"
    ROLE_CREATE = "role_create"
    ROLE_DELETE = "role_delete"
    MEMBER_BAN = "member_ban"
    MEMBER_KICK = "member_kick"
    WEBHOOK_CREATE = "webhook_create"
    MEMBER_PRUNE = "member_prune"
    ROLE_UPDATE = "role_update"       # Single-strike: permission escalation
    TENANT_UPDATE = "tenant_update"   # Single-strike: name / vanity change
    BOT_ADD = "bot_add"               # Single-strike: dangerous bot


# Kinds tracked by the sliding-window counter
RATE_LIMITED_KINDS = (
    ActionKind.CHANNEL_CREATE,
    ActionKind.CHANNEL_DELETE,
    ActionKind.ROLE_CREATE,
    ActionKind.ROLE_DELETE,
    ActionKind.MEMBER_BAN,
    ActionKind.MEMBER_KICK,
    ActionKind.WEBHOOK_CREATE,
    ActionKind.MEMBER_PRUNE,
)


class PunishmentKind(str, Enum):
    """Punishment applied to an actor who breaches an abuse-rate limit."""
    BAN = "BAN"
    KICK = "KICK"
    STRIP_ROLES = "STRIP_ROLES"


class SecurityEventType(str, Enum):
    """Audit categories for administrative abuse."""
    CHANNEL_DELETE = "CHANNEL_DELETE"
    CHANNEL_CREATE = "CHANNEL_CREATE"
    ROLE_DELETE = "ROLE_DELETE"
    ROLE_CREATE = "ROLE_CREATE"
    MASS_BAN = "MASS_BAN"
    MASS_KICK = "MASS_KICK"
    WEBHOOK_SPAM = "WEBHOOK_SPAM"
    MEMBER_PRUNE = "MEMBER_PRUNE"
    PERMISSION_ESCALATION = "PERMISSION_ESCALATION"
    GUILD_MODIFICATION = "GUILD_MODIFICATION"
    DANGEROUS_BOT_ADD = "DANGEROUS_BOT_ADD"


class Severity(IntEnum):
    """
    Severity of a warning or security event.
    Higher values = more severe.
    """
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class Permission(str, Enum):
    """Platform permissions the engine reasons about."""
    ADMINISTRATOR = "ADMINISTRATOR"
    MANAGE_GUILD = "MANAGE_GUILD"
    MANAGE_ROLES = "MANAGE_ROLES"
    MANAGE_CHANNELS = "MANAGE_CHANNELS"
    BAN_MEMBERS = "BAN_MEMBERS"
    KICK_MEMBERS = "KICK_MEMBERS"
    SEND_MESSAGES = "SEND_MESSAGES"


# Roles holding any of these are stripped from a punished actor
PRIVILEGED_PERMISSIONS = frozenset({
    Permission.ADMINISTRATOR,
    Permission.MANAGE_GUILD,
    Permission.MANAGE_ROLES,
})

# Gaining any of these on a role update is a permission escalation
ESCALATION_PERMISSIONS = frozenset({
    Permission.ADMINISTRATOR,
    Permission.MANAGE_GUILD,
    Permission.MANAGE_ROLES,
    Permission.MANAGE_CHANNELS,
    Permission.BAN_MEMBERS,
    Permission.KICK_MEMBERS,
})

# A newly added bot holding any of these is dangerous
DANGEROUS_BOT_PERMISSIONS = frozenset({
    Permission.ADMINISTRATOR,
    Permission.MANAGE_GUILD,
    Permission.MANAGE_ROLES,
    Permission.BAN_MEMBERS,
    Permission.KICK_MEMBERS,
})
