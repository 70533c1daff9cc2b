"""
Message, decision and enforcement data models.
Pydantic models for type safety and validation.
"""

import re
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator
from uuid import UUID, uuid4

from chatwarden.models.enums import (
    RiskLevel, ModerationAction, DecisionSource,
    ActionKind, SecurityEventType, Severity
)


LINK_PATTERN = re.compile(
    r'(https?://[^\s]+)|(www\.[^\s]+)|(\b[a-z0-9-]+\.(com|net|org|io|gg|xyz|co|me|tv|bot|dev|app|ly)\b)',
    re.IGNORECASE,
)

IMAGE_EXTENSIONS = frozenset({'png', 'jpg', 'jpeg', 'gif', 'webp', 'bmp', 'svg'})

# Membership age reported when the join time is unknown
UNKNOWN_MEMBERSHIP_MINUTES = 999


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Attachment(BaseModel):
    """File attached to a chat message."""
    filename: str
    url: Optional[str] = None
    size: int = 0

    @property
    def is_image(self) -> bool:
        _, _, ext = self.filename.rpartition('.')
        return ext.lower() in IMAGE_EXTENSIONS


class MessageContext(BaseModel):
    """
    A chat message as delivered by the platform gateway.
    Input to ModerationEngine.on_message.
    """
    tenant_id: str
    channel_id: str
    message_id: str
    actor_id: str
    content: str = ""

    # Actor context known to the gateway
    account_created_at: datetime
    joined_at: Optional[datetime] = None
    attachments: List[Attachment] = Field(default_factory=list)
    is_bot: bool = False

    received_at: datetime = Field(default_factory=utcnow)

    @property
    def has_links(self) -> bool:
        return bool(LINK_PATTERN.search(self.content))

    @property
    def has_images(self) -> bool:
        return any(a.is_image for a in self.attachments)

    @property
    def account_age_days(self) -> int:
        """Whole days since the account was created."""
        delta = as_utc(self.received_at) - as_utc(self.account_created_at)
        return max(0, delta.days)

    @property
    def membership_age_minutes(self) -> int:
        """Whole minutes since the actor joined the tenant (999 when unknown)."""
        if self.joined_at is None:
            return UNKNOWN_MEMBERSHIP_MINUTES
        delta = as_utc(self.received_at) - as_utc(self.joined_at)
        return max(0, int(delta.total_seconds() // 60))


class ModerationInput(BaseModel):
    """
    Everything the Content Risk Engine needs to score one message.
    Built from MessageContext plus escalation state.
    """
    actor_id: str
    content: str
    message_history: List[str] = Field(default_factory=list)  # e.g. "[42 chars]"
    account_age_days: int = Field(ge=0)
    membership_age_minutes: int = Field(ge=0)
    has_attachments: bool = False
    has_links: bool = False
    has_images: bool = False
    open_warnings: int = Field(ge=0, default=0)
    verified: bool = False


class ClassifierVerdict(BaseModel):
    """Validated shape of the external classifier's JSON response."""
    risk_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    detected_categories: List[str] = Field(default_factory=list)
    recommended_action: ModerationAction
    reasoning: str

    @field_validator('recommended_action')
    @classmethod
    def reject_challenge(cls, v: ModerationAction) -> ModerationAction:
        # Challenges are issued by the gate, never by the classifier
        if v == ModerationAction.REQUIRE_CHALLENGE:
            raise ValueError("classifier may not recommend a challenge")
        return v


class ModerationDecision(BaseModel):
    """
    Output of either engine.
    Frozen once produced; later stages derive new copies.
    """
    model_config = ConfigDict(frozen=True)

    risk_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    recommended_action: ModerationAction
    reasoning: str
    detected_categories: List[str] = Field(default_factory=list)
    source: DecisionSource


class EnforcementOutcome(BaseModel):
    """What the engine did about one event, returned to the host."""
    tenant_id: str
    actor_id: Optional[str] = None
    decision: Optional[ModerationDecision] = None

    # Message path
    requested_action: Optional[ModerationAction] = None
    applied_action: Optional[ModerationAction] = None
    tiers_attempted: List[ModerationAction] = Field(default_factory=list)

    # Administrative path
    action_kind: Optional[ActionKind] = None
    count: int = 0
    limit: Optional[int] = None
    night_mode: bool = False
    escalated: bool = False
    punished: bool = False
    healed: bool = False
    lockdown: bool = False

    skipped_reason: Optional[str] = None  # e.g. unattributed, owner, allow-listed


class SecurityEvent(BaseModel):
    """
    Audit record written by the abuse-rate detector.
    One per observed administrative action, escalated or not.
    """
    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    actor_id: str
    event_type: SecurityEventType
    severity: Severity
    action_kind: ActionKind
    count: int = 0
    limit: Optional[int] = None
    night_mode: bool = False
    escalated: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class ModerationRecord(BaseModel):
    """Audit record of a message decision, persisted verbatim."""
    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    channel_id: str
    message_id: str
    actor_id: str
    content: str
    decision: ModerationDecision
    applied_action: Optional[ModerationAction] = None
    created_at: datetime = Field(default_factory=utcnow)
