"""
Administrative event models.
One discriminated union covers every action kind the detector observes.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from pydantic import BaseModel, Field, TypeAdapter

from chatwarden.models.content import utcnow
from chatwarden.models.enums import ActionKind


class PermissionOverwrite(BaseModel):
    """Channel-level allow/deny bitfields for one role or member."""
    target_id: str
    target_type: Literal["role", "member"] = "role"
    allow: int = 0
    deny: int = 0


class ChannelSnapshot(BaseModel):
    """Enough of a channel to recreate it."""
    id: str
    name: str
    type: str = "text"
    position: int = 0
    parent_id: Optional[str] = None
    topic: Optional[str] = None
    nsfw: bool = False
    permission_overwrites: List[PermissionOverwrite] = Field(default_factory=list)
    default_send_messages: Optional[bool] = None  # @everyone SEND_MESSAGES overwrite, None = inherit


class RoleSnapshot(BaseModel):
    """Enough of a role to recreate it."""
    id: str
    name: str
    permissions: List[str] = Field(default_factory=list)
    color: int = 0
    hoist: bool = False
    mentionable: bool = False
    position: int = 0


class MemberSnapshot(BaseModel):
    """A tenant member and the roles it holds."""
    actor_id: str
    roles: List[RoleSnapshot] = Field(default_factory=list)
    is_bot: bool = False


class AuditEntry(BaseModel):
    """Most recent audit-log entry for an action kind."""
    actor_id: Optional[str] = None
    target_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class _EventBase(BaseModel):
    tenant_id: str
    occurred_at: datetime = Field(default_factory=utcnow)

    @property
    def target_id(self) -> Optional[str]:
        return None


class ChannelCreated(_EventBase):
    kind: Literal[ActionKind.CHANNEL_CREATE] = ActionKind.CHANNEL_CREATE
    channel: ChannelSnapshot

    @property
    def target_id(self) -> Optional[str]:
        return self.channel.id


class ChannelDeleted(_EventBase):
    kind: Literal[ActionKind.CHANNEL_DELETE] = ActionKind.CHANNEL_DELETE
    channel: ChannelSnapshot

    @property
    def target_id(self) -> Optional[str]:
        return self.channel.id


class RoleCreated(_EventBase):
    kind: Literal[ActionKind.ROLE_CREATE] = ActionKind.ROLE_CREATE
    role: RoleSnapshot

    @property
    def target_id(self) -> Optional[str]:
        return self.role.id


class RoleDeleted(_EventBase):
    kind: Literal[ActionKind.ROLE_DELETE] = ActionKind.ROLE_DELETE
    role: RoleSnapshot

    @property
    def target_id(self) -> Optional[str]:
        return self.role.id


class MemberBanned(_EventBase):
    kind: Literal[ActionKind.MEMBER_BAN] = ActionKind.MEMBER_BAN
    member_id: str

    @property
    def target_id(self) -> Optional[str]:
        return self.member_id


class MemberKicked(_EventBase):
    """A member left; only counts when the audit log shows a kick of this member."""
    kind: Literal[ActionKind.MEMBER_KICK] = ActionKind.MEMBER_KICK
    member_id: str

    @property
    def target_id(self) -> Optional[str]:
        return self.member_id


class WebhookCreated(_EventBase):
    kind: Literal[ActionKind.WEBHOOK_CREATE] = ActionKind.WEBHOOK_CREATE
    channel_id: str
    webhook_id: Optional[str] = None


class MembersPruned(_EventBase):
    kind: Literal[ActionKind.MEMBER_PRUNE] = ActionKind.MEMBER_PRUNE
    removed_count: int = 0


class RoleUpdated(_EventBase):
    kind: Literal[ActionKind.ROLE_UPDATE] = ActionKind.ROLE_UPDATE
    before: RoleSnapshot
    after: RoleSnapshot

    @property
    def target_id(self) -> Optional[str]:
        return self.after.id

    @property
    def gained_permissions(self) -> List[str]:
        return [p for p in self.after.permissions if p not in self.before.permissions]


class TenantUpdated(_EventBase):
    kind: Literal[ActionKind.TENANT_UPDATE] = ActionKind.TENANT_UPDATE
    name_before: str
    name_after: str
    vanity_before: Optional[str] = None
    vanity_after: Optional[str] = None

    @property
    def target_id(self) -> Optional[str]:
        return self.tenant_id


class BotAdded(_EventBase):
    kind: Literal[ActionKind.BOT_ADD] = ActionKind.BOT_ADD
    bot_id: str
    permissions: List[str] = Field(default_factory=list)

    @property
    def target_id(self) -> Optional[str]:
        return self.bot_id


AdministrativeEvent = Annotated[
    Union[
        ChannelCreated, ChannelDeleted, RoleCreated, RoleDeleted,
        MemberBanned, MemberKicked, WebhookCreated, MembersPruned,
        RoleUpdated, TenantUpdated, BotAdded,
    ],
    Field(discriminator="kind"),
]

_event_adapter = TypeAdapter(AdministrativeEvent)


def parse_administrative_event(payload: Dict[str, Any]):
    """Validate a raw event payload into its AdministrativeEvent variant."""
    return _event_adapter.validate_python(payload)
