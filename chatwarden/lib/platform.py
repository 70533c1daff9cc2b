"""
Chat platform collaborator interface.
The engine calls these operations to attribute events and enforce decisions.
"""

from typing import List, Optional, Protocol

from chatwarden.models.enums import ActionKind
from chatwarden.models.events import AuditEntry, ChannelSnapshot, MemberSnapshot, RoleSnapshot


class PlatformError(Exception):
    """A platform call failed (missing privilege, unknown target, transport error)."""


class PlatformClient(Protocol):
    """
    Gateway/REST client for one chat platform.
    All methods may raise; the engine catches and logs every failure.
    """

    # Lookups
    async def fetch_audit_log(self, tenant_id: str, kind: ActionKind, limit: int = 1) -> List[AuditEntry]:
        ...

    async def fetch_owner_id(self, tenant_id: str) -> str:
        ...

    async def fetch_member(self, tenant_id: str, actor_id: str) -> Optional[MemberSnapshot]:
        ...

    async def list_text_channels(self, tenant_id: str) -> List[ChannelSnapshot]:
        ...

    # Member enforcement
    async def delete_message(self, tenant_id: str, channel_id: str, message_id: str) -> None:
        ...

    async def timeout_member(self, tenant_id: str, actor_id: str, seconds: int, reason: str) -> None:
        ...

    async def kick_member(self, tenant_id: str, actor_id: str, reason: str) -> None:
        ...

    async def ban_member(self, tenant_id: str, actor_id: str, reason: str) -> None:
        ...

    async def unban_member(self, tenant_id: str, actor_id: str, reason: str) -> None:
        ...

    async def remove_role(self, tenant_id: str, actor_id: str, role_id: str, reason: str) -> None:
        ...

    async def set_member_roles(self, tenant_id: str, actor_id: str, role_ids: List[str], reason: str) -> None:
        ...

    # Self-healing
    async def set_role_permissions(self, tenant_id: str, role_id: str, permissions: List[str], reason: str) -> None:
        ...

    async def recreate_channel(self, tenant_id: str, snapshot: ChannelSnapshot, reason: str) -> str:
        ...

    async def recreate_role(self, tenant_id: str, snapshot: RoleSnapshot, reason: str) -> str:
        ...

    async def delete_channel(self, tenant_id: str, channel_id: str, reason: str) -> None:
        ...

    async def delete_role(self, tenant_id: str, role_id: str, reason: str) -> None:
        ...

    async def delete_webhooks(self, tenant_id: str, channel_id: str, reason: str) -> int:
        ...

    async def set_tenant_name(self, tenant_id: str, name: str, reason: str) -> None:
        ...

    # Lockdown
    async def edit_channel_permission_overwrite(
        self, tenant_id: str, channel_id: str, send_messages: Optional[bool], reason: str
    ) -> None:
        """Set the default role's SEND_MESSAGES overwrite (None clears it)."""
        ...

    async def create_channel(self, tenant_id: str, name: str, topic: str, reason: str) -> str:
        ...

    # Notifications
    async def send_notice(self, tenant_id: str, channel_id: str, actor_id: str, text: str) -> None:
        ...

    async def notify_owner(self, tenant_id: str, text: str) -> None:
        ...
