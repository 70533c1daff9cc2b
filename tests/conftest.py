from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from chatwarden.lib.config import EngineSettings
from chatwarden.lib.database import InMemoryStore
from chatwarden.lib.platform import PlatformError
from chatwarden.models.content import ClassifierVerdict, MessageContext
from chatwarden.models.enums import ActionKind
from chatwarden.models.events import AuditEntry, ChannelSnapshot, MemberSnapshot, RoleSnapshot
from chatwarden.services.moderation_service import ModerationEngine


OWNER_ID = "tenant-owner"
BOT_OWNER_ID = "bot-owner"
TENANT_ID = "t1"


class FakePlatform:
    """Records every call; methods listed in `failing` raise PlatformError."""

    def __init__(self) -> None:
        self.calls: List[Tuple[Any, ...]] = []
        self.failing: Set[str] = set()
        self.owner_id: Optional[str] = OWNER_ID
        self.audit: Dict[ActionKind, List[AuditEntry]] = {}
        self.members: Dict[str, MemberSnapshot] = {}
        self.channels: Dict[str, List[ChannelSnapshot]] = {}
        self._created = 0

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.failing:
            raise PlatformError(f"{name} failed")

    def called(self, name: str) -> List[Tuple[Any, ...]]:
        return [c[1:] for c in self.calls if c[0] == name]

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]

    # Lookups
    async def fetch_audit_log(self, tenant_id: str, kind: ActionKind, limit: int = 1) -> List[AuditEntry]:
        self._call("fetch_audit_log", tenant_id, kind)
        return list(self.audit.get(kind, []))[:limit]

    async def fetch_owner_id(self, tenant_id: str) -> Optional[str]:
        self._call("fetch_owner_id", tenant_id)
        return self.owner_id

    async def fetch_member(self, tenant_id: str, actor_id: str) -> Optional[MemberSnapshot]:
        self._call("fetch_member", tenant_id, actor_id)
        return self.members.get(actor_id)

    async def list_text_channels(self, tenant_id: str) -> List[ChannelSnapshot]:
        self._call("list_text_channels", tenant_id)
        return list(self.channels.get(tenant_id, []))

    # Member enforcement
    async def delete_message(self, tenant_id: str, channel_id: str, message_id: str) -> None:
        self._call("delete_message", tenant_id, channel_id, message_id)

    async def timeout_member(self, tenant_id: str, actor_id: str, seconds: int, reason: str) -> None:
        self._call("timeout_member", tenant_id, actor_id, seconds, reason)

    async def kick_member(self, tenant_id: str, actor_id: str, reason: str) -> None:
        self._call("kick_member", tenant_id, actor_id, reason)

    async def ban_member(self, tenant_id: str, actor_id: str, reason: str) -> None:
        self._call("ban_member", tenant_id, actor_id, reason)

    async def unban_member(self, tenant_id: str, actor_id: str, reason: str) -> None:
        self._call("unban_member", tenant_id, actor_id, reason)

    async def remove_role(self, tenant_id: str, actor_id: str, role_id: str, reason: str) -> None:
        self._call("remove_role", tenant_id, actor_id, role_id, reason)

    async def set_member_roles(self, tenant_id: str, actor_id: str, role_ids: List[str], reason: str) -> None:
        self._call("set_member_roles", tenant_id, actor_id, list(role_ids), reason)

    # Self-healing
    async def set_role_permissions(self, tenant_id: str, role_id: str, permissions: List[str], reason: str) -> None:
        self._call("set_role_permissions", tenant_id, role_id, list(permissions), reason)

    async def recreate_channel(self, tenant_id: str, snapshot: ChannelSnapshot, reason: str) -> str:
        self._call("recreate_channel", tenant_id, snapshot, reason)
        return f"{snapshot.id}-restored"

    async def recreate_role(self, tenant_id: str, snapshot: RoleSnapshot, reason: str) -> str:
        self._call("recreate_role", tenant_id, snapshot, reason)
        return f"{snapshot.id}-restored"

    async def delete_channel(self, tenant_id: str, channel_id: str, reason: str) -> None:
        self._call("delete_channel", tenant_id, channel_id, reason)

    async def delete_role(self, tenant_id: str, role_id: str, reason: str) -> None:
        self._call("delete_role", tenant_id, role_id, reason)

    async def delete_webhooks(self, tenant_id: str, channel_id: str, reason: str) -> int:
        self._call("delete_webhooks", tenant_id, channel_id, reason)
        return 1

    async def set_tenant_name(self, tenant_id: str, name: str, reason: str) -> None:
        self._call("set_tenant_name", tenant_id, name, reason)

    # Lockdown
    async def edit_channel_permission_overwrite(
        self, tenant_id: str, channel_id: str, send_messages: Optional[bool], reason: str
    ) -> None:
        self._call("edit_channel_permission_overwrite", tenant_id, channel_id, send_messages, reason)

    async def create_channel(self, tenant_id: str, name: str, topic: str, reason: str) -> str:
        self._call("create_channel", tenant_id, name, topic, reason)
        self._created += 1
        return f"created-{self._created}"

    # Notifications
    async def send_notice(self, tenant_id: str, channel_id: str, actor_id: str, text: str) -> None:
        self._call("send_notice", tenant_id, channel_id, actor_id, text)

    async def notify_owner(self, tenant_id: str, text: str) -> None:
        self._call("notify_owner", tenant_id, text)


class StubClassifier:
    """Stands in for ClassifierClient; returns a fixed verdict or raises."""

    def __init__(
        self,
        verdict: Optional[ClassifierVerdict] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.verdict = verdict
        self.error = error
        self.delay = delay
        self.inputs: List[Any] = []
        self.closed = False

    async def classify(self, data: Any) -> ClassifierVerdict:
        self.inputs.append(data)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.verdict

    async def close(self) -> None:
        self.closed = True


def verdict(score: int, action: str, level: str = "SUSPICIOUS", categories: Optional[List[str]] = None) -> ClassifierVerdict:
    return ClassifierVerdict(
        risk_score=score,
        risk_level=level,
        recommended_action=action,
        detected_categories=categories or [],
        reasoning=f"stub verdict {action}",
    )


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(owner_id=BOT_OWNER_ID)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def engine(platform: FakePlatform, store: InMemoryStore, settings: EngineSettings) -> ModerationEngine:
    return ModerationEngine(platform, store, settings)


@pytest.fixture
def make_message():
    """Factory for chat messages from an established member by default."""
    counter = {"n": 0}

    def factory(
        content: str = "hello there",
        actor_id: str = "u1",
        tenant_id: str = TENANT_ID,
        account_days: int = 30,
        joined_minutes: Optional[int] = 120,
        **overrides: Any,
    ) -> MessageContext:
        counter["n"] += 1
        now = datetime.now(timezone.utc)
        return MessageContext(
            tenant_id=tenant_id,
            channel_id="general",
            message_id=f"m{counter['n']}",
            actor_id=actor_id,
            content=content,
            account_created_at=now - timedelta(days=account_days),
            joined_at=None if joined_minutes is None else now - timedelta(minutes=joined_minutes),
            received_at=now,
            **overrides,
        )

    return factory
