"""
Enforcement Service.
Executes decisions against the platform with ordered fallback tiers and
writes audit records without letting persistence failures escape.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Dict, List, Optional

from chatwarden.lib.config import EngineSettings
from chatwarden.lib.database import ModerationStore
from chatwarden.lib.metrics import metrics
from chatwarden.lib.platform import PlatformClient
from chatwarden.models.content import MessageContext, ModerationDecision, ModerationRecord, SecurityEvent
from chatwarden.models.enums import ModerationAction, PunishmentKind, PRIVILEGED_PERMISSIONS, ACTION_SEVERITY
from chatwarden.models.user import WarningRecord

logger = logging.getLogger(__name__)


@dataclass
class MessageEnforcement:
    """Which tier actually applied for a message decision."""
    requested: ModerationAction
    applied: Optional[ModerationAction]
    attempted: List[ModerationAction] = field(default_factory=list)


@dataclass
class PunishmentResult:
    """Outcome of punishing an administrative abuser."""
    applied: Optional[str] = None              # tier name that succeeded
    attempted: List[str] = field(default_factory=list)
    stripped_roles: List[str] = field(default_factory=list)
    aborted_reason: Optional[str] = None


class Enforcer:
    """
    Applies moderation actions through the platform collaborator.
    Every platform failure is logged; the next-weaker tier is tried where one exists.
    """

    # Requested action -> tiers tried in order
    MESSAGE_TIERS: Dict[ModerationAction, List[ModerationAction]] = {
        ModerationAction.ALLOW: [],
        ModerationAction.WARN: [ModerationAction.WARN],
        ModerationAction.REQUIRE_CHALLENGE: [ModerationAction.REQUIRE_CHALLENGE, ModerationAction.DELETE],
        ModerationAction.DELETE: [ModerationAction.DELETE],
        ModerationAction.MUTE: [ModerationAction.MUTE, ModerationAction.DELETE],
        ModerationAction.KICK: [ModerationAction.KICK, ModerationAction.MUTE, ModerationAction.DELETE],
        ModerationAction.BAN: [
            ModerationAction.BAN, ModerationAction.KICK, ModerationAction.MUTE, ModerationAction.DELETE,
        ],
    }

    PUNISHMENT_TIERS: Dict[PunishmentKind, List[str]] = {
        PunishmentKind.BAN: ["ban", "kick", "mute"],
        PunishmentKind.KICK: ["kick", "mute"],
        PunishmentKind.STRIP_ROLES: ["strip_roles"],
    }

    NOTICES = {
        ModerationAction.WARN: "Warning: your message was flagged by moderation. Reason: {reason}",
        ModerationAction.DELETE: "Your message was removed. Reason: {reason}",
        ModerationAction.MUTE: "You have been muted for {minutes} minutes. Reason: {reason}",
        ModerationAction.REQUIRE_CHALLENGE: (
            "Please complete verification before posting. "
            "You can post again after verifying (timeout: {challenge_minutes} minutes)."
        ),
    }

    def __init__(self, platform: PlatformClient, store: ModerationStore, settings: EngineSettings):
        self.platform = platform
        self.store = store
        self.settings = settings

    async def _attempt(self, tier: str, call: Awaitable) -> bool:
        try:
            await call
            return True
        except Exception as e:
            logger.error(f"Enforcement tier '{tier}' failed: {e}")
            metrics.record_enforcement_failure(tier)
            return False

    # Message path

    async def enforce_message(
        self,
        context: MessageContext,
        decision: ModerationDecision,
        tenant_owner_id: Optional[str] = None,
    ) -> MessageEnforcement:
        """Apply a message decision, falling back to weaker tiers on failure."""
        requested = decision.recommended_action
        result = MessageEnforcement(requested=requested, applied=None)

        if requested == ModerationAction.ALLOW:
            result.applied = ModerationAction.ALLOW
            return result

        if tenant_owner_id and context.actor_id == tenant_owner_id \
                and ACTION_SEVERITY[requested] >= ACTION_SEVERITY[ModerationAction.MUTE]:
            logger.warning(
                f"Refusing to {requested.value} tenant owner {context.actor_id} in {context.tenant_id}"
            )
            return result

        state = {'message_deleted': False}
        for tier in self.MESSAGE_TIERS[requested]:
            result.attempted.append(tier)
            if await self._apply_message_tier(tier, context, decision, state):
                result.applied = tier
                break

        if result.applied is None:
            logger.error(
                f"All enforcement tiers failed for {requested.value} on {context.actor_id} in {context.tenant_id}"
            )
        elif result.applied != requested:
            logger.warning(
                f"Enforcement for {context.actor_id} degraded from {requested.value} to {result.applied.value}"
            )
        return result

    async def _delete_once(self, context: MessageContext, state: Dict[str, bool]) -> bool:
        if state['message_deleted']:
            return True
        ok = await self._attempt(
            'delete',
            self.platform.delete_message(context.tenant_id, context.channel_id, context.message_id),
        )
        state['message_deleted'] = ok
        return ok

    async def _notice(self, context: MessageContext, action: ModerationAction, decision: ModerationDecision):
        text = self.NOTICES[action].format(
            reason=decision.reasoning,
            minutes=self.settings.mute_seconds // 60,
            challenge_minutes=self.settings.challenge_timeout_seconds // 60,
        )
        await self._attempt(
            'notice',
            self.platform.send_notice(context.tenant_id, context.channel_id, context.actor_id, text),
        )

    async def _apply_message_tier(
        self,
        tier: ModerationAction,
        context: MessageContext,
        decision: ModerationDecision,
        state: Dict[str, bool],
    ) -> bool:
        tenant_id, actor_id = context.tenant_id, context.actor_id
        reason = decision.reasoning

        if tier == ModerationAction.WARN:
            return await self._attempt(
                'warn',
                self.platform.send_notice(
                    tenant_id, context.channel_id, actor_id,
                    self.NOTICES[ModerationAction.WARN].format(reason=reason),
                ),
            )

        if tier == ModerationAction.DELETE:
            if await self._delete_once(context, state):
                await self._notice(context, ModerationAction.DELETE, decision)
                return True
            return False

        if tier == ModerationAction.REQUIRE_CHALLENGE:
            await self._delete_once(context, state)
            ok = await self._attempt(
                'challenge',
                self.platform.timeout_member(
                    tenant_id, actor_id, self.settings.challenge_timeout_seconds, 'CAPTCHA verification required',
                ),
            )
            if ok:
                await self._notice(context, ModerationAction.REQUIRE_CHALLENGE, decision)
            return ok

        if tier == ModerationAction.MUTE:
            await self._delete_once(context, state)
            ok = await self._attempt(
                'mute',
                self.platform.timeout_member(tenant_id, actor_id, self.settings.mute_seconds, reason),
            )
            if ok:
                await self._notice(context, ModerationAction.MUTE, decision)
            return ok

        if tier == ModerationAction.KICK:
            await self._delete_once(context, state)
            return await self._attempt('kick', self.platform.kick_member(tenant_id, actor_id, reason))

        if tier == ModerationAction.BAN:
            await self._delete_once(context, state)
            return await self._attempt('ban', self.platform.ban_member(tenant_id, actor_id, reason))

        raise ValueError(f"No enforcement tier for {tier.value}")

    # Administrative path

    async def punish(
        self,
        tenant_id: str,
        actor_id: str,
        kind: PunishmentKind,
        reason: str,
        tenant_owner_id: Optional[str],
    ) -> PunishmentResult:
        """Strip privileged roles, then apply exactly one punishment."""
        result = PunishmentResult()

        # Step 1: Owner protection
        if tenant_owner_id is None:
            result.aborted_reason = "tenant owner unknown"
            logger.error(f"Punishment of {actor_id} in {tenant_id} aborted: tenant owner could not be resolved")
            return result
        if actor_id == tenant_owner_id:
            result.aborted_reason = "actor is tenant owner"
            logger.warning(f"Punishment of tenant owner {actor_id} in {tenant_id} aborted")
            return result

        # Step 2: Strip administrative-privilege roles
        result.stripped_roles = await self.strip_privileged_roles(tenant_id, actor_id, reason)

        # Step 3: Exactly one punishment, weaker tiers on failure
        for tier in self.PUNISHMENT_TIERS[kind]:
            result.attempted.append(tier)
            if tier == "ban":
                call = self.platform.ban_member(tenant_id, actor_id, reason)
            elif tier == "kick":
                call = self.platform.kick_member(tenant_id, actor_id, reason)
            elif tier == "mute":
                call = self.platform.timeout_member(tenant_id, actor_id, self.settings.mute_seconds, reason)
            else:
                call = self.platform.set_member_roles(tenant_id, actor_id, [], reason)
            if await self._attempt(tier, call):
                result.applied = tier
                break

        if result.applied:
            logger.info(f"Punished {actor_id} in {tenant_id} with {result.applied}")
        else:
            logger.error(f"Every punishment tier failed for {actor_id} in {tenant_id}")
        return result

    async def strip_privileged_roles(self, tenant_id: str, actor_id: str, reason: str) -> List[str]:
        """Remove roles granting administrative privileges. Returns removed role ids."""
        try:
            member = await self.platform.fetch_member(tenant_id, actor_id)
        except Exception as e:
            logger.error(f"Could not fetch member {actor_id} in {tenant_id} for role strip: {e}")
            return []
        if member is None:
            return []

        privileged = {p.value for p in PRIVILEGED_PERMISSIONS}
        removed = []
        for role in member.roles:
            if privileged.intersection(role.permissions):
                if await self._attempt('strip_role', self.platform.remove_role(tenant_id, actor_id, role.id, reason)):
                    removed.append(role.id)
        return removed

    # Audit

    async def record_decision(self, record: ModerationRecord):
        try:
            await self.store.record_moderation_decision(record)
        except Exception as e:
            logger.error(f"Failed to persist moderation decision for message {record.message_id}: {e}")
            metrics.record_persistence_failure('record_moderation_decision')

    async def record_security_event(self, event: SecurityEvent):
        try:
            await self.store.record_security_event(event)
        except Exception as e:
            logger.error(f"Failed to persist security event {event.event_type.value} for {event.actor_id}: {e}")
            metrics.record_persistence_failure('record_security_event')

    async def add_warning(self, warning: WarningRecord) -> Optional[int]:
        try:
            return await self.store.add_warning(warning)
        except Exception as e:
            logger.error(f"Failed to persist warning for {warning.actor_id} in {warning.tenant_id}: {e}")
            metrics.record_persistence_failure('add_warning')
            return None

    async def notify_owner(self, tenant_id: str, text: str) -> bool:
        return await self._attempt('notify_owner', self.platform.notify_owner(tenant_id, text))
