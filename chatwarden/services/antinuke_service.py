"""
Abuse-Rate Detector ("anti-nuke").
Attributes administrative actions via the audit log, counts them per actor in a
sliding window, punishes on breach, reverses the damage and can lock the tenant.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from chatwarden.lib.config import EngineSettings
from chatwarden.lib.database import ModerationStore
from chatwarden.lib.metrics import metrics
from chatwarden.lib.platform import PlatformClient
from chatwarden.models.content import EnforcementOutcome, SecurityEvent, as_utc
from chatwarden.models.enums import (
    ActionKind, SecurityEventType, Severity,
    ESCALATION_PERMISSIONS, DANGEROUS_BOT_PERMISSIONS
)
from chatwarden.models.events import (
    AuditEntry, BotAdded, ChannelCreated, ChannelDeleted, MemberBanned,
    RoleCreated, RoleDeleted, RoleUpdated, TenantUpdated, WebhookCreated
)
from chatwarden.models.policy import TenantPolicy
from chatwarden.models.user import WarningRecord
from chatwarden.services.enforcement_service import Enforcer
from chatwarden.services.escalation_service import EscalationStore
from chatwarden.services.lockdown_service import LockdownService
from chatwarden.services.threshold_policy import effective_limit, is_night_mode
from chatwarden.services.window_counter import SlidingWindowCounter

logger = logging.getLogger(__name__)


HealFn = Callable[[PlatformClient, object], Awaitable[bool]]


async def _restore_channel(platform: PlatformClient, event: ChannelDeleted) -> bool:
    await platform.recreate_channel(event.tenant_id, event.channel, "Anti-Nuke: Restoring deleted channel")
    logger.info(f"Restored channel {event.channel.name} in {event.tenant_id}")
    return True


async def _remove_channel(platform: PlatformClient, event: ChannelCreated) -> bool:
    await platform.delete_channel(event.tenant_id, event.channel.id, "Anti-Nuke: Removing spam channel")
    return True


async def _restore_role(platform: PlatformClient, event: RoleDeleted) -> bool:
    await platform.recreate_role(event.tenant_id, event.role, "Anti-Nuke: Restoring deleted role")
    logger.info(f"Restored role {event.role.name} in {event.tenant_id}")
    return True


async def _remove_role(platform: PlatformClient, event: RoleCreated) -> bool:
    await platform.delete_role(event.tenant_id, event.role.id, "Anti-Nuke: Removing spam role")
    return True


async def _reverse_ban(platform: PlatformClient, event: MemberBanned) -> bool:
    await platform.unban_member(event.tenant_id, event.member_id, "Anti-Nuke: Undoing malicious ban")
    return True


async def _remove_webhooks(platform: PlatformClient, event: WebhookCreated) -> bool:
    await platform.delete_webhooks(event.tenant_id, event.channel_id, "Anti-Nuke: Malicious webhook")
    return True


@dataclass(frozen=True)
class RateRule:
    """How one rate-limited action kind is audited and healed."""
    event_type: SecurityEventType
    severity: Severity              # below the limit
    breach_severity: Severity       # at or above the limit
    heal: Optional[HealFn]
    requires_target_match: bool = False  # a departure only counts when the audit entry names this member


RATE_RULES: Dict[ActionKind, RateRule] = {
    ActionKind.CHANNEL_DELETE: RateRule(SecurityEventType.CHANNEL_DELETE, Severity.HIGH, Severity.CRITICAL, _restore_channel),
    ActionKind.CHANNEL_CREATE: RateRule(SecurityEventType.CHANNEL_CREATE, Severity.MEDIUM, Severity.CRITICAL, _remove_channel),
    ActionKind.ROLE_DELETE: RateRule(SecurityEventType.ROLE_DELETE, Severity.CRITICAL, Severity.CRITICAL, _restore_role),
    ActionKind.ROLE_CREATE: RateRule(SecurityEventType.ROLE_CREATE, Severity.MEDIUM, Severity.HIGH, _remove_role),
    ActionKind.MEMBER_BAN: RateRule(SecurityEventType.MASS_BAN, Severity.CRITICAL, Severity.CRITICAL, _reverse_ban),
    ActionKind.MEMBER_KICK: RateRule(SecurityEventType.MASS_KICK, Severity.HIGH, Severity.HIGH, None, requires_target_match=True),
    ActionKind.WEBHOOK_CREATE: RateRule(SecurityEventType.WEBHOOK_SPAM, Severity.HIGH, Severity.HIGH, _remove_webhooks),
    ActionKind.MEMBER_PRUNE: RateRule(SecurityEventType.MEMBER_PRUNE, Severity.MEDIUM, Severity.HIGH, None),
}

SINGLE_STRIKE_TYPES: Dict[ActionKind, SecurityEventType] = {
    ActionKind.ROLE_UPDATE: SecurityEventType.PERMISSION_ESCALATION,
    ActionKind.TENANT_UPDATE: SecurityEventType.GUILD_MODIFICATION,
    ActionKind.BOT_ADD: SecurityEventType.DANGEROUS_BOT_ADD,
}


class AbuseRateDetector:
    """
    Observes administrative events for all tenants.
    State per (tenant, actor, kind) lives in the injected counter.
    """

    def __init__(
        self,
        platform: PlatformClient,
        store: ModerationStore,
        enforcer: Enforcer,
        lockdown: LockdownService,
        escalation: EscalationStore,
        settings: EngineSettings,
        counter: Optional[SlidingWindowCounter] = None,
    ):
        self.platform = platform
        self.store = store
        self.enforcer = enforcer
        self.lockdown = lockdown
        self.escalation = escalation
        self.settings = settings
        self.counter = counter or SlidingWindowCounter()

        self.metrics = {
            'observed': 0,
            'unattributed': 0,
            'exempt': 0,
            'breaches': 0,
            'single_strikes': 0,
        }
        self._longest_window = SlidingWindowCounter.DEFAULT_WINDOW_SECONDS

    async def handle(self, event, policy: TenantPolicy) -> EnforcementOutcome:
        """Process one administrative event under the tenant's policy."""
        self.metrics['observed'] += 1
        self._longest_window = max(self._longest_window, policy.window_seconds)
        if self.metrics['observed'] % self.settings.counter_sweep_every == 0:
            self._sweep(event)
        kind = event.kind
        outcome = EnforcementOutcome(tenant_id=event.tenant_id, action_kind=kind)

        if not policy.enabled:
            outcome.skipped_reason = "disabled"
            return outcome

        # Single-strike detectors decide relevance before touching the audit log
        if kind in SINGLE_STRIKE_TYPES and not self._is_single_strike(event):
            outcome.skipped_reason = "benign"
            return outcome

        # Step 1: Attribution
        entry = await self._attribute(event)
        if entry is None:
            self.metrics['unattributed'] += 1
            outcome.skipped_reason = "unattributed"
            return outcome
        actor_id = entry.actor_id
        outcome.actor_id = actor_id

        night = is_night_mode(policy, event.occurred_at)
        outcome.night_mode = night

        if kind in SINGLE_STRIKE_TYPES:
            limit = 1
        else:
            limit = effective_limit(policy, kind, event.occurred_at)

        # Step 2: Exemption
        owner_id = await self._owner_of(event.tenant_id)
        exempt_reason = await self._exemption(event.tenant_id, actor_id, policy, owner_id)
        if exempt_reason:
            self.metrics['exempt'] += 1
            outcome.skipped_reason = exempt_reason
            await self._audit(event, actor_id, count=0, limit=limit, night=night, escalated=False,
                              details={'exempt': exempt_reason})
            return outcome

        if kind in SINGLE_STRIKE_TYPES:
            return await self._handle_single_strike(event, policy, actor_id, owner_id, night, outcome)

        # Step 3: Counting
        rule = RATE_RULES[kind]
        count = self.counter.record(
            event.tenant_id, actor_id, kind, as_utc(event.occurred_at).timestamp(), window=policy.window_seconds,
        )
        outcome.count = count
        outcome.limit = limit

        if count < limit:
            await self._audit(event, actor_id, count, limit, night, escalated=False)
            return outcome

        # Step 4: Punishing
        self.metrics['breaches'] += 1
        outcome.escalated = True
        logger.warning(
            f"Abuse-rate breach in {event.tenant_id}: {actor_id} did {count} {kind.value} "
            f"(limit {limit}{', night mode' if night else ''})"
        )
        reason = rule.event_type.value
        outcome.punished = await self._punish(event.tenant_id, actor_id, policy, reason, count, night, owner_id)

        # Step 5: Self-healing
        if rule.heal is not None:
            outcome.healed = await self._heal(rule.heal, event)

        outcome.lockdown = await self._after_punishment(event.tenant_id, actor_id, policy, reason, count, night)
        await self._audit(event, actor_id, count, limit, night, escalated=True,
                          details={'punished': outcome.punished, 'healed': outcome.healed})
        return outcome

    # Attribution and exemption

    async def _attribute(self, event) -> Optional[AuditEntry]:
        try:
            entries = await self.platform.fetch_audit_log(event.tenant_id, event.kind, limit=1)
        except Exception as e:
            logger.error(f"Audit log fetch failed for {event.kind.value} in {event.tenant_id}: {e}")
            return None

        entry = entries[0] if entries else None
        if entry is None or not entry.actor_id:
            logger.info(f"Dropping {event.kind.value} in {event.tenant_id}: no audit entry")
            return None

        lookback = timedelta(seconds=self.settings.audit_lookback_seconds)
        if as_utc(event.occurred_at) - as_utc(entry.created_at) > lookback:
            logger.info(f"Dropping {event.kind.value} in {event.tenant_id}: newest audit entry is stale")
            return None

        rule = RATE_RULES.get(event.kind)
        if rule is not None and rule.requires_target_match and entry.target_id != event.target_id:
            logger.info(
                f"Dropping {event.kind.value} in {event.tenant_id}: audit target {entry.target_id} "
                f"does not match {event.target_id}"
            )
            return None
        return entry

    async def _owner_of(self, tenant_id: str) -> Optional[str]:
        try:
            return await self.platform.fetch_owner_id(tenant_id)
        except Exception as e:
            logger.error(f"Could not resolve owner of {tenant_id}: {e}")
            return None

    async def _exemption(
        self, tenant_id: str, actor_id: str, policy: TenantPolicy, owner_id: Optional[str]
    ) -> Optional[str]:
        if owner_id is not None and actor_id == owner_id:
            return "owner"
        if actor_id in policy.allow_list:
            return "allow-listed"
        try:
            if await self.store.is_allow_listed(tenant_id, actor_id):
                return "allow-listed"
        except Exception as e:
            logger.error(f"Allow-list lookup failed for {actor_id} in {tenant_id}: {e}")
        return None

    # Single-strike detectors

    def _is_single_strike(self, event) -> bool:
        if isinstance(event, RoleUpdated):
            escalation = {p.value for p in ESCALATION_PERMISSIONS}
            return bool(escalation.intersection(event.gained_permissions))
        if isinstance(event, TenantUpdated):
            return event.name_before != event.name_after or event.vanity_before != event.vanity_after
        if isinstance(event, BotAdded):
            dangerous = {p.value for p in DANGEROUS_BOT_PERMISSIONS}
            return bool(dangerous.intersection(event.permissions))
        return False

    async def _handle_single_strike(
        self,
        event,
        policy: TenantPolicy,
        actor_id: str,
        owner_id: Optional[str],
        night: bool,
        outcome: EnforcementOutcome,
    ) -> EnforcementOutcome:
        self.metrics['single_strikes'] += 1
        event_type = SINGLE_STRIKE_TYPES[event.kind]
        reason = event_type.value
        details: Dict[str, object] = {}
        outcome.count = 1
        outcome.limit = 1
        outcome.escalated = True

        if isinstance(event, RoleUpdated):
            # Revert first so the escalated role is neutralized even if punishment fails
            details = {'role': event.after.name, 'added_permissions': event.gained_permissions}
            outcome.healed = await self._heal_call(
                self.platform.set_role_permissions(
                    event.tenant_id, event.after.id, event.before.permissions,
                    "Anti-Nuke: Reverting unauthorized permission changes",
                ),
                f"revert permissions of role {event.after.id}",
            )
            outcome.punished = await self._punish(event.tenant_id, actor_id, policy, reason, 1, night, owner_id)

        elif isinstance(event, TenantUpdated):
            changes: List[Dict[str, Optional[str]]] = []
            if event.name_before != event.name_after:
                changes.append({'type': 'NAME_CHANGE', 'old': event.name_before, 'new': event.name_after})
            if event.vanity_before != event.vanity_after:
                changes.append({'type': 'VANITY_CHANGE', 'old': event.vanity_before, 'new': event.vanity_after})
            details = {'changes': changes}
            outcome.punished = await self._punish(event.tenant_id, actor_id, policy, reason, 1, night, owner_id)
            # Vanity codes cannot be reclaimed reliably, only the name is reverted
            if event.name_before != event.name_after:
                outcome.healed = await self._heal_call(
                    self.platform.set_tenant_name(
                        event.tenant_id, event.name_before, "Anti-Nuke: Reverting unauthorized name change",
                    ),
                    f"revert name of {event.tenant_id}",
                )

        elif isinstance(event, BotAdded):
            details = {'bot_id': event.bot_id, 'permissions': event.permissions}
            outcome.healed = await self._heal_call(
                self.platform.kick_member(
                    event.tenant_id, event.bot_id, "Anti-Nuke: Unauthorized bot with dangerous permissions",
                ),
                f"remove bot {event.bot_id}",
            )
            outcome.punished = await self._punish(event.tenant_id, actor_id, policy, reason, 1, night, owner_id)

        logger.warning(f"{reason} by {actor_id} in {event.tenant_id}")
        outcome.lockdown = await self._after_punishment(event.tenant_id, actor_id, policy, reason, 1, night)
        details.update({'punished': outcome.punished, 'healed': outcome.healed})
        await self._audit(event, actor_id, 1, 1, night, escalated=True, details=details,
                          event_type=event_type, severity=Severity.CRITICAL)
        return outcome

    # Punishment pipeline

    async def _punish(
        self,
        tenant_id: str,
        actor_id: str,
        policy: TenantPolicy,
        reason: str,
        count: int,
        night: bool,
        owner_id: Optional[str],
    ) -> bool:
        prefix = "Anti-Nuke [NIGHT MODE]" if night else "Anti-Nuke"
        full_reason = f"{prefix}: {reason} - {count} malicious actions detected"
        result = await self.enforcer.punish(tenant_id, actor_id, policy.punishment, full_reason, owner_id)
        if result.aborted_reason:
            return False

        # Administrative abuse counts against the actor's standing everywhere
        self.escalation.add_warning(tenant_id, actor_id)
        await self.enforcer.add_warning(WarningRecord(
            tenant_id=tenant_id,
            actor_id=actor_id,
            reason=full_reason,
            severity=Severity.CRITICAL,
        ))
        return result.applied is not None

    async def _heal(self, heal: HealFn, event) -> bool:
        return await self._heal_call(heal(self.platform, event), f"self-heal {event.kind.value}")

    async def _heal_call(self, call: Awaitable, what: str) -> bool:
        try:
            await call
            return True
        except Exception as e:
            logger.error(f"Could not {what}: {e}")
            metrics.record_enforcement_failure('self_heal')
            return False

    async def _after_punishment(
        self,
        tenant_id: str,
        actor_id: str,
        policy: TenantPolicy,
        reason: str,
        count: int,
        night: bool,
    ) -> bool:
        if policy.notify_owner:
            text = (
                f"ANTI-NUKE ALERT{' [NIGHT MODE]' if night else ''}: {reason} by {actor_id} "
                f"({count} actions detected). The actor was punished and privileges revoked."
            )
            await self.enforcer.notify_owner(tenant_id, text)

        if policy.lockdown_on_trigger or (night and policy.night_mode.auto_lock):
            await self.lockdown.lock(tenant_id, reason, night_mode=night)
            return self.lockdown.is_locked(tenant_id)
        return False

    async def _audit(
        self,
        event,
        actor_id: str,
        count: int,
        limit: Optional[int],
        night: bool,
        escalated: bool,
        details: Optional[Dict[str, object]] = None,
        event_type: Optional[SecurityEventType] = None,
        severity: Optional[Severity] = None,
    ):
        rule = RATE_RULES.get(event.kind)
        if event_type is None:
            event_type = rule.event_type if rule else SINGLE_STRIKE_TYPES[event.kind]
        if severity is None:
            severity = Severity.CRITICAL
            if rule is not None:
                severity = rule.breach_severity if escalated else rule.severity

        record = SecurityEvent(
            tenant_id=event.tenant_id,
            actor_id=actor_id,
            event_type=event_type,
            severity=severity,
            action_kind=event.kind,
            count=count,
            limit=limit,
            night_mode=night,
            escalated=escalated,
            details={'target_id': event.target_id, **(details or {})},
        )
        metrics.record_security_event(event_type.value, escalated)
        await self.enforcer.record_security_event(record)

    def counts_for(self, tenant_id: str, actor_id: str, now: float, window: float) -> List[Tuple[ActionKind, int]]:
        """Current in-window counts for every rate-limited kind."""
        return [(kind, self.counter.count(tenant_id, actor_id, kind, now, window)) for kind in RATE_RULES]

    def _sweep(self, event):
        horizon = max(self.settings.counter_idle_seconds, self._longest_window)
        removed = self.counter.sweep(as_utc(event.occurred_at).timestamp(), window=horizon)
        if removed:
            logger.info(f"Dropped {removed} idle abuse-rate counters, {len(self.counter)} remain")
