"""
Core Moderation Orchestration Service.
Owns every piece of mutable engine state and exposes the two host entry points:
on_message for chat messages and on_administrative_event for admin actions.
"""

import logging
import time
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from chatwarden.lib.config import EngineSettings
from chatwarden.lib.database import ModerationStore
from chatwarden.lib.metrics import metrics
from chatwarden.lib.platform import PlatformClient
from chatwarden.models.content import (
    EnforcementOutcome, MessageContext, ModerationInput, ModerationRecord
)
from chatwarden.models.enums import ModerationAction, DecisionSource, RiskLevel, Severity, ACTION_SEVERITY
from chatwarden.models.events import parse_administrative_event
from chatwarden.models.policy import TenantPolicy
from chatwarden.models.user import Actor, WarningRecord
from chatwarden.services.antinuke_service import AbuseRateDetector
from chatwarden.services.classifier_service import ClassifierClient
from chatwarden.services.enforcement_service import Enforcer
from chatwarden.services.escalation_service import EscalationStore
from chatwarden.services.lockdown_service import LockdownService
from chatwarden.services.risk_engine import ContentRiskEngine
from chatwarden.services.window_counter import SlidingWindowCounter

logger = logging.getLogger(__name__)


class PolicyCache:
    """
    Tenant policies loaded lazily and kept for the process lifetime.
    An update replaces the cached entry before anything else sees it.
    """

    def __init__(self, store: ModerationStore):
        self.store = store
        self._policies: Dict[str, TenantPolicy] = {}

    async def get(self, tenant_id: str) -> TenantPolicy:
        policy = self._policies.get(tenant_id)
        if policy is not None:
            return policy
        try:
            policy = await self.store.get_tenant_policy(tenant_id)
        except Exception as e:
            # Not cached, so the next event retries the load
            logger.error(f"Failed to load policy for {tenant_id}, using defaults: {e}")
            return TenantPolicy()
        if policy is None:
            policy = TenantPolicy()
        self._policies[tenant_id] = policy
        return policy

    async def update(self, tenant_id: str, policy: TenantPolicy) -> bool:
        """Replace a tenant's policy. Returns False if it could not be persisted."""
        self._policies[tenant_id] = policy
        try:
            await self.store.update_tenant_policy(tenant_id, policy)
            return True
        except Exception as e:
            logger.error(f"Failed to persist policy for {tenant_id}; cached copy is in effect: {e}")
            metrics.record_persistence_failure('update_tenant_policy')
            return False

    def cached(self, tenant_id: str) -> TenantPolicy:
        """Cached policy without touching the store (defaults if not loaded yet)."""
        return self._policies.get(tenant_id) or TenantPolicy()

    def invalidate(self, tenant_id: str):
        self._policies.pop(tenant_id, None)


class ModerationEngine:
    """
    Central orchestration for both subsystems.
    Independent instances share nothing, so tests can build as many as they like.
    """

    def __init__(
        self,
        platform: PlatformClient,
        store: ModerationStore,
        settings: Optional[EngineSettings] = None,
        classifier: Optional[ClassifierClient] = None,
    ):
        self.platform = platform
        self.store = store
        self.settings = settings or EngineSettings()
        if classifier is None and self.settings.classifier_api_key:
            classifier = ClassifierClient(self.settings)

        self.escalation = EscalationStore(
            score_history_size=self.settings.score_history_size,
            message_history_size=self.settings.message_history_size,
        )
        self.counter = SlidingWindowCounter()
        self.policies = PolicyCache(store)
        self.enforcer = Enforcer(platform, store, self.settings)
        self.lockdown = LockdownService(platform)
        self.risk_engine = ContentRiskEngine(self.settings, classifier=classifier)
        self.detector = AbuseRateDetector(
            platform, store, self.enforcer, self.lockdown, self.escalation, self.settings, counter=self.counter,
        )

    # Message path

    async def on_message(self, context: MessageContext) -> EnforcementOutcome:
        """Evaluate and enforce one chat message."""
        if context.is_bot:
            return EnforcementOutcome(
                tenant_id=context.tenant_id, actor_id=context.actor_id, skipped_reason="bot",
            )

        try:
            # One actor's messages are evaluated strictly in order
            async with self.escalation.guard(context.tenant_id, context.actor_id):
                return await self._process_message(context)
        except Exception as e:
            logger.error(f"Error processing message {context.message_id} in {context.tenant_id}: {e}")
            return EnforcementOutcome(
                tenant_id=context.tenant_id, actor_id=context.actor_id, skipped_reason="error",
            )

    @metrics.track_latency('message')
    async def _process_message(self, context: MessageContext) -> EnforcementOutcome:
        tenant_id, actor_id = context.tenant_id, context.actor_id

        # Step 1: Actor and escalation context
        actor = await self._load_actor(context)
        await self._seed_warnings(tenant_id, actor_id)
        open_warnings = self.escalation.open_warnings(tenant_id, actor_id)

        data = ModerationInput(
            actor_id=actor_id,
            content=context.content,
            message_history=self.escalation.message_history(tenant_id, actor_id),
            account_age_days=context.account_age_days,
            membership_age_minutes=context.membership_age_minutes,
            has_attachments=bool(context.attachments),
            has_links=context.has_links,
            has_images=context.has_images,
            open_warnings=open_warnings,
            verified=actor.verified,
        )

        # Step 2: Decide
        decision = await self.risk_engine.evaluate(data)

        # Step 3: Enforce
        tenant_owner_id = None
        if ACTION_SEVERITY[decision.recommended_action] >= ACTION_SEVERITY[ModerationAction.MUTE]:
            tenant_owner_id = await self._tenant_owner(tenant_id)
        enforcement = await self.enforcer.enforce_message(context, decision, tenant_owner_id)

        # Step 4: Audit
        await self.enforcer.record_decision(ModerationRecord(
            tenant_id=tenant_id,
            channel_id=context.channel_id,
            message_id=context.message_id,
            actor_id=actor_id,
            content=context.content,
            decision=decision,
            applied_action=enforcement.applied,
        ))

        # Step 5: Update escalation state
        if decision.source != DecisionSource.OWNER_BYPASS and decision.recommended_action not in (
            ModerationAction.ALLOW, ModerationAction.REQUIRE_CHALLENGE,
        ):
            self.escalation.add_warning(tenant_id, actor_id)
            await self.enforcer.add_warning(WarningRecord(
                tenant_id=tenant_id,
                actor_id=actor_id,
                reason=decision.reasoning,
                severity=Severity.HIGH if decision.risk_level == RiskLevel.DANGEROUS else Severity.MEDIUM,
            ))

        self.escalation.record_message(tenant_id, actor_id, len(context.content))
        average = self.escalation.record_score(tenant_id, actor_id, decision.risk_score)
        try:
            await self.store.update_average_risk_score(actor_id, average)
        except Exception as e:
            logger.error(f"Failed to update average risk score for {actor_id}: {e}")
            metrics.record_persistence_failure('update_average_risk_score')

        metrics.record_message(decision.recommended_action.value, decision.source.value)
        logger.info(
            f"Message {context.message_id} by {actor_id} in {tenant_id}: "
            f"risk {decision.risk_score} {decision.risk_level.value} -> {decision.recommended_action.value}"
            f" (applied {enforcement.applied.value if enforcement.applied else 'none'})"
        )

        return EnforcementOutcome(
            tenant_id=tenant_id,
            actor_id=actor_id,
            decision=decision,
            requested_action=enforcement.requested,
            applied_action=enforcement.applied,
            tiers_attempted=enforcement.attempted,
        )

    async def _load_actor(self, context: MessageContext) -> Actor:
        try:
            return await self.store.get_or_create_actor(context.actor_id, context.account_created_at)
        except Exception as e:
            logger.error(f"Failed to load actor {context.actor_id}, treating as unverified: {e}")
            return Actor(actor_id=context.actor_id, account_created_at=context.account_created_at)

    async def _seed_warnings(self, tenant_id: str, actor_id: str):
        if self.escalation.is_seeded(tenant_id, actor_id):
            return
        try:
            warnings = await self.store.get_warnings(tenant_id, actor_id)
        except Exception as e:
            logger.error(f"Failed to load warnings for {actor_id} in {tenant_id}: {e}")
            return
        self.escalation.seed_warnings(tenant_id, actor_id, len(warnings))

    async def _tenant_owner(self, tenant_id: str) -> Optional[str]:
        try:
            return await self.platform.fetch_owner_id(tenant_id)
        except Exception as e:
            logger.error(f"Could not resolve owner of {tenant_id}: {e}")
            return None

    # Administrative path

    async def on_administrative_event(self, event: Union[Dict[str, Any], Any]) -> EnforcementOutcome:
        """Run the abuse-rate detector on one administrative event."""
        if isinstance(event, dict):
            try:
                event = parse_administrative_event(event)
            except ValidationError as e:
                logger.error(f"Rejected malformed administrative event: {e.error_count()} errors")
                return EnforcementOutcome(tenant_id=str(event.get('tenant_id', '')), skipped_reason="malformed")

        try:
            return await self._process_event(event)
        except Exception as e:
            logger.error(f"Error processing {event.kind.value} in {event.tenant_id}: {e}")
            return EnforcementOutcome(tenant_id=event.tenant_id, action_kind=event.kind, skipped_reason="error")

    @metrics.track_latency('administrative_event')
    async def _process_event(self, event) -> EnforcementOutcome:
        policy = await self.policies.get(event.tenant_id)
        return await self.detector.handle(event, policy)

    # Administration

    async def get_policy(self, tenant_id: str) -> TenantPolicy:
        return await self.policies.get(tenant_id)

    async def update_policy(self, tenant_id: str, policy: TenantPolicy) -> bool:
        """Replace a tenant's policy; takes effect for the very next event."""
        return await self.policies.update(tenant_id, policy)

    async def unlock(self, tenant_id: str) -> int:
        """Lift a tenant lockdown."""
        return await self.lockdown.unlock(tenant_id)

    async def clear_warnings(self, tenant_id: str, actor_id: str) -> int:
        """Close every open warning for an actor. Returns how many were cleared."""
        async with self.escalation.guard(tenant_id, actor_id):
            cleared = self.escalation.open_warnings(tenant_id, actor_id)
            self.escalation.clear_warnings(tenant_id, actor_id)
            try:
                cleared = await self.store.clear_warnings(tenant_id, actor_id)
            except Exception as e:
                logger.error(f"Failed to clear stored warnings for {actor_id} in {tenant_id}: {e}")
                metrics.record_persistence_failure('clear_warnings')
            return cleared

    async def mark_verified(self, actor_id: str, verified: bool = True):
        """Record that an actor passed (or lost) challenge verification."""
        await self.store.set_verified(actor_id, verified)

    async def set_trusted(self, tenant_id: str, actor_id: str, trusted: bool = True):
        """Add or remove an actor from the tenant's trusted list."""
        if trusted:
            await self.store.add_trusted_actor(tenant_id, actor_id)
        else:
            await self.store.remove_trusted_actor(tenant_id, actor_id)

    def actor_status(self, tenant_id: str, actor_id: str) -> Optional[Dict[str, Any]]:
        """Escalation snapshot plus in-window admin action counts."""
        snapshot = self.escalation.snapshot(tenant_id, actor_id)
        if snapshot is None:
            return None
        policy_window = self.policies.cached(tenant_id).window_seconds
        counts = self.detector.counts_for(tenant_id, actor_id, time.time(), policy_window)
        return {
            'tenant_id': tenant_id,
            'actor_id': actor_id,
            'open_warnings': snapshot.open_warnings,
            'average_risk_score': snapshot.average_risk_score,
            'recent_scores': snapshot.recent_scores,
            'message_history': snapshot.message_history,
            'admin_actions_in_window': {kind.value: n for kind, n in counts if n},
            'locked_down': self.lockdown.is_locked(tenant_id),
        }

    async def close(self):
        if self.risk_engine.classifier is not None:
            await self.risk_engine.classifier.close()
