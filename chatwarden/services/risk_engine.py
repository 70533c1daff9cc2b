"""
Content Risk Engine.
Owner bypass, challenge gate, external classification with local fallback,
history escalation and banding for chat messages.
"""

import asyncio
import logging
from typing import Optional

from chatwarden.lib.config import EngineSettings
from chatwarden.lib.metrics import metrics
from chatwarden.models.content import ModerationInput, ModerationDecision
from chatwarden.models.enums import RiskLevel, ModerationAction, DetectedCategory, DecisionSource
from chatwarden.services.classifier_service import ClassifierClient, ClassifierError
from chatwarden.services.fallback_classifier import FallbackClassifier, band_level

logger = logging.getLogger(__name__)


OWNER_BYPASS_REASON = "Bot owner - moderation bypassed"
CHALLENGE_REASON = "New or flagged user has not completed CAPTCHA verification."
CHALLENGE_SCORE = 50


class ContentRiskEngine:
    """
    Scores one message and recommends an action.
    Always returns a decision; classifier failures are recovered locally.
    """

    def __init__(
        self,
        settings: EngineSettings,
        classifier: Optional[ClassifierClient] = None,
        fallback: Optional[FallbackClassifier] = None,
    ):
        self.settings = settings
        self.classifier = classifier
        self.fallback = fallback or FallbackClassifier(settings.fallback, settings.bands)

        self.metrics = {
            'evaluated': 0,
            'bypassed': 0,
            'challenged': 0,
            'classified': 0,
            'fallbacks': 0,
        }

    async def evaluate(self, data: ModerationInput) -> ModerationDecision:
        """Produce a decision for one message."""
        self.metrics['evaluated'] += 1

        # Step 1: Owner bypass
        if self.settings.owner_id and data.actor_id == self.settings.owner_id:
            self.metrics['bypassed'] += 1
            return ModerationDecision(
                risk_score=0,
                risk_level=RiskLevel.SAFE,
                recommended_action=ModerationAction.ALLOW,
                reasoning=OWNER_BYPASS_REASON,
                source=DecisionSource.OWNER_BYPASS,
            )

        # Step 2: Challenge gate
        if self.requires_challenge(data):
            self.metrics['challenged'] += 1
            return ModerationDecision(
                risk_score=CHALLENGE_SCORE,
                risk_level=RiskLevel.SUSPICIOUS,
                recommended_action=ModerationAction.REQUIRE_CHALLENGE,
                reasoning=CHALLENGE_REASON,
                detected_categories=[DetectedCategory.NEW_USER_UNVERIFIED.value],
                source=DecisionSource.CHALLENGE_GATE,
            )

        # Step 3: External classifier, 3b: local fallback
        decision = await self._classify(data)

        # Step 4: History escalation
        return self.escalate(decision, data.open_warnings)

    def requires_challenge(self, data: ModerationInput) -> bool:
        """Unverified actors who are new, just joined, or already warned."""
        if data.verified:
            return False
        rules = self.settings.challenge
        return (
            data.account_age_days < rules.min_account_age_days
            or data.membership_age_minutes < rules.min_membership_minutes
            or data.open_warnings > 0
        )

    async def _classify(self, data: ModerationInput) -> ModerationDecision:
        if self.classifier is None:
            return self._fall_back(data, "unconfigured")
        try:
            verdict = await asyncio.wait_for(
                self.classifier.classify(data),
                timeout=self.settings.classifier_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Classifier timed out after {self.settings.classifier_timeout_seconds}s, using fallback")
            return self._fall_back(data, "timeout")
        except ClassifierError as e:
            logger.warning(f"Classifier failed, using fallback: {e}")
            return self._fall_back(data, "error")
        except Exception as e:
            logger.error(f"Unexpected classifier error, using fallback: {e}")
            return self._fall_back(data, "unexpected")

        self.metrics['classified'] += 1
        return ModerationDecision(
            risk_score=verdict.risk_score,
            risk_level=verdict.risk_level,
            recommended_action=verdict.recommended_action,
            reasoning=verdict.reasoning,
            detected_categories=list(verdict.detected_categories),
            source=DecisionSource.CLASSIFIER,
        )

    def _fall_back(self, data: ModerationInput, reason: str) -> ModerationDecision:
        self.metrics['fallbacks'] += 1
        metrics.record_fallback(reason)
        return self.fallback.classify(data)

    def escalate(self, decision: ModerationDecision, open_warnings: int) -> ModerationDecision:
        """Raise score and action for repeat offenders, then re-band the level."""
        rules = self.settings.escalation
        score = min(100, decision.risk_score + rules.score_per_warning * open_warnings)

        action = decision.recommended_action
        if open_warnings >= rules.warn_to_mute_warnings and action == ModerationAction.WARN:
            action = ModerationAction.MUTE
        elif open_warnings >= rules.delete_to_mute_warnings and action == ModerationAction.DELETE:
            action = ModerationAction.MUTE
        elif open_warnings >= rules.mute_to_kick_warnings and action == ModerationAction.MUTE:
            action = ModerationAction.KICK

        # Step 5: Banding
        return decision.model_copy(update={
            'risk_score': score,
            'risk_level': band_level(score, self.settings.bands),
            'recommended_action': action,
        })
