"""
Engine configuration loaded from environment variables.
Escalation and banding thresholds are product policy, kept here as defaults.
"""
import os
import logging
from typing import Optional
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ChallengeRules(BaseModel):
    """When an unverified actor must pass a challenge before posting."""
    min_account_age_days: int = 7
    min_membership_minutes: int = 10


class RiskBands(BaseModel):
    """Score bands and the actions chosen inside them."""
    safe_max: int = 30
    suspicious_max: int = 65
    mute_score: int = 70               # DANGEROUS at or above -> MUTE
    kick_score: int = 85               # DANGEROUS at or above -> KICK (with warnings)
    kick_min_warnings: int = 2
    suspicious_delete_warnings: int = 1
    suspicious_mute_warnings: int = 2


class EscalationRules(BaseModel):
    """History-based escalation applied after classification."""
    score_per_warning: int = 10
    warn_to_mute_warnings: int = 3
    delete_to_mute_warnings: int = 2
    mute_to_kick_warnings: int = 4


class FallbackWeights(BaseModel):
    """Weights of the local deterministic classifier."""
    spam: int = 20
    scam: int = 30
    harassment: int = 25
    new_account: int = 10
    new_account_days: int = 7
    immediate_post: int = 15
    immediate_post_minutes: int = 5
    contains_links: int = 10
    per_warning: int = 10


class EngineSettings(BaseModel):
    """
    Runtime settings for one engine instance.
    Built from the environment by from_env(); tests construct it directly.
    """
    owner_id: Optional[str] = None             # Bypasses content moderation entirely

    # External classifier (OpenAI-compatible chat completions)
    classifier_api_key: Optional[str] = None
    classifier_base_url: str = "https://api.groq.com/openai/v1"
    classifier_model: str = "llama-3.3-70b-versatile"
    classifier_timeout_seconds: float = Field(gt=0, default=5.0)
    classifier_temperature: float = 0.3
    classifier_max_tokens: int = 500

    # Escalation state sizes
    score_history_size: int = 10
    message_history_size: int = 5

    # Enforcement durations
    mute_seconds: int = 600
    challenge_timeout_seconds: int = 300

    # Abuse-rate attribution
    audit_lookback_seconds: float = 30.0

    # Idle abuse-rate counters are dropped every `counter_sweep_every` administrative events
    counter_sweep_every: int = Field(gt=0, default=500)
    counter_idle_seconds: float = Field(gt=0, default=3600.0)

    challenge: ChallengeRules = Field(default_factory=ChallengeRules)
    bands: RiskBands = Field(default_factory=RiskBands)
    escalation: EscalationRules = Field(default_factory=EscalationRules)
    fallback: FallbackWeights = Field(default_factory=FallbackWeights)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Read settings from environment variables."""
        settings = cls(
            owner_id=os.getenv('CHATWARDEN_OWNER_ID') or None,
            classifier_api_key=os.getenv('CLASSIFIER_API_KEY') or os.getenv('GROQ_API_KEY') or None,
            classifier_base_url=os.getenv('CLASSIFIER_BASE_URL', 'https://api.groq.com/openai/v1'),
            classifier_model=os.getenv('CLASSIFIER_MODEL', 'llama-3.3-70b-versatile'),
            classifier_timeout_seconds=float(os.getenv('CLASSIFIER_TIMEOUT_SECONDS', '5')),
            audit_lookback_seconds=float(os.getenv('AUDIT_LOOKBACK_SECONDS', '30')),
            counter_sweep_every=int(os.getenv('COUNTER_SWEEP_EVERY', '500')),
            counter_idle_seconds=float(os.getenv('COUNTER_IDLE_SECONDS', '3600')),
            mute_seconds=int(os.getenv('MUTE_SECONDS', '600')),
            challenge_timeout_seconds=int(os.getenv('CHALLENGE_TIMEOUT_SECONDS', '300')),
        )
        if not settings.classifier_api_key:
            logger.warning("No classifier API key configured; using local fallback classifier only")
        return settings
