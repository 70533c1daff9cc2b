"""
Fallback Classifier - deterministic local scoring.
Regex and context rules used whenever the external classifier is unavailable.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from chatwarden.lib.config import FallbackWeights, RiskBands
from chatwarden.models.content import ModerationInput, ModerationDecision
from chatwarden.models.enums import RiskLevel, ModerationAction, DetectedCategory, DecisionSource


def band_level(score: int, bands: RiskBands) -> RiskLevel:
    """Risk level for a score."""
    if score <= bands.safe_max:
        return RiskLevel.SAFE
    if score <= bands.suspicious_max:
        return RiskLevel.SUSPICIOUS
    return RiskLevel.DANGEROUS


def band_action(score: int, open_warnings: int, bands: RiskBands) -> ModerationAction:
    """Action chosen by the band table for a score and warning count."""
    level = band_level(score, bands)
    if level == RiskLevel.SAFE:
        return ModerationAction.ALLOW
    if level == RiskLevel.SUSPICIOUS:
        if open_warnings >= bands.suspicious_mute_warnings:
            return ModerationAction.MUTE
        if open_warnings >= bands.suspicious_delete_warnings:
            return ModerationAction.DELETE
        return ModerationAction.WARN
    if score >= bands.kick_score and open_warnings >= bands.kick_min_warnings:
        return ModerationAction.KICK
    if score >= bands.mute_score:
        return ModerationAction.MUTE
    return ModerationAction.DELETE


@dataclass
class PatternMatch:
    """A category and the rules in it that matched."""
    category: DetectedCategory
    rules: List[str]


class FallbackClassifier:
    """
    Scores a message from fixed patterns and actor context.
    Each content category adds its weight once, however many of its rules match.
    """

    SPAM_RULES = {
        'repeated_characters': r'(.)\1{10,}',
        'mass_mention': r'@everyone|@here',
    }

    # Two or more distinct keywords make a promotional cluster
    PROMOTIONAL_KEYWORDS = r'\b(buy|shop|discount|free|prize|giveaway|sale|deal|promo)\b'
    PROMOTIONAL_CLUSTER_SIZE = 2

    SCAM_RULES = {
        'gift_lure': r'\b(free nitro|discord nitro|steam gift|gift card)\b',
        'phishing_phrase': r'\b(verify (your )?account|click (this |the )?link)\b',
        'shortened_link': r'bit\.ly|tinyurl|goo\.gl|t\.co/',
    }

    HARASSMENT_RULES = {
        'self_harm_incitement': r'\b(kill yourself|kys|die)\b',
        'insult': r'\b(idiot|stupid|dumb|loser)\b',
    }

    def __init__(self, weights: Optional[FallbackWeights] = None, bands: Optional[RiskBands] = None):
        self.weights = weights or FallbackWeights()
        self.bands = bands or RiskBands()

        # Compile patterns for performance
        self.spam_regex = {k: re.compile(p, re.IGNORECASE) for k, p in self.SPAM_RULES.items()}
        self.promo_regex = re.compile(self.PROMOTIONAL_KEYWORDS, re.IGNORECASE)
        self.scam_regex = {k: re.compile(p, re.IGNORECASE) for k, p in self.SCAM_RULES.items()}
        self.harassment_regex = {k: re.compile(p, re.IGNORECASE) for k, p in self.HARASSMENT_RULES.items()}

    def match_content(self, text: str) -> List[PatternMatch]:
        """Content categories whose rules match `text`."""
        matches: List[PatternMatch] = []

        spam = [name for name, rx in self.spam_regex.items() if rx.search(text)]
        keywords = {m.lower() for m in self.promo_regex.findall(text)}
        if len(keywords) >= self.PROMOTIONAL_CLUSTER_SIZE:
            spam.append('promotional_cluster')
        if spam:
            matches.append(PatternMatch(DetectedCategory.SPAM, spam))

        scam = [name for name, rx in self.scam_regex.items() if rx.search(text)]
        if scam:
            matches.append(PatternMatch(DetectedCategory.SCAM, scam))

        harassment = [name for name, rx in self.harassment_regex.items() if rx.search(text)]
        if harassment:
            matches.append(PatternMatch(DetectedCategory.HARASSMENT, harassment))

        return matches

    def classify(self, data: ModerationInput) -> ModerationDecision:
        """Score a message without any external call."""
        w = self.weights
        categories: List[DetectedCategory] = []
        score = 0

        # Step 1: Content patterns
        content_weights = {
            DetectedCategory.SPAM: w.spam,
            DetectedCategory.SCAM: w.scam,
            DetectedCategory.HARASSMENT: w.harassment,
        }
        for match in self.match_content(data.content):
            categories.append(match.category)
            score += content_weights[match.category]

        # Step 2: Actor context
        if data.account_age_days < w.new_account_days:
            categories.append(DetectedCategory.NEW_ACCOUNT)
            score += w.new_account
        if data.membership_age_minutes < w.immediate_post_minutes:
            categories.append(DetectedCategory.IMMEDIATE_POST_JOIN)
            score += w.immediate_post
        if data.has_links:
            categories.append(DetectedCategory.CONTAINS_LINKS)
            score += w.contains_links
        if data.open_warnings > 0:
            categories.append(DetectedCategory.REPEAT_OFFENDER)
            score += w.per_warning * data.open_warnings

        score = max(0, min(100, score))
        names = [c.value for c in categories]

        return ModerationDecision(
            risk_score=score,
            risk_level=band_level(score, self.bands),
            recommended_action=band_action(score, data.open_warnings, self.bands),
            reasoning=f"Fallback analysis: {', '.join(names) or 'No violations detected'}",
            detected_categories=names,
            source=DecisionSource.FALLBACK,
        )
