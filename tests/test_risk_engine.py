import pytest

from chatwarden.lib.config import EngineSettings
from chatwarden.models.content import ModerationInput
from chatwarden.models.enums import ACTION_SEVERITY, DecisionSource, ModerationAction, RiskLevel
from chatwarden.services.classifier_service import ClassifierError
from chatwarden.services.fallback_classifier import band_level
from chatwarden.services.risk_engine import CHALLENGE_REASON, OWNER_BYPASS_REASON, ContentRiskEngine

from conftest import BOT_OWNER_ID, StubClassifier, verdict


def make_input(**overrides) -> ModerationInput:
    data = dict(
        actor_id="a1",
        content="hello",
        account_age_days=30,
        membership_age_minutes=120,
        verified=True,
    )
    data.update(overrides)
    return ModerationInput(**data)


def make_engine(classifier=None, **settings) -> ContentRiskEngine:
    return ContentRiskEngine(EngineSettings(owner_id=BOT_OWNER_ID, **settings), classifier=classifier)


@pytest.mark.asyncio
async def test_owner_bypasses_everything():
    stub = StubClassifier(verdict(95, "KICK", "DANGEROUS"))
    engine = make_engine(stub)
    decision = await engine.evaluate(make_input(
        actor_id=BOT_OWNER_ID, content="kys", verified=False, account_age_days=0, open_warnings=7,
    ))
    assert decision.recommended_action == ModerationAction.ALLOW
    assert decision.risk_score == 0
    assert decision.risk_level == RiskLevel.SAFE
    assert decision.reasoning == OWNER_BYPASS_REASON
    assert decision.source == DecisionSource.OWNER_BYPASS
    assert stub.inputs == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"account_age_days": 2},
        {"membership_age_minutes": 3},
        {"open_warnings": 1},
    ],
)
async def test_unverified_actors_are_challenged(overrides):
    stub = StubClassifier(verdict(10, "ALLOW", "SAFE"))
    engine = make_engine(stub)
    decision = await engine.evaluate(make_input(verified=False, **overrides))
    assert decision.recommended_action == ModerationAction.REQUIRE_CHALLENGE
    assert decision.risk_score == 50
    assert decision.risk_level == RiskLevel.SUSPICIOUS
    assert decision.reasoning == CHALLENGE_REASON
    assert decision.source == DecisionSource.CHALLENGE_GATE
    assert stub.inputs == []


@pytest.mark.asyncio
async def test_verified_new_account_skips_the_gate():
    stub = StubClassifier(verdict(10, "ALLOW", "SAFE"))
    engine = make_engine(stub)
    decision = await engine.evaluate(make_input(account_age_days=0, membership_age_minutes=0))
    assert decision.source == DecisionSource.CLASSIFIER
    assert len(stub.inputs) == 1


@pytest.mark.asyncio
async def test_established_unverified_actor_is_classified():
    stub = StubClassifier(verdict(10, "ALLOW", "SAFE"))
    decision = await make_engine(stub).evaluate(make_input(verified=False))
    assert decision.source == DecisionSource.CLASSIFIER


@pytest.mark.asyncio
async def test_classifier_verdict_is_used():
    stub = StubClassifier(verdict(45, "WARN", categories=["SPAM"]))
    decision = await make_engine(stub).evaluate(make_input(content="buy my stuff"))
    assert decision.recommended_action == ModerationAction.WARN
    assert decision.risk_score == 45
    assert decision.detected_categories == ["SPAM"]
    assert decision.reasoning == "stub verdict WARN"


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [ClassifierError("bad json"), RuntimeError("boom")])
async def test_classifier_failure_uses_fallback(error):
    engine = make_engine(StubClassifier(error=error))
    decision = await engine.evaluate(make_input(content="WIN FREE DISCORD NITRO bit.ly/xyz", has_links=True))
    assert decision.source == DecisionSource.FALLBACK
    assert decision.recommended_action == ModerationAction.WARN
    assert decision.risk_score == 40
    assert engine.metrics['fallbacks'] == 1


@pytest.mark.asyncio
async def test_classifier_timeout_uses_fallback():
    engine = make_engine(StubClassifier(verdict(10, "ALLOW", "SAFE"), delay=1.0), classifier_timeout_seconds=0.05)
    decision = await engine.evaluate(make_input())
    assert decision.source == DecisionSource.FALLBACK


@pytest.mark.asyncio
async def test_no_classifier_configured_uses_fallback():
    decision = await make_engine(None).evaluate(make_input())
    assert decision.source == DecisionSource.FALLBACK
    assert decision.recommended_action == ModerationAction.ALLOW


@pytest.mark.asyncio
async def test_three_warnings_turn_warn_into_mute():
    stub = StubClassifier(verdict(40, "WARN"))
    decision = await make_engine(stub).evaluate(make_input(open_warnings=3))
    assert decision.risk_score == 70
    assert decision.risk_level == RiskLevel.DANGEROUS
    assert decision.recommended_action == ModerationAction.MUTE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "action,warnings,expected",
    [
        ("WARN", 2, ModerationAction.WARN),
        ("DELETE", 1, ModerationAction.DELETE),
        ("DELETE", 2, ModerationAction.MUTE),
        ("MUTE", 3, ModerationAction.MUTE),
        ("MUTE", 4, ModerationAction.KICK),
        ("KICK", 6, ModerationAction.KICK),
    ],
)
async def test_history_escalation_rules(action, warnings, expected):
    stub = StubClassifier(verdict(40, action))
    decision = await make_engine(stub).evaluate(make_input(open_warnings=warnings))
    assert decision.recommended_action == expected


@pytest.mark.asyncio
async def test_escalated_score_is_capped():
    stub = StubClassifier(verdict(90, "MUTE", "DANGEROUS"))
    decision = await make_engine(stub).evaluate(make_input(open_warnings=5))
    assert decision.risk_score == 100


@pytest.mark.asyncio
async def test_more_warnings_never_soften_the_decision():
    stub = StubClassifier(verdict(40, "WARN"))
    engine = make_engine(stub)
    decisions = [await engine.evaluate(make_input(open_warnings=w)) for w in range(8)]

    scores = [d.risk_score for d in decisions]
    severities = [ACTION_SEVERITY[d.recommended_action] for d in decisions]
    assert scores == sorted(scores)
    assert severities == sorted(severities)


@pytest.mark.asyncio
@pytest.mark.parametrize("warnings", [0, 1, 3])
async def test_level_always_matches_score(warnings):
    # Classifier level disagrees with its own score; the engine re-bands it
    stub = StubClassifier(verdict(20, "WARN", "DANGEROUS"))
    decision = await make_engine(stub).evaluate(make_input(open_warnings=warnings))
    assert decision.risk_level == band_level(decision.risk_score, EngineSettings().bands)


def test_requires_challenge_ignores_verified_actors():
    engine = make_engine()
    assert not engine.requires_challenge(make_input(account_age_days=0, open_warnings=3))
    assert engine.requires_challenge(make_input(account_age_days=0, verified=False))
