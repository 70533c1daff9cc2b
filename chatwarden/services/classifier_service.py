"""
External classifier client.
Calls an OpenAI-compatible chat-completions endpoint and validates the JSON verdict.
"""

import json
import logging
import time
from typing import Optional

import httpx
from pydantic import ValidationError

from chatwarden.lib.config import EngineSettings
from chatwarden.lib.metrics import metrics
from chatwarden.models.content import ModerationInput, ClassifierVerdict

logger = logging.getLogger(__name__)


class ClassifierError(Exception):
    """The classifier could not produce a usable verdict."""


SYSTEM_PROMPT = """You are an expert chat moderation AI. Analyze messages for:
- Spam (repetitive content, excessive caps, mass mentions)
- Scams (phishing links, fake giveaways, impersonation)
- Harassment (bullying, hate speech, threats)
- NSFW content
- Malicious links

Respond ONLY with valid JSON in this format:
{
  "risk_score": 0-100,
  "risk_level": "SAFE|SUSPICIOUS|DANGEROUS",
  "detected_categories": ["SPAM", "SCAM", etc],
  "recommended_action": "ALLOW|WARN|DELETE|MUTE|KICK",
  "reasoning": "Brief explanation"
}

Risk levels:
- SAFE (0-30): Allow
- SUSPICIOUS (31-65): Warn or Delete
- DANGEROUS (66-100): Mute or Kick

Be strict but fair. Consider user history and context."""


def build_prompt(data: ModerationInput) -> str:
    """Structured user prompt describing the message and its context."""
    history = ', '.join(data.message_history) or 'None'
    return (
        "Analyze this chat message for moderation:\n\n"
        f"MESSAGE: {json.dumps(data.content)}\n\n"
        "USER CONTEXT:\n"
        f"- Account age: {data.account_age_days} days\n"
        f"- Server join time: {data.membership_age_minutes} minutes ago\n"
        f"- Previous warnings: {data.open_warnings}\n"
        f"- CAPTCHA verified: {'Yes' if data.verified else 'No'}\n"
        f"- Recent message history: {history}\n\n"
        "MESSAGE METADATA:\n"
        f"- Has attachments: {str(data.has_attachments).lower()}\n"
        f"- Contains links: {str(data.has_links).lower()}\n"
        f"- Has images: {str(data.has_images).lower()}\n\n"
        "Provide your moderation decision as JSON."
    )


def parse_verdict(body: str) -> ClassifierVerdict:
    """Validate the model's JSON content; anything off-shape is an error."""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError) as e:
        raise ClassifierError(f"classifier returned non-JSON content: {e}") from e
    if not isinstance(payload, dict):
        raise ClassifierError("classifier returned a non-object JSON value")
    try:
        return ClassifierVerdict.model_validate(payload)
    except ValidationError as e:
        raise ClassifierError(f"classifier verdict failed validation: {e.error_count()} errors") from e


class ClassifierClient:
    """
    LLM-backed message classifier.
    Raises ClassifierError on any failure; callers fall back locally.
    """

    def __init__(self, settings: EngineSettings, http: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.http = http or httpx.AsyncClient(
            base_url=settings.classifier_base_url,
            timeout=settings.classifier_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self.settings.classifier_api_key)

    async def classify(self, data: ModerationInput) -> ClassifierVerdict:
        """Send one message to the classifier and return its validated verdict."""
        if not self.configured:
            raise ClassifierError("classifier API key not configured")

        request = {
            "model": self.settings.classifier_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(data)},
            ],
            "temperature": self.settings.classifier_temperature,
            "max_tokens": self.settings.classifier_max_tokens,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.settings.classifier_api_key}"}

        start_time = time.time()
        try:
            response = await self.http.post("/chat/completions", json=request, headers=headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise ClassifierError(f"classifier request failed: {e}") from e
        except ValueError as e:
            raise ClassifierError(f"classifier response was not JSON: {e}") from e
        finally:
            metrics.record_classifier_latency(time.time() - start_time)

        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ClassifierError(f"classifier response missing message content: {e}") from e

        verdict = parse_verdict(content)
        logger.debug(f"Classifier verdict: risk {verdict.risk_score} action {verdict.recommended_action.value}")
        return verdict

    async def close(self):
        await self.http.aclose()
