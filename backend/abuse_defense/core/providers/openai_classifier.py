"""OpenAI keyword classifier — JSON-mode chat completion per keyword."""

from __future__ import annotations

import json
import logging

from openai import AsyncOpenAI

from abuse_defense.config import Settings
from abuse_defense.core.protocols import ClassifierError, KeywordClassification
from abuse_defense.core.registry import register_provider

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You review keywords that brand owners submit to a copyright-infringement \
monitoring service. Rate how likely a keyword is spam or abuse of the \
service: overly generic terms ("video", "download", "free"), piracy bait, \
commercial noise, random characters, or terms unrelated to any brand.

Respond with a JSON object:
{"spam_score": <number 0..1>, "is_spam": <bool>, "reasons": [<short snake_case strings>]}
"""


class OpenAIClassifier:
    """Keyword spam classifier backed by an OpenAI chat model.

    Malformed model output raises ``ClassifierError``; the caller scores
    the keyword as neutral.
    """

    def __init__(self, settings: Settings) -> None:
        self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        self._model = settings.classifier_model

    async def classify(self, keyword: str) -> KeywordClassification:
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": keyword},
            ],
            temperature=0.0,
            max_tokens=200,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content or ""
        return parse_classification(content)


def parse_classification(content: str) -> KeywordClassification:
    """Parse the model's JSON verdict.

    Raises:
        ClassifierError: If the content is not the expected JSON shape.
    """
    try:
        payload = json.loads(content)
        spam_score = float(payload["spam_score"])
    except (ValueError, TypeError, KeyError) as exc:
        raise ClassifierError(f"Unparseable classifier output: {content[:200]!r}") from exc

    if not 0.0 <= spam_score <= 1.0:
        raise ClassifierError(f"spam_score out of range: {spam_score}")

    reasons = payload.get("reasons") or []
    if not isinstance(reasons, list):
        reasons = [str(reasons)]

    return KeywordClassification(
        is_spam=bool(payload.get("is_spam", spam_score >= 0.5)),
        spam_score=spam_score,
        reasons=[str(r) for r in reasons],
    )


# Self-register on import
register_provider("classifier", "openai", OpenAIClassifier)
