"""mock_classifier.py — Canned keyword classifier for tests and APP_MODE=mock.

Known spam phrases score 0.95, anything containing "spam" scores 0.9,
everything else scores 0.05. No external calls, no API keys needed.

Called by: KeywordQualityAssessor (via registry) when CLASSIFIER_PROVIDER=mock
Depends on: protocols.py (KeywordClassification)
"""

from __future__ import annotations

import logging

from abuse_defense.config import Settings
from abuse_defense.core.protocols import KeywordClassification
from abuse_defense.core.registry import register_provider

logger = logging.getLogger(__name__)

CANNED_SPAM = frozenset({
    "free download",
    "watch online free",
    "buy now",
    "click here",
    "cheap",
    "xxx",
    "torrent",
})


class MockClassifier:
    """Fake classifier with deterministic verdicts.

    Usage:
        Set CLASSIFIER_PROVIDER=mock or APP_MODE=mock to activate.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        logger.info("🎭 MockClassifier initialized — no API calls will be made")

    async def classify(self, keyword: str) -> KeywordClassification:
        text = keyword.lower().strip()
        if text in CANNED_SPAM:
            return KeywordClassification(is_spam=True, spam_score=0.95, reasons=["canned_spam"])
        if "spam" in text:
            return KeywordClassification(is_spam=True, spam_score=0.9, reasons=["contains_spam"])
        return KeywordClassification(is_spam=False, spam_score=0.05)


register_provider("classifier", "mock", MockClassifier)
