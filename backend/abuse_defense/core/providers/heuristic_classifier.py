"""heuristic_classifier.py — Local rule-based keyword spam scoring.

Rules (weights add up, capped at 1.0):
    too short            < 3 characters                      +0.3
    digits only          "2024", "12345"                     +0.5
    generic only         every token is a generic term       +0.6
    contains generic     some tokens are generic terms       +0.15
    piracy terms         torrent, crack, leaked, ...         +0.3
    commercial terms     buy, cheap, discount, ...           +0.2
    special characters   more than 2 non-alphanumerics       +0.3

A keyword is spam when its score reaches ``SPAM_THRESHOLD``.

Called by: KeywordQualityAssessor (via registry) when CLASSIFIER_PROVIDER=heuristic
Depends on: protocols.py (KeywordClassification)
"""

from __future__ import annotations

import re

from abuse_defense.config import Settings
from abuse_defense.core.protocols import KeywordClassification
from abuse_defense.core.registry import register_provider

SPAM_THRESHOLD = 0.5

GENERIC_TERMS = frozenset({
    "free", "download", "video", "watch", "online", "stream",
    "hd", "full", "best", "top", "2024", "2025", "new",
})
PIRACY_TERMS = frozenset({
    "torrent", "crack", "cracked", "keygen", "leaked", "leak",
    "nulled", "warez", "pirate", "pirated", "mega", "telegram",
})
COMMERCIAL_TERMS = frozenset({
    "buy", "cheap", "discount", "sale", "deal", "promo", "coupon", "offer",
})

_SPECIAL_CHARS = re.compile(r"[^a-z0-9\s]")
_TOKEN = re.compile(r"[a-z0-9]+")


class HeuristicClassifier:
    """Scores keywords with fixed local rules. No network calls."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings

    async def classify(self, keyword: str) -> KeywordClassification:
        text = keyword.lower().strip()
        tokens = _TOKEN.findall(text)
        score = 0.0
        reasons: list[str] = []

        if len(text) < 3:
            score += 0.3
            reasons.append("too_short")

        if text.isdigit():
            score += 0.5
            reasons.append("digits_only")

        generic = [t for t in tokens if t in GENERIC_TERMS]
        if tokens and len(generic) == len(tokens):
            score += 0.6
            reasons.append("generic_terms")
        elif generic:
            score += 0.15
            reasons.append("contains_generic_terms")

        if any(t in PIRACY_TERMS for t in tokens):
            score += 0.3
            reasons.append("piracy_terms")

        if any(t in COMMERCIAL_TERMS for t in tokens):
            score += 0.2
            reasons.append("commercial_terms")

        if len(_SPECIAL_CHARS.findall(text)) > 2:
            score += 0.3
            reasons.append("special_characters")

        score = min(score, 1.0)
        return KeywordClassification(
            is_spam=score >= SPAM_THRESHOLD,
            spam_score=score,
            reasons=reasons,
        )


register_provider("classifier", "heuristic", HeuristicClassifier)
