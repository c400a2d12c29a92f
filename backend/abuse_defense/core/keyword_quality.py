"""keyword_quality.py — Batch keyword quality verdicts from a spam classifier.

Keywords are normalized first (lowercased, whitespace collapsed,
punctuation stripped, 3-50 characters) and deduplicated. Each unique
keyword is then classified independently and concurrently; the batch
quality is the mean of ``1 - spam_score`` over the unique keywords. The
share of submitted keywords that survive is reported as ``unique_share``
so callers can penalize flooding with repeated or junk entries.

A batch is rejected only when it is dominated by spam (quality below
``KEYWORD_QUALITY_FLOOR``), so a few flagged phrases in an otherwise
good batch still pass. A batch with no usable keyword left scores like an
empty one; its ``unique_share`` of 0 is what gets it penalized.

A classifier call that times out or fails scores its keyword as neutral
rather than spam. Nothing here mutates state.

Called by: request_validator.py
Depends on: protocols.py (KeywordClassifier), policy.py
"""

from __future__ import annotations

import asyncio
import logging
import re

from abuse_defense.core.policy import (
    KEYWORD_MAX_LENGTH,
    KEYWORD_MIN_LENGTH,
    KEYWORD_QUALITY_FLOOR,
    NEUTRAL_SPAM_SCORE,
)
from abuse_defense.core.protocols import KeywordClassification, KeywordClassifier
from abuse_defense.models.schemas import FlaggedKeyword, KeywordQualityResult

logger = logging.getLogger(__name__)

UNAVAILABLE_REASON = "classifier_unavailable"

_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s-]")


def normalize_keyword(keyword: str) -> str:
    cleaned = _WHITESPACE.sub(" ", keyword.lower().strip())
    cleaned = _PUNCTUATION.sub("", cleaned)
    return _WHITESPACE.sub(" ", cleaned).strip()


def normalize_keywords(keywords: list[str]) -> tuple[list[str], list[str]]:
    """Normalize and deduplicate a batch, keeping first-seen order.

    Returns:
        (unique, rejected): the distinct normalized keywords, and the
        submitted keywords whose normalized form is outside the length bounds.
    """
    unique: dict[str, None] = {}
    rejected: list[str] = []
    for keyword in keywords:
        cleaned = normalize_keyword(keyword)
        if not KEYWORD_MIN_LENGTH <= len(cleaned) <= KEYWORD_MAX_LENGTH:
            rejected.append(keyword)
            continue
        unique.setdefault(cleaned)
    return list(unique), rejected


class KeywordQualityAssessor:
    """Aggregates per-keyword spam scores into a batch verdict."""

    def __init__(self, classifier: KeywordClassifier, *, timeout_seconds: float = 2.0) -> None:
        self._classifier = classifier
        self._timeout = timeout_seconds

    async def _classify(self, user_id: str, keyword: str) -> tuple[KeywordClassification, bool]:
        """Classify one keyword. Returns (classification, scored)."""
        try:
            result = await asyncio.wait_for(
                self._classifier.classify(keyword), timeout=self._timeout
            )
        except TimeoutError:
            logger.warning(
                "keyword_classifier_timeout; scoring neutral",
                extra={"user_id": user_id, "keyword": keyword, "timeout": self._timeout},
            )
        except Exception as exc:
            logger.warning(
                "keyword_classifier_failed; scoring neutral",
                extra={"user_id": user_id, "keyword": keyword, "error": str(exc)},
            )
        else:
            return result, True

        return (
            KeywordClassification(
                is_spam=False,
                spam_score=NEUTRAL_SPAM_SCORE,
                reasons=[UNAVAILABLE_REASON],
            ),
            False,
        )

    async def check_keyword_quality(self, user_id: str, keywords: list[str]) -> KeywordQualityResult:
        """Score a batch of keywords.

        Args:
            user_id: Requesting user, for log context only.
            keywords: Keywords or phrases proposed for a monitoring configuration.

        Returns:
            KeywordQualityResult with the mean quality, the flagged keywords,
            the normalized unique set, and ``allowed=False`` when the batch is
            spam-dominated.
        """
        if not keywords:
            return KeywordQualityResult(allowed=True, quality_score=1.0)

        unique, rejected = normalize_keywords(keywords)
        unique_share = len(unique) / len(keywords)
        if len(unique) < len(keywords):
            logger.info(
                "keyword_batch_normalized",
                extra={
                    "user_id": user_id,
                    "submitted": len(keywords),
                    "unique": len(unique),
                    "rejected": len(rejected),
                },
            )
        if not unique:
            return KeywordQualityResult(
                allowed=True,
                quality_score=1.0,
                submitted=len(keywords),
                rejected_keywords=rejected,
                unique_share=0.0,
            )

        outcomes = await asyncio.gather(*(self._classify(user_id, kw) for kw in unique))

        contributions: list[float] = []
        flagged: list[FlaggedKeyword] = []
        unscored = 0
        for keyword, (classification, scored) in zip(unique, outcomes, strict=True):
            spam_score = min(max(float(classification.spam_score), 0.0), 1.0)
            contributions.append(1.0 - spam_score)
            if not scored:
                unscored += 1
            if classification.is_spam:
                flagged.append(
                    FlaggedKeyword(
                        keyword=keyword,
                        spam_score=spam_score,
                        reasons=list(classification.reasons or []),
                    )
                )

        quality_score = sum(contributions) / len(contributions)
        allowed = quality_score >= KEYWORD_QUALITY_FLOOR

        message = None
        if not allowed:
            message = (
                f"Keywords rejected: {len(flagged)} of {len(unique)} look like spam or "
                "low quality content. Use specific terms tied to your brand or products."
            )
            logger.info(
                "keyword_batch_rejected",
                extra={
                    "user_id": user_id,
                    "quality_score": round(quality_score, 3),
                    "flagged": len(flagged),
                    "total": len(unique),
                },
            )

        return KeywordQualityResult(
            allowed=allowed,
            quality_score=quality_score,
            flagged_keywords=flagged,
            unscored=unscored,
            submitted=len(keywords),
            unique_keywords=unique,
            rejected_keywords=rejected,
            unique_share=unique_share,
            message=message,
        )
