"""Collaborator protocols — abstract interfaces for everything the engine consumes.

The keyword classifier, the user-account store, the audit sink, and the
scan-activity source are each defined as a Python Protocol. Core modules
import these protocols, never concrete implementations, so tests can pass
a stub and deployments can swap the classifier by changing one env var.

The counter store is Redis itself (``redis.asyncio.Redis``); its
INCR/EXPIRE/GET primitives are the interface.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

# ─── Data Structures ──────────────────────────────────────────────────────────


@dataclass
class KeywordClassification:
    """Spam verdict for a single keyword or phrase."""

    is_spam: bool
    spam_score: float  # 0.0 (clean) .. 1.0 (certain spam)
    reasons: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ScanActivitySample:
    """Scan volume observed for one user, computed on demand."""

    last_hour: int
    last_day: int
    active_sessions: int = 0


class ClassifierError(Exception):
    """Raised by a classifier that reached its backend but got an unusable answer."""


# ─── Protocols ─────────────────────────────────────────────────────────────────


@runtime_checkable
class KeywordClassifier(Protocol):
    """Abstract interface for per-keyword spam classification.

    Implementations: local heuristics, OpenAI JSON-mode, canned mock.
    """

    async def classify(self, keyword: str) -> KeywordClassification:
        """Score a single keyword."""
        ...


@runtime_checkable
class AccountStore(Protocol):
    """The user-account store whose status the ledger may flip."""

    async def suspend(self, user_id: str) -> bool:
        """Mark the account suspended and pause its running monitoring sessions.

        Must be idempotent. Returns True if the status changed, False if the
        account was already suspended.
        """
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Write-only audit/event log. Fire-and-forget: never raises."""

    async def record(
        self,
        user_id: str,
        action: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append one event."""
        ...


@runtime_checkable
class ScanActivitySource(Protocol):
    """Read-only view of scan sessions owned by the scanning subsystem."""

    async def sample(self, user_id: str, now: datetime) -> ScanActivitySample:
        """Count the user's recent scan sessions relative to ``now``."""
        ...
