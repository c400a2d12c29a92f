"""SQLAlchemy ORM models for all database tables.

``abuse_scores``, ``abuse_violations`` and ``user_activities`` are owned by
this service. ``users``, ``scan_sessions`` and ``monitoring_sessions``
belong to the surrounding application; they are mapped here so the
engine can flip an account's status and count scan activity.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class User(Base):
    """Account row owned by the web app. Only ``status`` is written here."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    plan_type: Mapped[str] = mapped_column(String, nullable=False, default="FREE")
    status: Mapped[str] = mapped_column(String, nullable=False, default="ACTIVE")  # ACTIVE, SUSPENDED, DELETED
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    abuse_score: Mapped[AbuseScore | None] = relationship(back_populates="user", uselist=False)


class AbuseScore(Base):
    """One row per user: the long-lived, decaying reputation score."""
    __tablename__ = "abuse_scores"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    current_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[str] = mapped_column(String, nullable=False, default="CLEAN", index=True)
    last_violation: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_decayed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship(back_populates="abuse_score")
    violations: Mapped[list[AbuseViolation]] = relationship(back_populates="score")


class AbuseViolation(Base):
    """Append-only audit trail behind every score mutation."""
    __tablename__ = "abuse_violations"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    score_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("abuse_scores.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    # "metadata" is reserved on declarative classes.
    details: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), index=True
    )

    score: Mapped[AbuseScore] = relationship(back_populates="violations")


class UserActivity(Base):
    """Audit/event log entries (rate-limited actions, admin actions, enforcement)."""
    __tablename__ = "user_activities"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String, nullable=False, index=True)
    details: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )


class ScanSession(Base):
    """Scan run owned by the scanning subsystem (read-only here)."""
    __tablename__ = "scan_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )


class MonitoringSession(Base):
    """Monitoring configuration owned by the scanning subsystem.

    Only ``status`` is written here: suspension pauses RUNNING sessions.
    """
    __tablename__ = "monitoring_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="RUNNING", index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
