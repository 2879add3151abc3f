"""Outreach plan and attempt models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from toc_orchestrator.db.base import Base, TimestampMixin, UTCDateTime


class PlanStatus(str, Enum):
    """Status of an outreach plan."""

    ACTIVE = "ACTIVE"
    SUPERSEDED = "SUPERSEDED"  # Replaced by a re-plan, kept for history
    CANCELLED = "CANCELLED"  # Episode closed
    COMPLETED = "COMPLETED"  # Every attempt reached a terminal state


class AttemptStatus(str, Enum):
    """Status of a single scheduled outreach touch."""

    PENDING = "PENDING"
    SENT = "SENT"
    RESPONDED = "RESPONDED"
    MISSED = "MISSED"
    CANCELLED = "CANCELLED"


# Forward-only transitions; CANCELLED is terminal
ATTEMPT_TRANSITIONS: dict[AttemptStatus, set[AttemptStatus]] = {
    AttemptStatus.PENDING: {AttemptStatus.SENT, AttemptStatus.MISSED, AttemptStatus.CANCELLED},
    AttemptStatus.SENT: {AttemptStatus.RESPONDED, AttemptStatus.MISSED, AttemptStatus.CANCELLED},
    AttemptStatus.RESPONDED: set(),
    AttemptStatus.MISSED: set(),
    AttemptStatus.CANCELLED: set(),
}

# Statuses that no longer block a later attempt of the same plan
RESOLVED_ATTEMPT_STATUSES = {
    AttemptStatus.SENT,
    AttemptStatus.RESPONDED,
    AttemptStatus.MISSED,
    AttemptStatus.CANCELLED,
}


class InvalidAttemptTransition(Exception):
    """Raised when an attempt is moved backwards or out of a terminal state."""

    pass


class OutreachPlan(Base, TimestampMixin):
    """Ordered sequence of planned attempts for one episode.

    Plans are never edited after activation; a re-plan supersedes the
    previous plan so the history of what was scheduled is preserved.
    """

    __tablename__ = "outreach_plans"

    episode_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("episodes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Template provenance for audit
    template_key: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    template_version: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    template_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    risk_level: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
    )
    status: Mapped[PlanStatus] = mapped_column(
        String(20),
        default=PlanStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    build_reason: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    superseded_by_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
    )
    activated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
    )
    deactivated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    @property
    def is_active(self) -> bool:
        return self.status == PlanStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<OutreachPlan {self.id[:8]}... {self.template_key} status={self.status}>"


class OutreachAttempt(Base, TimestampMixin):
    """One scheduled patient contact within a plan."""

    __tablename__ = "outreach_attempts"

    plan_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("outreach_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    episode_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("episodes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    due_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        index=True,
    )
    channel: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
    )
    question_code: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    category: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    status: Mapped[AttemptStatus] = mapped_column(
        String(20),
        default=AttemptStatus.PENDING,
        nullable=False,
        index=True,
    )
    status_reason: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    # Dispatch bookkeeping
    dispatch_claimed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    dispatch_failures: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    last_dispatch_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    provider_message_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    sent_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    responded_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    missed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    def transition(self, new_status: AttemptStatus, at: datetime, reason: str | None = None) -> None:
        """Move to a new status, enforcing forward-only transitions."""
        current = AttemptStatus(self.status)
        if new_status not in ATTEMPT_TRANSITIONS[current]:
            raise InvalidAttemptTransition(
                f"Attempt {self.id} cannot move from {current.value} to {new_status.value}"
            )

        self.status = new_status
        if reason is not None:
            self.status_reason = reason

        if new_status == AttemptStatus.SENT:
            self.sent_at = at
        elif new_status == AttemptStatus.RESPONDED:
            self.responded_at = at
        elif new_status == AttemptStatus.MISSED:
            self.missed_at = at
        elif new_status == AttemptStatus.CANCELLED:
            self.cancelled_at = at

        self.dispatch_claimed_at = None

    @property
    def is_terminal(self) -> bool:
        return not ATTEMPT_TRANSITIONS[AttemptStatus(self.status)]

    def __repr__(self) -> str:
        return (
            f"<OutreachAttempt {self.id[:8]}... seq={self.sequence_number} "
            f"status={self.status}>"
        )
