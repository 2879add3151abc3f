"""Patient response model."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Float, ForeignKey, String, Text, event
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from toc_orchestrator.db.base import Base, TimestampMixin, UTCDateTime


class RiskSignal(str, Enum):
    """Risk signal derived from a patient response."""

    NONE = "NONE"
    ELEVATED = "ELEVATED"
    CRITICAL = "CRITICAL"


class ImmutableRecordError(Exception):
    """Raised when code attempts to modify an immutable record."""

    pass


class PatientResponse(Base, TimestampMixin):
    """Inbound patient reply and what the interpreter derived from it.

    IMPORTANT: responses are immutable once recorded. The raw text is kept
    verbatim so unrecognised replies remain available for staff review.
    """

    __tablename__ = "patient_responses"

    attempt_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("outreach_attempts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    episode_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("episodes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    interaction_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
        index=True,
    )
    # Raw inbound content
    raw_text: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    raw_payload: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )
    normalized_text: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
    )
    # Derived
    matched_rule_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )
    content_pack_version: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    risk_signal: Mapped[RiskSignal] = mapped_column(
        String(20),
        default=RiskSignal.NONE,
        nullable=False,
    )
    numeric_value: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )
    is_follow_up_answer: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    needs_follow_up: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    # Unmatched free text flagged for staff
    needs_review: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True,
    )
    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<PatientResponse {self.id[:8]}... rule={self.matched_rule_id} "
            f"signal={self.risk_signal}>"
        )


@event.listens_for(PatientResponse, "before_update")
def _block_response_update(mapper, connection, target: PatientResponse) -> None:
    raise ImmutableRecordError(f"PatientResponse {target.id} is immutable")
