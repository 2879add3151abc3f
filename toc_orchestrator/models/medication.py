"""Medication list and adherence event models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from toc_orchestrator.db.base import Base, TimestampMixin, UTCDateTime


class AdherenceEventType(str, Enum):
    """Kinds of adherence evidence."""

    DOSE_TAKEN = "DOSE_TAKEN"
    DOSE_MISSED = "DOSE_MISSED"
    PICKUP_CONFIRMED = "PICKUP_CONFIRMED"
    PICKUP_DELAYED = "PICKUP_DELAYED"
    CHECK_FAILED = "CHECK_FAILED"


class AdherenceSource(str, Enum):
    """Where adherence evidence came from."""

    PATIENT_REPORTED = "PATIENT_REPORTED"
    PHARMACY_API = "PHARMACY_API"


class EpisodeMedication(Base, TimestampMixin):
    """Discharge medication for an episode."""

    __tablename__ = "episode_medications"

    episode_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("episodes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )
    dose: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    frequency: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    instructions: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    source: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )


class MedicationAdherenceEvent(Base, TimestampMixin):
    """A single dose report, pickup status or failed pharmacy check."""

    __tablename__ = "medication_adherence_events"

    episode_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("episodes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    medication_name: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
    )
    event_type: Mapped[AdherenceEventType] = mapped_column(
        String(30),
        nullable=False,
        index=True,
    )
    source: Mapped[AdherenceSource] = mapped_column(
        String(30),
        nullable=False,
    )
    details: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )
    occurred_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        index=True,
    )
