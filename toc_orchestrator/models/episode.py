"""Care-transition episode model.

The episode is the aggregate root: plans, attempts and escalation tasks are
reached through it, and every write that must be atomic for one episode bumps
its ``version`` so concurrent writers are detected at flush time.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from toc_orchestrator.db.base import Base, TimestampMixin, UTCDateTime


class ConditionCode(str, Enum):
    """Tracked discharge conditions."""

    HF = "HF"  # Heart failure
    COPD = "COPD"
    AMI = "AMI"  # Acute myocardial infarction
    PNA = "PNA"  # Pneumonia
    OTHER = "OTHER"


class RiskLevel(str, Enum):
    """Episode risk level, ordered LOW < MEDIUM < HIGH."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def up(self) -> "RiskLevel":
        """One level higher, saturating at HIGH."""
        return _RISK_ORDER[min(self.rank + 1, len(_RISK_ORDER) - 1)]

    def down(self) -> "RiskLevel":
        """One level lower, saturating at LOW."""
        return _RISK_ORDER[max(self.rank - 1, 0)]


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH]


class EpisodeStatus(str, Enum):
    """Lifecycle of an episode."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"


class Episode(Base, TimestampMixin):
    """One post-discharge care transition for a patient."""

    __tablename__ = "episodes"

    patient_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    condition_code: Mapped[ConditionCode] = mapped_column(
        String(10),
        nullable=False,
        index=True,
    )
    admit_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    discharge_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
    )
    diagnosis_codes: Mapped[list[str] | None] = mapped_column(
        JSON,
        nullable=True,
    )
    # Written only by the risk state machine
    risk_level: Mapped[RiskLevel] = mapped_column(
        String(10),
        default=RiskLevel.LOW,
        nullable=False,
        index=True,
    )
    # Consecutive no-concern responses since the last risk change
    wellness_streak: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    status: Mapped[EpisodeStatus] = mapped_column(
        String(10),
        default=EpisodeStatus.OPEN,
        nullable=False,
        index=True,
    )
    # Explicit pointer to the single active outreach plan
    active_plan_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
        index=True,
    )
    source_system: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    closed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    close_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_open(self) -> bool:
        return self.status == EpisodeStatus.OPEN

    @property
    def current_risk(self) -> RiskLevel:
        return RiskLevel(self.risk_level)

    def touch(self, now: datetime) -> None:
        """Mark the aggregate as written so the flush checks its version."""
        self.updated_at = now

    def __repr__(self) -> str:
        return (
            f"<Episode {self.id[:8]}... {self.condition_code} "
            f"risk={self.risk_level} status={self.status}>"
        )
