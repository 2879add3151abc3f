"""Risk transition history."""

from enum import Enum

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from toc_orchestrator.db.base import Base, TimestampMixin


class RiskSource(str, Enum):
    """Origin of a risk evaluation."""

    INTERPRETER = "INTERPRETER"
    MANUAL = "MANUAL"
    ADHERENCE = "ADHERENCE"


class RiskTransition(Base, TimestampMixin):
    """Append-only record of a risk evaluation for an episode.

    Rows are keyed by ``idempotency_key`` so a re-delivered signal finds
    the transition it already produced instead of applying twice.
    """

    __tablename__ = "risk_transitions"

    episode_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("episodes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_level: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
    )
    to_level: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
    )
    signal: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )
    source: Mapped[RiskSource] = mapped_column(
        String(20),
        nullable=False,
    )
    reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    actor_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    wellness_streak: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    task_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
    )
    idempotency_key: Mapped[str] = mapped_column(
        String(200),
        unique=True,
        nullable=False,
    )

    @property
    def changed(self) -> bool:
        return self.from_level != self.to_level

    def __repr__(self) -> str:
        return f"<RiskTransition {self.from_level}->{self.to_level} source={self.source}>"
