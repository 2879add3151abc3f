"""Append-only audit trail of clinical decisions and integration traffic."""

from enum import Enum

from sqlalchemy import String, Text
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import Mapped, mapped_column

from toc_orchestrator.db.base import Base, TimestampMixin


class ActorType(str, Enum):
    """Who caused the event."""

    SYSTEM = "system"
    STAFF = "staff"
    PATIENT = "patient"
    EHR = "ehr"


class AuditEvent(Base, TimestampMixin):
    """One audited action.

    Rows are only ever inserted. Risk changes, escalations, resolutions,
    plan changes, ADT messages and note exports all land here, keyed by the
    episode they concern so a reviewer can replay an episode's history.
    """

    __tablename__ = "audit_events"

    actor_type: Mapped[ActorType] = mapped_column(String(20), nullable=False)
    # Staff user id, patient id or source system; null for the scheduler
    actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action_category: Mapped[str | None] = mapped_column(String(50), nullable=True)

    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    episode_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    event_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<AuditEvent {self.action} by {self.actor_type}:{self.actor_id} "
            f"on {self.entity_type}:{self.entity_id}>"
        )
