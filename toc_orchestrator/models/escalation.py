"""Escalation task, task history and staff models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from toc_orchestrator.db.base import Base, TimestampMixin, UTCDateTime


class TaskStatus(str, Enum):
    """Escalation task lifecycle: OPEN -> ASSIGNED -> RESOLVED."""

    OPEN = "OPEN"
    ASSIGNED = "ASSIGNED"
    RESOLVED = "RESOLVED"


ACTIVE_TASK_STATUSES = (TaskStatus.OPEN, TaskStatus.ASSIGNED)


class TaskSeverity(str, Enum):
    """Task severity; mirrors the episode risk level that produced it."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    def bump(self) -> "TaskSeverity":
        order = [TaskSeverity.LOW, TaskSeverity.MEDIUM, TaskSeverity.HIGH]
        return order[min(order.index(self) + 1, len(order) - 1)]


class ResolutionOutcome(str, Enum):
    """Outcome codes accepted when resolving a task."""

    PATIENT_CONTACTED = "PATIENT_CONTACTED"
    VISIT_SCHEDULED = "VISIT_SCHEDULED"
    REFERRED_TO_ED = "REFERRED_TO_ED"
    MEDICATION_ISSUE_RESOLVED = "MEDICATION_ISSUE_RESOLVED"
    NO_ACTION_NEEDED = "NO_ACTION_NEEDED"
    UNABLE_TO_REACH = "UNABLE_TO_REACH"


class TaskEventType(str, Enum):
    """Entries in a task's history."""

    CREATED = "CREATED"
    SEVERITY_BUMPED = "SEVERITY_BUMPED"
    ASSIGNED = "ASSIGNED"
    REASSIGNED = "REASSIGNED"
    SLA_WARNING = "SLA_WARNING"
    SLA_BREACH = "SLA_BREACH"
    RESOLVED = "RESOLVED"


class StaffRole(str, Enum):
    """Roles that can receive escalation work."""

    NURSE = "NURSE"
    SUPERVISOR = "SUPERVISOR"


class StaffMember(Base, TimestampMixin):
    """Care-team member eligible for task assignment."""

    __tablename__ = "staff_members"

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )
    email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    phone: Mapped[str | None] = mapped_column(
        String(30),
        nullable=True,
    )
    role: Mapped[StaffRole] = mapped_column(
        String(20),
        default=StaffRole.NURSE,
        nullable=False,
        index=True,
    )
    # Condition codes this person specialises in (empty = generalist)
    specialties: Mapped[list[str]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    is_available: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<StaffMember {self.name} role={self.role}>"


class EscalationTask(Base, TimestampMixin):
    """Unit of human work opened when an episode's risk rises."""

    __tablename__ = "escalation_tasks"

    episode_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("episodes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    interaction_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("agent_interactions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    source_response_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
    )
    severity: Mapped[TaskSeverity] = mapped_column(
        String(10),
        nullable=False,
        index=True,
    )
    status: Mapped[TaskStatus] = mapped_column(
        String(20),
        default=TaskStatus.OPEN,
        nullable=False,
        index=True,
    )
    reason_codes: Mapped[list[str]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    # Assignment
    assigned_to_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("staff_members.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    assigned_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    # SLA
    sla_due_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        index=True,
    )
    sla_started_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
    )
    sla_warning_sent_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    escalation_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    # Resolution
    outcome: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    resolution_notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    resolved_by: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TASK_STATUSES

    def __repr__(self) -> str:
        return (
            f"<EscalationTask {self.id[:8]}... severity={self.severity} "
            f"status={self.status}>"
        )


class TaskEvent(Base, TimestampMixin):
    """Append-only history entry for an escalation task."""

    __tablename__ = "task_events"

    task_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("escalation_tasks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[TaskEventType] = mapped_column(
        String(30),
        nullable=False,
    )
    from_severity: Mapped[str | None] = mapped_column(
        String(10),
        nullable=True,
    )
    to_severity: Mapped[str | None] = mapped_column(
        String(10),
        nullable=True,
    )
    staff_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
    )
    detail: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
