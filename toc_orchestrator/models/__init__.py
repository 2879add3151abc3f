"""Database models for the transition-of-care orchestrator."""

from toc_orchestrator.models.audit_event import ActorType, AuditEvent
from toc_orchestrator.models.ehr import (
    AdtMessageLog,
    EncounterExport,
    ExportDestination,
    ExportStatus,
)
from toc_orchestrator.models.episode import (
    ConditionCode,
    Episode,
    EpisodeStatus,
    RiskLevel,
)
from toc_orchestrator.models.escalation import (
    ACTIVE_TASK_STATUSES,
    EscalationTask,
    ResolutionOutcome,
    StaffMember,
    StaffRole,
    TaskEvent,
    TaskEventType,
    TaskSeverity,
    TaskStatus,
)
from toc_orchestrator.models.interaction import (
    AgentInteraction,
    AgentMessage,
    InteractionStatus,
    MessageRole,
)
from toc_orchestrator.models.medication import (
    AdherenceEventType,
    AdherenceSource,
    EpisodeMedication,
    MedicationAdherenceEvent,
)
from toc_orchestrator.models.outreach import (
    AttemptStatus,
    InvalidAttemptTransition,
    OutreachAttempt,
    OutreachPlan,
    PlanStatus,
)
from toc_orchestrator.models.patient import ContactChannel, Patient
from toc_orchestrator.models.response import ImmutableRecordError, PatientResponse, RiskSignal
from toc_orchestrator.models.risk import RiskSource, RiskTransition
from toc_orchestrator.models.work_item import WorkItem, WorkItemStatus

__all__ = [
    # Audit
    "AuditEvent",
    "ActorType",
    # Patient & episode
    "Patient",
    "ContactChannel",
    "Episode",
    "EpisodeStatus",
    "ConditionCode",
    "RiskLevel",
    # Outreach
    "OutreachPlan",
    "OutreachAttempt",
    "PlanStatus",
    "AttemptStatus",
    "InvalidAttemptTransition",
    # Responses & conversations
    "PatientResponse",
    "RiskSignal",
    "ImmutableRecordError",
    "AgentInteraction",
    "AgentMessage",
    "InteractionStatus",
    "MessageRole",
    # Risk
    "RiskTransition",
    "RiskSource",
    # Escalation
    "EscalationTask",
    "TaskEvent",
    "TaskEventType",
    "TaskSeverity",
    "TaskStatus",
    "ACTIVE_TASK_STATUSES",
    "ResolutionOutcome",
    "StaffMember",
    "StaffRole",
    # Medication
    "EpisodeMedication",
    "MedicationAdherenceEvent",
    "AdherenceEventType",
    "AdherenceSource",
    # EHR
    "AdtMessageLog",
    "EncounterExport",
    "ExportDestination",
    "ExportStatus",
    # Queue
    "WorkItem",
    "WorkItemStatus",
]
