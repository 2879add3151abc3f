"""Pydantic schemas for request/response validation."""

from toc_orchestrator.schemas.ehr import (
    ADTMedication,
    ADTMessage,
    ADTResult,
    EncounterExportRead,
    ExportNoteRequest,
)
from toc_orchestrator.schemas.episode import (
    AdherenceActionRequest,
    CloseEpisodeRequest,
    EpisodeRead,
    RiskOverrideRequest,
    RiskTransitionRead,
)
from toc_orchestrator.schemas.outreach import PatientReplyPayload
from toc_orchestrator.schemas.task import ResolveTaskRequest, TaskRead

__all__ = [
    "ADTMedication",
    "ADTMessage",
    "ADTResult",
    "EncounterExportRead",
    "ExportNoteRequest",
    "AdherenceActionRequest",
    "CloseEpisodeRequest",
    "EpisodeRead",
    "RiskOverrideRequest",
    "RiskTransitionRead",
    "PatientReplyPayload",
    "ResolveTaskRequest",
    "TaskRead",
]
