"""Orchestration services."""

from toc_orchestrator.services.audit import list_audit_events, write_audit_event
from toc_orchestrator.services.context import OrchestratorContext, retry_on_conflict

__all__ = [
    "OrchestratorContext",
    "retry_on_conflict",
    "write_audit_event",
    "list_audit_events",
]
