"""Escalation task schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class ResolveTaskRequest(BaseModel):
    """Staff resolution of an escalation task."""

    outcome: str = Field(..., min_length=1, max_length=50)
    notes: str = Field("", max_length=5000)
    user_id: str = Field(..., min_length=1, max_length=100, alias="userId")

    model_config = {"populate_by_name": True}


class TaskRead(BaseModel):
    """Escalation task state."""

    id: str
    episode_id: str
    severity: str
    status: str
    reason_codes: list[str]
    assigned_to_id: str | None
    sla_due_at: datetime
    escalation_count: int
    outcome: str | None
    resolution_notes: str | None
    resolved_by: str | None
    resolved_at: datetime | None

    model_config = {"from_attributes": True}
