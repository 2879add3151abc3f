"""Episode, risk and adherence request schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from toc_orchestrator.models.episode import RiskLevel


class EpisodeRead(BaseModel):
    """Episode state."""

    id: str
    patient_id: str
    condition_code: str
    discharge_at: datetime
    risk_level: str
    wellness_streak: int
    status: str
    active_plan_id: str | None
    closed_at: datetime | None = None
    close_reason: str | None = None

    model_config = {"from_attributes": True}


class RiskOverrideRequest(BaseModel):
    """Manual risk change by a staff member."""

    risk_level: RiskLevel = Field(..., alias="riskLevel")
    reason: str = Field(..., min_length=3, max_length=500)
    user_id: str = Field(..., min_length=1, max_length=100, alias="userId")

    model_config = {"populate_by_name": True}


class RiskTransitionRead(BaseModel):
    """One entry of an episode's risk history."""

    id: str
    episode_id: str
    from_level: str
    to_level: str
    signal: str | None
    source: str
    reason: str | None
    actor_id: str | None
    task_id: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class CloseEpisodeRequest(BaseModel):
    """Close an episode."""

    reason: str = Field(..., min_length=1, max_length=500)
    user_id: str | None = Field(None, max_length=100, alias="userId")

    model_config = {"populate_by_name": True}


class AdherenceActionRequest(BaseModel):
    """Adherence action: a pharmacy check or a patient-reported dose."""

    action: Literal["check_pharmacy", "log_dose"]
    medication: str | None = Field(None, max_length=200)
    taken: bool | None = None
    reported_at: datetime | None = Field(None, alias="reportedAt")

    model_config = {"populate_by_name": True}
