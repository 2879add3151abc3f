"""EHR integration schemas."""

from datetime import date, datetime

from pydantic import BaseModel, Field, field_validator

from toc_orchestrator.models.ehr import ExportDestination

SUPPORTED_ADT_EVENTS = {"A01", "A03", "A08"}


class ADTMedication(BaseModel):
    """Discharge medication carried on an ADT message."""

    name: str = Field(..., min_length=1, max_length=200)
    dose: str | None = None
    frequency: str | None = None
    instructions: str | None = None


class ADTMessage(BaseModel):
    """Admit/discharge/transfer event, from JSON or parsed HL7 v2."""

    message_id: str = Field(..., min_length=1, max_length=100)
    event_type: str
    mrn: str = Field(..., min_length=1, max_length=64)
    first_name: str = ""
    last_name: str = ""
    date_of_birth: date | None = None
    sex: str | None = None
    phone: str | None = None
    email: str | None = None
    admit_at: datetime | None = None
    discharge_at: datetime | None = None
    diagnosis_codes: list[str] = Field(default_factory=list)
    medications: list[ADTMedication] = Field(default_factory=list)
    source_system: str | None = None

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, v: str) -> str:
        # Accept "ADT^A03" as well as "A03"
        parts = v.split("^")
        event = (parts[1] if len(parts) > 1 else parts[0]).strip().upper()
        if event not in SUPPORTED_ADT_EVENTS:
            raise ValueError(f"Unsupported ADT event: {v}")
        return event


class ADTResult(BaseModel):
    """Outcome of processing an ADT message."""

    success: bool = True
    message_id: str
    event_type: str
    patient_id: str
    episode_id: str | None = None
    plan_id: str | None = None
    condition_code: str | None = None
    plan_error: str | None = None
    duplicate: bool = False


class ExportNoteRequest(BaseModel):
    """Request to push an encounter note to the EHR."""

    destination: ExportDestination


class EncounterExportRead(BaseModel):
    """Encounter export status."""

    id: str
    episode_id: str
    destination: str
    status: str
    content_type: str
    document_reference: str | None
    attempts: int
    last_error: str | None
    created_at: datetime

    model_config = {"from_attributes": True}
