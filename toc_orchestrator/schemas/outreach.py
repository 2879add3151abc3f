"""Outreach response schemas."""

from typing import Any

from pydantic import BaseModel, Field, model_validator


class PatientReplyPayload(BaseModel):
    """Inbound patient reply to an outreach attempt.

    Channels send free text; structured channels may send a number instead.
    """

    text: str | None = Field(None, max_length=5000)
    value_number: float | None = Field(None, alias="valueNumber")
    channel: str | None = None
    received_at: str | None = Field(None, alias="receivedAt")

    model_config = {"populate_by_name": True, "extra": "allow"}

    @model_validator(mode="after")
    def require_content(self) -> "PatientReplyPayload":
        if (self.text is None or not self.text.strip()) and self.value_number is None:
            raise ValueError("Reply must contain text or valueNumber")
        return self

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        return payload
