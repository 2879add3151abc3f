"""EHR integration bookkeeping: inbound ADT log and outbound exports."""

from enum import Enum

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from toc_orchestrator.db.base import Base, TimestampMixin


class AdtMessageLog(Base, TimestampMixin):
    """Processed ADT message, keyed by the sender's message control id."""

    __tablename__ = "adt_message_logs"

    external_message_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
    )
    message_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    patient_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
    )
    episode_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
    )
    # Response returned to the sender; replayed for duplicates
    result: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )


class ExportDestination(str, Enum):
    """Supported note destinations."""

    EHR_INBOX = "EHR_INBOX"
    SECURE_FAX = "SECURE_FAX"
    DIRECT_MSG = "DIRECT_MSG"


class ExportStatus(str, Enum):
    """Outbound export status."""

    PENDING = "PENDING"
    EXPORTED = "EXPORTED"
    FAILED = "FAILED"


class EncounterExport(Base, TimestampMixin):
    """Encounter note pushed back to the EHR."""

    __tablename__ = "encounter_exports"

    episode_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("episodes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    destination: Mapped[ExportDestination] = mapped_column(
        String(20),
        nullable=False,
    )
    status: Mapped[ExportStatus] = mapped_column(
        String(20),
        default=ExportStatus.PENDING,
        nullable=False,
    )
    content_type: Mapped[str] = mapped_column(
        String(50),
        default="text/plain",
        nullable=False,
    )
    document_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    document_reference: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
