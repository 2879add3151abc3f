"""Conversation thread models backing patient check-ins."""

from enum import Enum

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from toc_orchestrator.db.base import Base, TimestampMixin


class InteractionStatus(str, Enum):
    """Status of a conversation thread."""

    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class MessageRole(str, Enum):
    """Author of a thread message."""

    AGENT = "agent"  # Outbound question
    PATIENT = "patient"  # Inbound reply
    SYSTEM = "system"  # Audit notes such as risk changes


class AgentInteraction(Base, TimestampMixin):
    """Conversation thread for an episode's check-ins.

    Holds the running wellness confirmation count and any numeric follow-up
    question the patient still owes an answer to.
    """

    __tablename__ = "agent_interactions"

    episode_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("episodes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    patient_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    channel: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
    )
    status: Mapped[InteractionStatus] = mapped_column(
        String(20),
        default=InteractionStatus.ACTIVE,
        nullable=False,
    )
    # Consecutive no-concern responses in this conversation
    wellness_confirmation_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    pending_follow_up_rule_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    pending_follow_up_attempt_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<AgentInteraction {self.id[:8]}... episode={self.episode_id[:8]}>"


class AgentMessage(Base, TimestampMixin):
    """A single message in a conversation thread."""

    __tablename__ = "agent_messages"

    interaction_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("agent_interactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[MessageRole] = mapped_column(
        String(20),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    sequence_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    attempt_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
    )
