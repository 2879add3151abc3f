"""Patient model."""

from datetime import date
from enum import Enum

from sqlalchemy import Date, String
from sqlalchemy.orm import Mapped, mapped_column

from toc_orchestrator.db.base import Base, TimestampMixin


class ContactChannel(str, Enum):
    """Channel used to reach a patient or staff member."""

    SMS = "SMS"
    VOICE = "VOICE"
    EMAIL = "EMAIL"


class Patient(Base, TimestampMixin):
    """Patient identity and contact details.

    Upserted from ADT feeds keyed by MRN.
    """

    __tablename__ = "patients"

    mrn: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )
    first_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    last_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    date_of_birth: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
    )
    sex: Mapped[str | None] = mapped_column(
        String(10),
        nullable=True,
    )
    phone: Mapped[str | None] = mapped_column(
        String(30),
        nullable=True,
    )
    email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    language_code: Mapped[str] = mapped_column(
        String(10),
        default="EN",
        nullable=False,
    )
    preferred_channel: Mapped[ContactChannel] = mapped_column(
        String(10),
        default=ContactChannel.SMS,
        nullable=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def contact_for(self, channel: str) -> str | None:
        """Return the address for a channel, or None if not on file."""
        if channel == ContactChannel.EMAIL:
            return self.email
        return self.phone

    def __repr__(self) -> str:
        return f"<Patient {self.id[:8]}... mrn={self.mrn}>"
