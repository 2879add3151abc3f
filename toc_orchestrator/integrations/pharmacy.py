"""Pharmacy fill-status client."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from toc_orchestrator.core.errors import TransientIntegrationError

logger = logging.getLogger(__name__)


class PharmacyError(TransientIntegrationError):
    """Pharmacy system could not answer."""

    pass


@dataclass
class PharmacyFill:
    """Fill status of one prescription."""

    medication: str
    picked_up: bool
    filled_at: datetime | None = None
    picked_up_at: datetime | None = None


class PharmacyClient(ABC):
    """Abstract base class for pharmacy integrations."""

    @abstractmethod
    async def get_fill_status(self, mrn: str, medications: list[str]) -> list[PharmacyFill]:
        """Return fill status for the patient's discharge medications.

        Raises PharmacyError when the pharmacy cannot be queried.
        """
        pass


class UnconfiguredPharmacyClient(PharmacyClient):
    """Placeholder used when no pharmacy integration is configured.

    Every check fails, so adherence is reported as unknown rather than
    silently treated as picked up.
    """

    async def get_fill_status(self, mrn: str, medications: list[str]) -> list[PharmacyFill]:
        logger.warning("Pharmacy check requested but no pharmacy integration is configured")
        raise PharmacyError("Pharmacy integration not configured")
