"""Outbound EHR document client."""

import logging
from abc import ABC, abstractmethod
from uuid import uuid4

from toc_orchestrator.core.errors import OrchestratorError, TransientIntegrationError

logger = logging.getLogger(__name__)


class EHRTransientError(TransientIntegrationError):
    """EHR endpoint unavailable. Retry later."""

    pass


class EHRRejectedError(OrchestratorError):
    """EHR refused the document."""

    code = "ehr_rejected"
    status_code = 502


class EHRClient(ABC):
    """Abstract base class for pushing documents into the EHR."""

    @abstractmethod
    async def send_document(
        self,
        mrn: str,
        destination: str,
        content: bytes,
        content_type: str,
        idempotency_key: str,
    ) -> str:
        """Deliver a document and return the EHR's document reference."""
        pass


class LoggingEHRClient(EHRClient):
    """Development client that logs documents instead of delivering them."""

    async def send_document(
        self,
        mrn: str,
        destination: str,
        content: bytes,
        content_type: str,
        idempotency_key: str,
    ) -> str:
        logger.info(
            f"Exporting {content_type} ({len(content)} bytes) for MRN {mrn} to {destination}"
        )
        return f"doc_{uuid4().hex[:16]}"
