"""Notification gateway for patient and staff messages.

The orchestrator decides when to contact someone and what to say; delivery
is delegated to a provider behind ``NotificationGateway``. Providers report
failures as transient (retry later) or permanent (give up).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from toc_orchestrator.core.errors import OrchestratorError, TransientIntegrationError
from toc_orchestrator.utils.time import utc_now

logger = logging.getLogger(__name__)


class TransientGatewayError(TransientIntegrationError):
    """Provider unavailable, rate limited or timed out. Retry later."""

    pass


class PermanentGatewayError(OrchestratorError):
    """Provider rejected the message (bad number, opted out)."""

    code = "permanent_delivery_failure"
    status_code = 502


@dataclass
class DeliveryReceipt:
    """Provider acknowledgement of an accepted message."""

    provider_message_id: str
    accepted_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


class NotificationGateway(ABC):
    """Abstract base class for delivery providers."""

    @abstractmethod
    async def send(
        self,
        channel: str,
        recipient: str,
        body: str,
        idempotency_key: str,
    ) -> DeliveryReceipt:
        """Send a message and return the provider receipt.

        Raises TransientGatewayError or PermanentGatewayError on failure.
        """
        pass


class LoggingGateway(NotificationGateway):
    """Provider stand-in that logs messages instead of sending them.

    Used in development; production deployments inject a real provider.
    Sends are de-duplicated on the idempotency key like real providers do.
    """

    def __init__(self, provider_name: str = "log") -> None:
        self.provider_name = provider_name
        self._sent: dict[str, DeliveryReceipt] = {}

    async def send(
        self,
        channel: str,
        recipient: str,
        body: str,
        idempotency_key: str,
    ) -> DeliveryReceipt:
        if idempotency_key in self._sent:
            return self._sent[idempotency_key]

        logger.info(f"Sending {channel} to {recipient}: {body[:50]}...")

        receipt = DeliveryReceipt(
            provider_message_id=f"{channel.lower()}_{uuid4().hex[:16]}",
            accepted_at=utc_now(),
            metadata={"provider": self.provider_name},
        )
        self._sent[idempotency_key] = receipt
        return receipt


async def send_with_timeout(
    gateway: NotificationGateway,
    channel: str,
    recipient: str,
    body: str,
    idempotency_key: str,
    timeout_seconds: float,
) -> DeliveryReceipt:
    """Send through the gateway, treating a timeout as a transient failure."""
    try:
        return await asyncio.wait_for(
            gateway.send(channel, recipient, body, idempotency_key),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise TransientGatewayError(
            f"{channel} send timed out after {timeout_seconds}s"
        ) from e
