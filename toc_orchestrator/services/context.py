"""Collaborators shared by the orchestration services.

Services receive an ``OrchestratorContext`` instead of reaching for module
globals, so tests and jobs can substitute the gateway, external clients and
clock.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from toc_orchestrator.core.config import Settings, get_settings
from toc_orchestrator.core.errors import NotFoundError, StateConflictError
from toc_orchestrator.integrations.ehr import EHRClient, LoggingEHRClient
from toc_orchestrator.integrations.pharmacy import PharmacyClient, UnconfiguredPharmacyClient
from toc_orchestrator.models.episode import Episode
from toc_orchestrator.models.patient import Patient
from toc_orchestrator.services.notifications import LoggingGateway, NotificationGateway
from toc_orchestrator.utils.time import SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Clock(Protocol):
    def now(self) -> datetime: ...


@dataclass
class OrchestratorContext:
    """Session plus the external collaborators of one unit of work."""

    session: AsyncSession
    gateway: NotificationGateway = field(default_factory=LoggingGateway)
    pharmacy: PharmacyClient = field(default_factory=UnconfiguredPharmacyClient)
    ehr: EHRClient = field(default_factory=LoggingEHRClient)
    clock: Clock = field(default_factory=SystemClock)
    settings: Settings = field(default_factory=get_settings)

    def now(self) -> datetime:
        return self.clock.now()


async def retry_on_conflict(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    description: str,
) -> T:
    """Run a read-modify-commit operation, retrying once on a lost race.

    The operation must re-read everything it needs; on conflict the session
    is rolled back so the second run sees fresh state.

    Raises:
        StateConflictError: If the retry also loses
    """
    for attempt in (1, 2):
        try:
            return await operation()
        except (StaleDataError, IntegrityError) as e:
            await session.rollback()
            if attempt == 2:
                logger.warning(f"{description}: concurrent update, giving up")
                raise StateConflictError(
                    f"{description} conflicted with a concurrent update"
                ) from e
            logger.info(f"{description}: concurrent update, retrying")

    raise AssertionError("unreachable")


async def load_episode(session: AsyncSession, episode_id: str) -> Episode:
    """Load an episode with fresh state from the database."""
    result = await session.execute(
        select(Episode)
        .where(Episode.id == episode_id)
        .execution_options(populate_existing=True)
    )
    episode = result.scalar_one_or_none()
    if episode is None:
        raise NotFoundError("Episode", episode_id)
    return episode


async def load_patient(session: AsyncSession, patient_id: str) -> Patient:
    result = await session.execute(select(Patient).where(Patient.id == patient_id))
    patient = result.scalar_one_or_none()
    if patient is None:
        raise NotFoundError("Patient", patient_id)
    return patient
