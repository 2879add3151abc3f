"""FastAPI dependency injection utilities."""

import hmac
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from toc_orchestrator.core.config import Settings, get_settings
from toc_orchestrator.db.session import get_db
from toc_orchestrator.integrations.ehr import EHRClient, LoggingEHRClient
from toc_orchestrator.integrations.pharmacy import PharmacyClient, UnconfiguredPharmacyClient
from toc_orchestrator.services.context import Clock, OrchestratorContext
from toc_orchestrator.services.notifications import LoggingGateway, NotificationGateway
from toc_orchestrator.utils.time import SystemClock

# Security scheme
security = HTTPBearer(auto_error=False)

_gateway = LoggingGateway()


def get_gateway() -> NotificationGateway:
    """Notification provider. Overridden by deployments and tests."""
    return _gateway


def get_pharmacy_client() -> PharmacyClient:
    return UnconfiguredPharmacyClient()


def get_ehr_client() -> EHRClient:
    return LoggingEHRClient()


def get_clock() -> Clock:
    return SystemClock()


async def get_context(
    session: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[NotificationGateway, Depends(get_gateway)],
    pharmacy: Annotated[PharmacyClient, Depends(get_pharmacy_client)],
    ehr: Annotated[EHRClient, Depends(get_ehr_client)],
    clock: Annotated[Clock, Depends(get_clock)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> OrchestratorContext:
    """Build the per-request orchestration context."""
    return OrchestratorContext(
        session=session,
        gateway=gateway,
        pharmacy=pharmacy,
        ehr=ehr,
        clock=clock,
        settings=settings,
    )


async def verify_cron_secret(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> None:
    """Require ``Authorization: Bearer <cron_secret>``.

    Raises:
        HTTPException: If the secret is missing or wrong
    """
    if not credentials or not hmac.compare_digest(
        credentials.credentials.encode(), settings.cron_secret.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
Context = Annotated[OrchestratorContext, Depends(get_context)]
