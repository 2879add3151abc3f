"""Shared plumbing for the scheduled job entry points."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from toc_orchestrator.core.config import get_settings
from toc_orchestrator.services.context import OrchestratorContext

logger = logging.getLogger(__name__)


def resolve_database_url(database_url: str | None = None) -> str:
    """Explicit URL, else DATABASE_URL from settings; sync postgres URLs become asyncpg."""
    db_url = database_url or get_settings().database_url
    if not db_url:
        raise ValueError("DATABASE_URL environment variable not set")

    if db_url.startswith("postgresql://"):
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return db_url


@asynccontextmanager
async def job_context(database_url: str | None = None) -> AsyncGenerator[OrchestratorContext, None]:
    """Open an engine and session for one job run and dispose of them afterwards."""
    engine = create_async_engine(resolve_database_url(database_url), echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    try:
        async with session_factory() as session:
            yield OrchestratorContext(session=session)
    finally:
        await engine.dispose()
