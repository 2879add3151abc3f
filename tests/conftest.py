"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from collections.abc import AsyncGenerator
from datetime import datetime
from itertools import count

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from toc_orchestrator.api.deps import get_clock, get_ehr_client, get_gateway, get_pharmacy_client
from toc_orchestrator.core.config import get_settings
from toc_orchestrator.db.base import Base
from toc_orchestrator.db.session import get_db
from toc_orchestrator.main import app
from toc_orchestrator.models.episode import Episode, EpisodeStatus, RiskLevel
from toc_orchestrator.models.escalation import StaffMember, StaffRole
from toc_orchestrator.models.medication import EpisodeMedication
from toc_orchestrator.models.patient import Patient
from toc_orchestrator.services.context import OrchestratorContext
from toc_orchestrator.services.plan_builder import OutreachPlanBuilder

from tests.helpers import (
    DISCHARGE_AT,
    FakeClock,
    FakeEHRClient,
    FakeGateway,
    FakePharmacy,
    reload,
)

# Use SQLite for testing (simpler than spinning up postgres)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

_mrns = count(1000)


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def async_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session_maker() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def pharmacy() -> FakePharmacy:
    return FakePharmacy()


@pytest.fixture
def ehr_client() -> FakeEHRClient:
    return FakeEHRClient()


@pytest.fixture
def test_settings():
    """Per-test copy of settings, safe to modify."""
    return get_settings().model_copy()


@pytest.fixture
def ctx(async_session, gateway, pharmacy, ehr_client, clock, test_settings) -> OrchestratorContext:
    return OrchestratorContext(
        session=async_session,
        gateway=gateway,
        pharmacy=pharmacy,
        ehr=ehr_client,
        clock=clock,
        settings=test_settings,
    )


@pytest.fixture
async def client(
    async_session, gateway, pharmacy, ehr_client, clock, test_settings
) -> AsyncGenerator[AsyncClient, None]:
    """Create API test client with overridden dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield async_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_pharmacy_client] = lambda: pharmacy
    app.dependency_overrides[get_ehr_client] = lambda: ehr_client
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_settings] = lambda: test_settings

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def cron_headers(test_settings) -> dict[str, str]:
    return {"Authorization": f"Bearer {test_settings.cron_secret}"}


@pytest.fixture
def make_patient(async_session):
    async def _make(
        phone: str | None = "+15555550100",
        email: str | None = "patient@example.com",
        **kwargs,
    ) -> Patient:
        patient = Patient(
            mrn=kwargs.pop("mrn", f"MRN{next(_mrns)}"),
            first_name=kwargs.pop("first_name", "Pat"),
            last_name=kwargs.pop("last_name", "Jones"),
            phone=phone,
            email=email,
            **kwargs,
        )
        async_session.add(patient)
        await async_session.commit()
        return patient

    return _make


@pytest.fixture
def make_episode(ctx, async_session, make_patient):
    """Create an open episode, with a built outreach plan unless told otherwise."""

    async def _make(
        condition: str = "HF",
        risk: RiskLevel = RiskLevel.LOW,
        discharge_at: datetime = DISCHARGE_AT,
        with_plan: bool = True,
        patient: Patient | None = None,
        medications: list[str] | None = None,
    ) -> Episode:
        patient = patient or await make_patient()
        episode = Episode(
            patient_id=patient.id,
            condition_code=condition,
            discharge_at=discharge_at,
            risk_level=risk.value,
            wellness_streak=0,
            status=EpisodeStatus.OPEN.value,
        )
        async_session.add(episode)
        await async_session.flush()
        for name in medications or []:
            async_session.add(EpisodeMedication(episode_id=episode.id, name=name))
        await async_session.commit()

        if with_plan:
            await OutreachPlanBuilder(ctx).build_plan(episode.id, reason="DISCHARGE")
        return await reload(async_session, Episode, episode.id)

    return _make


@pytest.fixture
def make_staff(async_session):
    async def _make(
        name: str,
        role: StaffRole = StaffRole.NURSE,
        specialties: list[str] | None = None,
        is_available: bool = True,
    ) -> StaffMember:
        staff = StaffMember(
            name=name,
            email=f"{name.lower().replace(' ', '.')}@hospital.example",
            role=role.value,
            specialties=specialties or [],
            is_available=is_available,
        )
        async_session.add(staff)
        await async_session.commit()
        return staff

    return _make
