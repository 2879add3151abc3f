"""Tests for escalation tasks, assignment and SLA monitoring."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from tests.helpers import DISCHARGE_AT, reload
from toc_orchestrator.core.errors import NotFoundError, StateConflictError, ValidationError
from toc_orchestrator.models.episode import Episode
from toc_orchestrator.models.escalation import (
    EscalationTask,
    StaffRole,
    TaskEventType,
    TaskSeverity,
    TaskStatus,
)
from toc_orchestrator.models.response import RiskSignal
from toc_orchestrator.models.risk import RiskSource
from toc_orchestrator.models.work_item import WorkItem
from toc_orchestrator.services.escalation import EscalationService
from toc_orchestrator.services.risk import RiskStateMachine
from toc_orchestrator.services.work_queue import KIND_REPLAN, KIND_STAFF_NOTIFICATION


@pytest.fixture
def escalate(ctx, async_session):
    """Raise an episode's risk one level and return its task."""

    async def _escalate(episode: Episode, key: str = "e1") -> EscalationTask:
        outcome = await RiskStateMachine(ctx).apply_signal(
            episode.id, RiskSignal.ELEVATED, RiskSource.INTERPRETER, idempotency_key=key
        )
        return await reload(async_session, EscalationTask, outcome.task_id)

    return _escalate


async def _queued(session, kind: str) -> list[WorkItem]:
    result = await session.execute(select(WorkItem).where(WorkItem.kind == kind))
    return list(result.scalars().all())


class TestAssignment:
    """Tests for picking the nurse who gets a task."""

    async def test_task_goes_to_least_loaded_nurse(
        self, make_episode, make_staff, escalate
    ) -> None:
        alice = await make_staff("Alice Adams")
        bob = await make_staff("Bob Brown")

        first = await escalate(await make_episode())
        second = await escalate(await make_episode())

        assert first.assigned_to_id == alice.id
        assert second.assigned_to_id == bob.id
        assert second.status == TaskStatus.ASSIGNED

    async def test_condition_specialist_preferred(self, make_episode, make_staff, escalate) -> None:
        await make_staff("Amy Allen")
        specialist = await make_staff("Zoe Zimmer", specialties=["HF"])

        task = await escalate(await make_episode(condition="HF"))

        assert task.assigned_to_id == specialist.id

    async def test_unavailable_nurses_and_supervisors_are_skipped(
        self, make_episode, make_staff, escalate
    ) -> None:
        await make_staff("Amy Allen", is_available=False)
        await make_staff("Sam Supervisor", role=StaffRole.SUPERVISOR)

        task = await escalate(await make_episode())

        assert task.assigned_to_id is None
        assert task.status == TaskStatus.OPEN

    async def test_assignment_notifies_the_nurse(
        self, async_session, make_episode, make_staff, escalate
    ) -> None:
        nurse = await make_staff("Amy Allen")

        await escalate(await make_episode())

        notifications = await _queued(async_session, KIND_STAFF_NOTIFICATION)
        assert {n.payload["staff_id"] for n in notifications} == {nurse.id}

    async def test_raised_tasks_are_spread_across_nurses(
        self, ctx, async_session, make_episode, make_staff, escalate
    ) -> None:
        alice = await make_staff("Alice Adams")
        bob = await make_staff("Bob Brown")
        critical = await RiskStateMachine(ctx).apply_signal(
            (await make_episode()).id, RiskSignal.CRITICAL, RiskSource.INTERPRETER, idempotency_key="c1"
        )
        episodes = [await make_episode() for _ in range(3)]
        for index, episode in enumerate(episodes):
            task = await escalate(episode, key=f"m{index}")
            assert task.assigned_to_id == bob.id

        raised = []
        for index, episode in enumerate(episodes):
            episode = await reload(async_session, Episode, episode.id)
            raised.append(await escalate(episode, key=f"h{index}"))

        high_tasks = [await reload(async_session, EscalationTask, critical.task_id)] + [
            await reload(async_session, EscalationTask, task.id) for task in raised
        ]
        assert all(task.severity == TaskSeverity.HIGH for task in high_tasks)
        holders = [task.assigned_to_id for task in high_tasks]
        assert holders.count(alice.id) == 2
        assert holders.count(bob.id) == 2
        assert raised[-1].assigned_to_id == alice.id

        events = [e.event_type for e in await EscalationService(ctx).list_events(raised[-1].id)]
        assert TaskEventType.REASSIGNED in events

    async def test_raised_task_stays_when_holder_is_not_busier(
        self, ctx, async_session, make_episode, make_staff, escalate
    ) -> None:
        alice = await make_staff("Alice Adams")
        await make_staff("Bob Brown")
        episode = await make_episode()
        await escalate(episode)

        task = await escalate(await reload(async_session, Episode, episode.id), key="e2")

        assert task.severity == TaskSeverity.HIGH
        assert task.assigned_to_id == alice.id

    async def test_monitor_assigns_open_task_when_nurse_available(
        self, ctx, async_session, make_episode, make_staff, escalate
    ) -> None:
        task = await escalate(await make_episode())
        nurse = await make_staff("Amy Allen")

        result = await EscalationService(ctx).run_sla_monitor(DISCHARGE_AT + timedelta(minutes=5))

        task = await reload(async_session, EscalationTask, task.id)
        assert result.assigned == 1
        assert task.assigned_to_id == nurse.id


class TestSeverity:
    async def test_bump_to_same_severity_keeps_deadline(
        self, ctx, async_session, clock, make_episode, escalate
    ) -> None:
        episode = await make_episode()
        task = await escalate(episode)
        deadline = task.sla_due_at

        clock.advance(hours=1)
        service = EscalationService(ctx)
        episode = await reload(async_session, Episode, episode.id)
        bumped, created = await service.open_or_bump(
            episode, TaskSeverity.MEDIUM, ["ADHERENCE:ELEVATED"], clock.now()
        )
        await async_session.commit()

        assert created is False
        assert bumped.id == task.id
        assert bumped.sla_due_at == deadline
        assert "ADHERENCE:ELEVATED" in bumped.reason_codes

    async def test_higher_severity_restarts_sla(self, ctx, async_session, clock, make_episode, escalate) -> None:
        episode = await make_episode()
        task = await escalate(episode)
        assert task.sla_due_at == DISCHARGE_AT + timedelta(minutes=1440)

        clock.advance(hours=1)
        task = await escalate(await reload(async_session, Episode, episode.id), key="e2")

        assert task.severity == TaskSeverity.HIGH
        assert task.sla_due_at == clock.now() + timedelta(minutes=120)


class TestSlaMonitor:
    """Tests for SLA warnings and breaches."""

    async def test_warning_near_deadline(
        self, ctx, async_session, make_episode, make_staff, escalate
    ) -> None:
        await make_staff("Amy Allen")
        task = await escalate(await make_episode())
        service = EscalationService(ctx)

        early = await service.run_sla_monitor(DISCHARGE_AT + timedelta(minutes=1000))
        warned = await service.run_sla_monitor(DISCHARGE_AT + timedelta(minutes=1081))
        again = await service.run_sla_monitor(DISCHARGE_AT + timedelta(minutes=1100))

        task = await reload(async_session, EscalationTask, task.id)
        assert early.warned == 0
        assert warned.warned == 1
        assert again.warned == 0
        assert task.sla_warning_sent_at == DISCHARGE_AT + timedelta(minutes=1081)

    async def test_breach_raises_severity_then_reassigns(
        self, ctx, async_session, make_episode, make_staff, escalate
    ) -> None:
        alice = await make_staff("Alice Adams")
        bob = await make_staff("Bob Brown")
        task = await escalate(await make_episode())
        assert task.assigned_to_id == alice.id
        service = EscalationService(ctx)

        first_breach = DISCHARGE_AT + timedelta(minutes=1441)
        result = await service.run_sla_monitor(first_breach)

        task = await reload(async_session, EscalationTask, task.id)
        assert result.breached == 1
        assert task.severity == TaskSeverity.HIGH
        assert task.escalation_count == 1
        assert task.sla_due_at == first_breach + timedelta(minutes=120)
        assert task.assigned_to_id == alice.id

        result = await service.run_sla_monitor(first_breach + timedelta(minutes=121))

        task = await reload(async_session, EscalationTask, task.id)
        assert result.breached == 1
        assert result.reassigned == 1
        assert task.assigned_to_id == bob.id
        assert task.escalation_count == 2

        event_types = [e.event_type for e in await service.list_events(task.id)]
        assert event_types.count(TaskEventType.SLA_BREACH) == 2
        assert TaskEventType.REASSIGNED in event_types

    async def test_breach_notifies_supervisors(self, ctx, async_session, make_episode, escalate) -> None:
        await escalate(await make_episode())

        await EscalationService(ctx).run_sla_monitor(DISCHARGE_AT + timedelta(days=2))

        roles = [n.payload["role"] for n in await _queued(async_session, KIND_STAFF_NOTIFICATION)]
        assert "SUPERVISOR" in roles

    async def test_breach_never_changes_episode_risk(
        self, ctx, async_session, make_episode, escalate
    ) -> None:
        episode = await make_episode()
        await escalate(episode)

        await EscalationService(ctx).run_sla_monitor(DISCHARGE_AT + timedelta(days=2))

        assert (await reload(async_session, Episode, episode.id)).risk_level == "MEDIUM"


class TestResolve:
    """Tests for closing tasks."""

    async def test_resolve_records_outcome_and_queues_replan(
        self, ctx, async_session, make_episode, escalate
    ) -> None:
        episode = await make_episode()
        task = await escalate(episode)

        resolved = await EscalationService(ctx).resolve_task(
            task.id, "PATIENT_CONTACTED", "Spoke with patient, stable", "nurse-1"
        )

        assert resolved.status == TaskStatus.RESOLVED
        assert resolved.outcome == "PATIENT_CONTACTED"
        assert resolved.resolved_by == "nurse-1"
        assert (await reload(async_session, Episode, episode.id)).risk_level == "MEDIUM"

        keys = [i.idempotency_key for i in await _queued(async_session, KIND_REPLAN)]
        assert f"replan:task:{task.id}" in keys

    async def test_resolving_twice_conflicts(self, ctx, make_episode, escalate) -> None:
        task = await escalate(await make_episode())
        service = EscalationService(ctx)
        await service.resolve_task(task.id, "NO_ACTION_NEEDED", "Fine", "nurse-1")

        with pytest.raises(StateConflictError):
            await service.resolve_task(task.id, "NO_ACTION_NEEDED", "Fine", "nurse-1")

    @pytest.mark.parametrize("outcome,notes", [("SOLVED", "notes"), ("PATIENT_CONTACTED", "  ")])
    async def test_invalid_resolution(self, ctx, make_episode, escalate, outcome, notes) -> None:
        task = await escalate(await make_episode())

        with pytest.raises(ValidationError):
            await EscalationService(ctx).resolve_task(task.id, outcome, notes, "nurse-1")

    async def test_unknown_task(self, ctx) -> None:
        with pytest.raises(NotFoundError):
            await EscalationService(ctx).resolve_task("missing", "NO_ACTION_NEEDED", "x", None)
