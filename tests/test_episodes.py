"""Tests for closing episodes."""

import pytest

from tests.helpers import plan_attempts
from toc_orchestrator.core.errors import NotFoundError, StateConflictError, ValidationError
from toc_orchestrator.models.escalation import TaskStatus
from toc_orchestrator.models.outreach import AttemptStatus, OutreachPlan, PlanStatus
from toc_orchestrator.models.response import RiskSignal
from toc_orchestrator.models.risk import RiskSource
from toc_orchestrator.services.audit import list_audit_events
from toc_orchestrator.services.episodes import close_episode
from toc_orchestrator.services.escalation import EscalationService
from toc_orchestrator.services.risk import RiskStateMachine


class TestCloseEpisode:
    async def test_close_cancels_outreach(self, ctx, async_session, clock, make_episode) -> None:
        episode = await make_episode()
        plan_id = episode.active_plan_id

        closed = await close_episode(ctx, episode.id, reason="Readmitted", actor_id="nurse-1")

        plan = await async_session.get(OutreachPlan, plan_id, populate_existing=True)
        assert closed.status == "CLOSED"
        assert closed.closed_at == clock.now()
        assert closed.close_reason == "Readmitted"
        assert closed.active_plan_id is None
        assert plan.status == PlanStatus.CANCELLED
        assert all(
            a.status == AttemptStatus.CANCELLED and a.status_reason == "EPISODE_CLOSED"
            for a in await plan_attempts(async_session, plan_id)
        )

    async def test_close_is_audited(self, ctx, async_session, make_episode) -> None:
        episode = await make_episode()

        await close_episode(ctx, episode.id, reason="Care complete")

        events = await list_audit_events(
            async_session, entity_type="episode", entity_id=episode.id, action="episode_closed"
        )
        assert len(events) == 1
        assert events[0].event_metadata["attempts_cancelled"] == 3

    async def test_audit_trail_is_keyed_by_episode(self, ctx, async_session, make_episode) -> None:
        episode = await make_episode()
        await close_episode(ctx, episode.id, reason="Care complete")

        actions = {e.action for e in await list_audit_events(async_session, episode_id=episode.id)}

        assert {"plan_built", "episode_closed"} <= actions

    async def test_open_tasks_survive_close(self, ctx, make_episode) -> None:
        episode = await make_episode()
        outcome = await RiskStateMachine(ctx).apply_signal(
            episode.id, RiskSignal.ELEVATED, RiskSource.INTERPRETER, idempotency_key="k1"
        )

        await close_episode(ctx, episode.id, reason="Readmitted")

        task = await EscalationService(ctx).get_task(outcome.task_id)
        assert task.status == TaskStatus.OPEN

    async def test_close_twice_conflicts(self, ctx, make_episode) -> None:
        episode = await make_episode()
        await close_episode(ctx, episode.id, reason="Readmitted")

        with pytest.raises(StateConflictError):
            await close_episode(ctx, episode.id, reason="Readmitted")

    async def test_reason_required(self, ctx, make_episode) -> None:
        episode = await make_episode()

        with pytest.raises(ValidationError):
            await close_episode(ctx, episode.id, reason=" ")

    async def test_unknown_episode(self, ctx) -> None:
        with pytest.raises(NotFoundError):
            await close_episode(ctx, "missing", reason="Readmitted")
