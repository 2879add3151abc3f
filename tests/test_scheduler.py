"""Tests for the outreach scheduler sweep."""

from datetime import timedelta

from sqlalchemy import select

from tests.helpers import DISCHARGE_AT, plan_attempts, reload
from toc_orchestrator.models.episode import Episode
from toc_orchestrator.models.interaction import AgentMessage, MessageRole
from toc_orchestrator.models.outreach import AttemptStatus, OutreachPlan, PlanStatus
from toc_orchestrator.rules import load_content_pack
from toc_orchestrator.services.episodes import close_episode
from toc_orchestrator.services.interpreter import ResponseInterpreter
from toc_orchestrator.services.notifications import PermanentGatewayError, TransientGatewayError
from toc_orchestrator.services.scheduler import OutreachScheduler
from toc_orchestrator.services.work_queue import WorkQueueRunner

FIRST_DUE = DISCHARGE_AT + timedelta(hours=24)


class TestDispatch:
    """Tests for sending due attempts."""

    async def test_nothing_is_sent_before_due(self, ctx, gateway, make_episode) -> None:
        await make_episode()

        result = await OutreachScheduler(ctx).run_sweep(DISCHARGE_AT + timedelta(hours=23))

        assert result.sent == 0
        assert gateway.sent == []

    async def test_due_attempt_is_sent(self, ctx, async_session, gateway, make_episode) -> None:
        episode = await make_episode()

        result = await OutreachScheduler(ctx).run_sweep(FIRST_DUE)

        attempts = await plan_attempts(async_session, episode.active_plan_id)
        assert result.sent == 1
        assert attempts[0].status == AttemptStatus.SENT
        assert attempts[0].sent_at == FIRST_DUE
        assert attempts[0].provider_message_id == "fake-1"
        assert attempts[1].status == AttemptStatus.PENDING

        assert len(gateway.sent) == 1
        message = gateway.sent[0]
        assert message["channel"] == "SMS"
        assert message["recipient"] == "+15555550100"
        assert message["idempotency_key"] == attempts[0].id
        assert message["body"] == load_content_pack().question_text("GENERAL_WELLBEING")

    async def test_sent_question_is_recorded_in_thread(self, ctx, async_session, make_episode) -> None:
        episode = await make_episode()

        await OutreachScheduler(ctx).run_sweep(FIRST_DUE)

        attempts = await plan_attempts(async_session, episode.active_plan_id)
        result = await async_session.execute(
            select(AgentMessage).where(AgentMessage.attempt_id == attempts[0].id)
        )
        messages = list(result.scalars().all())
        assert len(messages) == 1
        assert messages[0].role == MessageRole.AGENT

    async def test_repeated_sweep_sends_once(self, ctx, gateway, make_episode) -> None:
        await make_episode()
        scheduler = OutreachScheduler(ctx)

        first = await scheduler.run_sweep(FIRST_DUE)
        second = await scheduler.run_sweep(FIRST_DUE + timedelta(minutes=5))

        assert first.sent == 1
        assert second.sent == 0
        assert len(gateway.sent) == 1

    async def test_inside_grace_window_still_sends(self, ctx, make_episode) -> None:
        await make_episode()

        result = await OutreachScheduler(ctx).run_sweep(FIRST_DUE + timedelta(minutes=119))

        assert result.sent == 1

    async def test_past_grace_window_is_missed(self, ctx, async_session, gateway, make_episode) -> None:
        episode = await make_episode()

        result = await OutreachScheduler(ctx).run_sweep(FIRST_DUE + timedelta(hours=3))

        attempts = await plan_attempts(async_session, episode.active_plan_id)
        assert result.missed == 1
        assert result.sent == 0
        assert attempts[0].status == AttemptStatus.MISSED
        assert attempts[0].status_reason == "GRACE_WINDOW_EXPIRED"
        assert gateway.sent == []

    async def test_later_attempt_waits_for_pending_predecessor(
        self, ctx, async_session, gateway, make_episode
    ) -> None:
        episode = await make_episode()
        attempts = await plan_attempts(async_session, episode.active_plan_id)
        # Earlier attempt still pending and not yet due
        attempts[0].due_at = DISCHARGE_AT + timedelta(hours=100)
        await async_session.commit()

        result = await OutreachScheduler(ctx).run_sweep(DISCHARGE_AT + timedelta(hours=72))

        assert result.deferred == 1
        assert gateway.sent == []


class TestDeliveryFailures:
    async def test_transient_failure_leaves_attempt_pending(
        self, ctx, async_session, gateway, make_episode
    ) -> None:
        episode = await make_episode()
        gateway.failures.append(TransientGatewayError("provider busy"))
        scheduler = OutreachScheduler(ctx)

        result = await scheduler.run_sweep(FIRST_DUE)

        attempt = (await plan_attempts(async_session, episode.active_plan_id))[0]
        assert result.failed == 1
        assert attempt.status == AttemptStatus.PENDING
        assert attempt.dispatch_failures == 1
        assert attempt.dispatch_claimed_at is None
        assert attempt.last_dispatch_error == "provider busy"

        retry = await scheduler.run_sweep(FIRST_DUE + timedelta(minutes=10))

        assert retry.sent == 1
        assert len(gateway.sent) == 1

    async def test_permanent_failure_marks_missed(self, ctx, async_session, gateway, make_episode) -> None:
        episode = await make_episode()
        gateway.failures.append(PermanentGatewayError("number opted out"))

        result = await OutreachScheduler(ctx).run_sweep(FIRST_DUE)

        attempt = (await plan_attempts(async_session, episode.active_plan_id))[0]
        assert result.missed == 1
        assert attempt.status == AttemptStatus.MISSED
        assert attempt.status_reason == "PERMANENT_DELIVERY_FAILURE"

    async def test_missing_contact_marks_missed(
        self, ctx, async_session, gateway, make_patient, make_episode
    ) -> None:
        patient = await make_patient(phone=None)
        episode = await make_episode(patient=patient)

        result = await OutreachScheduler(ctx).run_sweep(FIRST_DUE)

        attempt = (await plan_attempts(async_session, episode.active_plan_id))[0]
        assert result.missed == 1
        assert attempt.last_dispatch_error == "No SMS contact on file"
        assert gateway.sent == []


class TestSweepHousekeeping:
    async def test_unanswered_attempt_expires(self, ctx, async_session, make_episode) -> None:
        episode = await make_episode()
        scheduler = OutreachScheduler(ctx)
        await scheduler.run_sweep(FIRST_DUE)

        result = await scheduler.run_sweep(FIRST_DUE + timedelta(hours=24))

        attempt = (await plan_attempts(async_session, episode.active_plan_id))[0]
        assert result.expired == 1
        assert attempt.status == AttemptStatus.MISSED
        assert attempt.status_reason == "NO_RESPONSE"

    async def test_closed_episode_gets_no_outreach(self, ctx, async_session, gateway, make_episode) -> None:
        episode = await make_episode()
        plan_id = episode.active_plan_id
        await close_episode(ctx, episode.id, reason="Readmitted")

        result = await OutreachScheduler(ctx).run_sweep(FIRST_DUE)

        assert result.sent == 0
        assert gateway.sent == []
        assert all(
            a.status == AttemptStatus.CANCELLED
            for a in await plan_attempts(async_session, plan_id)
        )

    async def test_finished_plan_is_completed(self, ctx, async_session, make_episode) -> None:
        episode = await make_episode()
        plan_id = episode.active_plan_id
        for attempt in await plan_attempts(async_session, plan_id):
            attempt.transition(AttemptStatus.MISSED, FIRST_DUE, reason="NO_RESPONSE")
        await async_session.commit()

        result = await OutreachScheduler(ctx).run_sweep(FIRST_DUE)

        plan = await reload(async_session, OutreachPlan, plan_id)
        episode = await reload(async_session, Episode, episode.id)
        assert result.plans_completed == 1
        assert plan.status == PlanStatus.COMPLETED
        assert episode.active_plan_id is None


class TestReplanDuringPlan:
    async def test_answered_question_is_not_asked_again(
        self, ctx, async_session, clock, gateway, make_episode
    ) -> None:
        episode = await make_episode()
        scheduler = OutreachScheduler(ctx)
        clock.set(FIRST_DUE)
        await scheduler.run_sweep(clock.now())
        first = (await plan_attempts(async_session, episode.active_plan_id))[0]

        clock.advance(minutes=20)
        await ResponseInterpreter(ctx).interpret(first.id, {"text": "pain 8/10"})
        await WorkQueueRunner(ctx).drain(clock.now())
        await scheduler.run_sweep(clock.now())

        episode = await reload(async_session, Episode, episode.id)
        attempts = await plan_attempts(async_session, episode.active_plan_id)
        wellbeing = load_content_pack().question_text("GENERAL_WELLBEING")
        assert episode.active_plan_id != first.plan_id
        assert [m["body"] for m in gateway.sent].count(wellbeing) == 1
        assert attempts[0].status == AttemptStatus.CANCELLED
        assert attempts[0].status_reason == "DUE_BEFORE_REPLAN"
        assert all(a.status == AttemptStatus.PENDING for a in attempts[1:])
