"""Tests for the durable work queue and its handlers."""

from datetime import timedelta

from sqlalchemy import func, select

from tests.helpers import DISCHARGE_AT, reload
from toc_orchestrator.core.errors import TransientIntegrationError, ValidationError
from toc_orchestrator.models.episode import Episode
from toc_orchestrator.models.escalation import StaffRole
from toc_orchestrator.models.outreach import OutreachPlan, PlanStatus
from toc_orchestrator.models.response import RiskSignal
from toc_orchestrator.models.risk import RiskSource
from toc_orchestrator.models.work_item import WorkItem, WorkItemStatus
from toc_orchestrator.services.episodes import close_episode
from toc_orchestrator.services.risk import RiskStateMachine
from toc_orchestrator.services.work_queue import (
    KIND_PATIENT_NOTIFICATION,
    KIND_REPLAN,
    KIND_STAFF_NOTIFICATION,
    TaskQueue,
    WorkQueueRunner,
)

NOW = DISCHARGE_AT


class RecordingHandler:
    """Handler double that fails a set number of times first."""

    def __init__(self, failures: list[Exception] | None = None) -> None:
        self.failures = list(failures or [])
        self.calls: list[str] = []

    async def __call__(self, ctx, item) -> None:
        self.calls.append(item.id)
        if self.failures:
            raise self.failures.pop(0)


async def _enqueue(ctx, kind: str = "test.kind", key: str = "job-1", payload: dict | None = None):
    queue = TaskQueue(ctx.session, ctx.settings)
    item = await queue.enqueue(kind, payload or {}, idempotency_key=key, available_at=NOW)
    await ctx.session.commit()
    return item


class TestTaskQueue:
    async def test_duplicate_key_is_enqueued_once(self, ctx, async_session) -> None:
        first = await _enqueue(ctx)
        second = await _enqueue(ctx)

        count = await async_session.scalar(select(func.count(WorkItem.id)))
        assert first.id == second.id
        assert count == 1

    async def test_item_not_claimed_before_available(self, ctx) -> None:
        await _enqueue(ctx)
        queue = TaskQueue(ctx.session, ctx.settings)

        assert await queue.claim_due(NOW - timedelta(seconds=1)) == []
        assert len(await queue.claim_due(NOW)) == 1

    async def test_claimed_item_is_not_claimed_twice(self, ctx) -> None:
        await _enqueue(ctx)
        queue = TaskQueue(ctx.session, ctx.settings)

        await queue.claim_due(NOW)

        assert await queue.claim_due(NOW + timedelta(minutes=1)) == []

    async def test_stale_claim_is_reclaimed(self, ctx, async_session) -> None:
        item = await _enqueue(ctx)
        queue = TaskQueue(ctx.session, ctx.settings)
        await queue.claim_due(NOW)

        reclaimed = await queue.claim_due(NOW + timedelta(minutes=16))

        item = await reload(async_session, WorkItem, item.id)
        assert reclaimed == [item.id]
        assert item.attempts == 2


class TestWorkQueueRunner:
    """Tests for draining the queue through handlers."""

    async def test_successful_handler_completes_item(self, ctx, async_session) -> None:
        item = await _enqueue(ctx)
        handler = RecordingHandler()

        result = await WorkQueueRunner(ctx, {"test.kind": handler}).drain(NOW)

        item = await reload(async_session, WorkItem, item.id)
        assert result.done == 1
        assert handler.calls == [item.id]
        assert item.status == WorkItemStatus.DONE
        assert item.completed_at == NOW

    async def test_transient_failure_retries_with_backoff(self, ctx, async_session) -> None:
        item = await _enqueue(ctx)
        handler = RecordingHandler([TransientIntegrationError("ehr down")] * 2)
        runner = WorkQueueRunner(ctx, {"test.kind": handler})

        first = await runner.drain(NOW)
        item = await reload(async_session, WorkItem, item.id)
        assert first.retried == 1
        assert item.status == WorkItemStatus.QUEUED
        assert item.available_at == NOW + timedelta(seconds=60)
        assert item.last_error == "ehr down"

        assert (await runner.drain(NOW + timedelta(seconds=30))).done == 0

        second_run = NOW + timedelta(seconds=60)
        await runner.drain(second_run)
        item = await reload(async_session, WorkItem, item.id)
        assert item.available_at == second_run + timedelta(seconds=120)

        third = await runner.drain(second_run + timedelta(seconds=120))
        assert third.done == 1
        assert len(handler.calls) == 3

    async def test_retries_are_bounded(self, ctx, async_session, test_settings) -> None:
        test_settings.queue_max_attempts = 2
        item = await _enqueue(ctx)
        handler = RecordingHandler([TransientIntegrationError("down")] * 5)
        runner = WorkQueueRunner(ctx, {"test.kind": handler})

        await runner.drain(NOW)
        result = await runner.drain(NOW + timedelta(hours=1))

        item = await reload(async_session, WorkItem, item.id)
        assert result.failed == 1
        assert item.status == WorkItemStatus.FAILED
        assert item.attempts == 2

    async def test_permanent_failure_is_not_retried(self, ctx, async_session) -> None:
        item = await _enqueue(ctx)
        handler = RecordingHandler([ValidationError("bad payload")])

        result = await WorkQueueRunner(ctx, {"test.kind": handler}).drain(NOW)

        item = await reload(async_session, WorkItem, item.id)
        assert result.failed == 1
        assert item.status == WorkItemStatus.FAILED

    async def test_unknown_kind_fails(self, ctx, async_session) -> None:
        item = await _enqueue(ctx, kind="nobody.handles.this")

        result = await WorkQueueRunner(ctx, {}).drain(NOW)

        item = await reload(async_session, WorkItem, item.id)
        assert result.failed == 1
        assert "Unknown work item kind" in item.last_error


class TestReplanHandler:
    async def test_risk_change_rebuilds_plan(self, ctx, async_session, make_episode) -> None:
        episode = await make_episode()
        old_plan_id = episode.active_plan_id
        await RiskStateMachine(ctx).apply_signal(
            episode.id, RiskSignal.ELEVATED, RiskSource.INTERPRETER, idempotency_key="k1"
        )

        result = await WorkQueueRunner(ctx).drain(NOW)

        episode = await reload(async_session, Episode, episode.id)
        plan = await reload(async_session, OutreachPlan, episode.active_plan_id)
        old_plan = await reload(async_session, OutreachPlan, old_plan_id)
        assert result.done >= 1
        assert plan.template_key == "HF_MEDIUM"
        assert plan.build_reason == "RISK_LOW_TO_MEDIUM"
        assert old_plan.status == PlanStatus.SUPERSEDED

    async def test_redelivered_replan_does_not_rebuild(self, ctx, async_session, make_episode) -> None:
        episode = await make_episode()
        await RiskStateMachine(ctx).apply_signal(
            episode.id, RiskSignal.ELEVATED, RiskSource.INTERPRETER, idempotency_key="k1"
        )
        runner = WorkQueueRunner(ctx)
        await runner.drain(NOW)
        plan_id = (await reload(async_session, Episode, episode.id)).active_plan_id

        # Same logical job delivered again
        item = (await async_session.execute(
            select(WorkItem).where(WorkItem.kind == KIND_REPLAN)
        )).scalar_one()
        item.status = WorkItemStatus.QUEUED
        await async_session.commit()
        await runner.drain(NOW + timedelta(minutes=1))

        assert (await reload(async_session, Episode, episode.id)).active_plan_id == plan_id

    async def test_closed_episode_is_not_replanned(self, ctx, async_session, make_episode) -> None:
        episode = await make_episode()
        await RiskStateMachine(ctx).apply_signal(
            episode.id, RiskSignal.ELEVATED, RiskSource.INTERPRETER, idempotency_key="k1"
        )
        await close_episode(ctx, episode.id, reason="Readmitted")

        result = await WorkQueueRunner(ctx).drain(NOW)

        episode = await reload(async_session, Episode, episode.id)
        assert result.failed == 0
        assert episode.active_plan_id is None


class TestNotificationHandlers:
    async def test_patient_notification_is_sent(self, ctx, gateway, make_episode) -> None:
        episode = await make_episode()
        await _enqueue(
            ctx,
            kind=KIND_PATIENT_NOTIFICATION,
            key="follow-up:a1:PAIN",
            payload={"episode_id": episode.id, "channel": "SMS", "body": "Rate your pain"},
        )

        result = await WorkQueueRunner(ctx).drain(NOW)

        assert result.done == 1
        assert gateway.sent == [{
            "channel": "SMS",
            "recipient": "+15555550100",
            "body": "Rate your pain",
            "idempotency_key": "follow-up:a1:PAIN",
        }]

    async def test_patient_without_contact_fails_permanently(
        self, ctx, make_patient, make_episode
    ) -> None:
        episode = await make_episode(patient=await make_patient(phone=None))
        await _enqueue(
            ctx,
            kind=KIND_PATIENT_NOTIFICATION,
            payload={"episode_id": episode.id, "channel": "SMS", "body": "Hi"},
        )

        result = await WorkQueueRunner(ctx).drain(NOW)

        assert result.failed == 1

    async def test_staff_notification_goes_to_named_staff(self, ctx, gateway, make_staff) -> None:
        nurse = await make_staff("Amy Allen")
        await _enqueue(
            ctx,
            kind=KIND_STAFF_NOTIFICATION,
            key="note-1",
            payload={"staff_id": nurse.id, "subject": "New task", "body": "Call patient"},
        )

        await WorkQueueRunner(ctx).drain(NOW)

        assert gateway.sent == [{
            "channel": "EMAIL",
            "recipient": "amy.allen@hospital.example",
            "body": "New task: Call patient",
            "idempotency_key": f"note-1:{nurse.id}",
        }]

    async def test_role_notification_goes_to_available_supervisors(
        self, ctx, gateway, make_staff
    ) -> None:
        await make_staff("Sue Smith", role=StaffRole.SUPERVISOR)
        await make_staff("Ann Archer", role=StaffRole.SUPERVISOR)
        await make_staff("Off Duty", role=StaffRole.SUPERVISOR, is_available=False)
        await make_staff("Amy Allen")
        await _enqueue(
            ctx,
            kind=KIND_STAFF_NOTIFICATION,
            payload={"role": "SUPERVISOR", "subject": "Breach", "body": "Task overdue"},
        )

        await WorkQueueRunner(ctx).drain(NOW)

        assert [s["recipient"] for s in gateway.sent] == [
            "ann.archer@hospital.example",
            "sue.smith@hospital.example",
        ]

    async def test_no_recipients_completes_quietly(self, ctx, gateway) -> None:
        await _enqueue(
            ctx,
            kind=KIND_STAFF_NOTIFICATION,
            payload={"role": "SUPERVISOR", "subject": "Breach", "body": "Task overdue"},
        )

        result = await WorkQueueRunner(ctx).drain(NOW)

        assert result.done == 1
        assert gateway.sent == []
