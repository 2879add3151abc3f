"""Tests for response interpretation."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from tests.helpers import DISCHARGE_AT, plan_attempts, reload
from toc_orchestrator.core.errors import NotFoundError, StateConflictError, ValidationError
from toc_orchestrator.models.episode import Episode, RiskLevel
from toc_orchestrator.models.escalation import EscalationTask, TaskSeverity
from toc_orchestrator.models.outreach import AttemptStatus, OutreachAttempt
from toc_orchestrator.models.response import ImmutableRecordError, PatientResponse
from toc_orchestrator.models.risk import RiskTransition
from toc_orchestrator.models.work_item import WorkItem
from toc_orchestrator.rules import load_content_pack
from toc_orchestrator.services.interpreter import ResponseInterpreter, interpret_text
from toc_orchestrator.services.scheduler import OutreachScheduler
from toc_orchestrator.services.work_queue import KIND_PATIENT_NOTIFICATION

FIRST_DUE = DISCHARGE_AT + timedelta(hours=24)


@pytest.fixture
def sent_attempt(ctx, clock, async_session, make_episode):
    """Episode whose first check-in has gone out."""

    async def _make(**kwargs):
        episode = await make_episode(**kwargs)
        await OutreachScheduler(ctx).run_sweep(FIRST_DUE)
        clock.set(FIRST_DUE + timedelta(hours=1))
        attempts = await plan_attempts(async_session, episode.active_plan_id)
        return episode, attempts[0]

    return _make


class TestInterpretText:
    """Tests for the pure interpretation step."""

    @pytest.fixture
    def pack(self):
        return load_content_pack()

    def test_score_above_threshold_is_elevated(self, pack) -> None:
        result = interpret_text(pack, "pain 8/10", {}, "HF", "GENERAL")

        assert result.rule.id == "PAIN"
        assert result.signal == "ELEVATED"
        assert result.numeric_value == 8.0

    def test_score_below_threshold_is_no_concern(self, pack) -> None:
        result = interpret_text(pack, "pain 3/10", {}, "HF", "GENERAL")

        assert result.rule.id == "PAIN"
        assert result.signal == "NONE"

    def test_missing_number_asks_follow_up(self, pack) -> None:
        result = interpret_text(pack, "i have some pain", {}, "HF", "GENERAL")

        assert result.needs_follow_up is True
        assert result.signal is None

    def test_pending_follow_up_is_answered_by_number(self, pack) -> None:
        result = interpret_text(pack, "9", {}, "HF", "GENERAL", pending_rule_id="PAIN")

        assert result.is_follow_up_answer is True
        assert result.signal == "ELEVATED"

    def test_critical_rule_upgrades_signal(self, pack) -> None:
        result = interpret_text(pack, "crushing chest pain", {}, "HF", "GENERAL")

        assert result.signal == "CRITICAL"

    def test_negated_phrase_does_not_hide_reported_symptom(self, pack) -> None:
        result = interpret_text(
            pack, "i have chest pain but no chest pressure", {}, "HF", "GENERAL"
        )

        assert result.rule.id == "EMERGENCY_CHEST_PAIN"
        assert result.signal == "CRITICAL"
        assert result.needs_follow_up is False

    def test_score_is_not_confused_by_other_numbers(self, pack) -> None:
        result = interpret_text(pack, "took 2 pills, pain is 8", {}, "HF", "GENERAL")

        assert result.rule.id == "PAIN"
        assert result.numeric_value == 8.0
        assert result.signal == "ELEVATED"

    def test_unmatched_text(self, pack) -> None:
        result = interpret_text(pack, "the dog ate my homework", {}, "HF", "GENERAL")

        assert result.matched is False
        assert result.signal is None


class TestResponseInterpreter:
    """Tests for recording replies and acting on them."""

    async def test_high_pain_score_raises_risk_and_opens_task(
        self, ctx, async_session, sent_attempt
    ) -> None:
        episode, attempt = await sent_attempt()

        result = await ResponseInterpreter(ctx).interpret(attempt.id, {"text": "pain 8/10"})

        assert result.matched_rule_id == "PAIN"
        assert result.risk_signal == "ELEVATED"
        assert result.risk_level == "MEDIUM"
        assert result.risk_changed is True
        assert result.task_id is not None

        task = await reload(async_session, EscalationTask, result.task_id)
        assert task.severity == TaskSeverity.MEDIUM
        assert task.source_response_id == result.response_id

        attempt = await reload(async_session, OutreachAttempt, attempt.id)
        assert attempt.status == AttemptStatus.RESPONDED

    async def test_reply_is_stored_verbatim(self, ctx, async_session, sent_attempt) -> None:
        _, attempt = await sent_attempt()

        result = await ResponseInterpreter(ctx).interpret(attempt.id, {"text": "  I feel FINE  "})

        response = await reload(async_session, PatientResponse, result.response_id)
        assert response.raw_text == "  I feel FINE  "
        assert response.normalized_text == "i feel fine"
        assert response.content_pack_version == "1.0.0"

    async def test_wellness_reply_counts_confirmation(self, ctx, sent_attempt) -> None:
        _, attempt = await sent_attempt()

        result = await ResponseInterpreter(ctx).interpret(attempt.id, {"text": "I feel fine"})

        assert result.matched_rule_id == "WELLNESS_CONFIRMED"
        assert result.risk_signal == "NONE"
        assert result.wellness_confirmation_count == 1
        assert result.risk_level == "LOW"
        assert result.task_id is None

    async def test_follow_up_question_then_answer(self, ctx, async_session, sent_attempt) -> None:
        episode, attempt = await sent_attempt()
        interpreter = ResponseInterpreter(ctx)

        first = await interpreter.interpret(attempt.id, {"text": "I have some pain"})

        assert first.needs_follow_up is True
        assert first.follow_up_question == load_content_pack().question_text("PAIN_SCORE")
        assert first.risk_changed is False

        result = await async_session.execute(
            select(WorkItem).where(WorkItem.kind == KIND_PATIENT_NOTIFICATION)
        )
        queued = result.scalar_one()
        assert queued.payload["body"] == first.follow_up_question

        second = await interpreter.interpret(attempt.id, {"value_number": 9})

        assert second.matched_rule_id == "PAIN"
        assert second.risk_signal == "ELEVATED"
        assert second.risk_level == "MEDIUM"

    async def test_unmatched_reply_is_flagged_for_review(self, ctx, async_session, sent_attempt) -> None:
        episode, attempt = await sent_attempt()

        result = await ResponseInterpreter(ctx).interpret(attempt.id, {"text": "call my daughter"})

        assert result.needs_review is True
        assert result.matched_rule_id is None
        assert result.risk_changed is False

        transitions = await async_session.execute(
            select(RiskTransition).where(RiskTransition.episode_id == episode.id)
        )
        assert transitions.scalars().all() == []

    async def test_emergency_reply_goes_straight_to_high(self, ctx, sent_attempt) -> None:
        _, attempt = await sent_attempt()

        result = await ResponseInterpreter(ctx).interpret(attempt.id, {"text": "I have chest pain"})

        assert result.risk_signal == "CRITICAL"
        assert result.risk_level == "HIGH"

    async def test_late_reply_to_missed_attempt(self, ctx, async_session, sent_attempt) -> None:
        _, attempt = await sent_attempt()
        await OutreachScheduler(ctx).run_sweep(FIRST_DUE + timedelta(hours=25))

        result = await ResponseInterpreter(ctx).interpret(attempt.id, {"text": "I feel fine"})

        attempt = await reload(async_session, OutreachAttempt, attempt.id)
        assert attempt.status == AttemptStatus.MISSED
        assert result.needs_review is True

    async def test_pending_attempt_cannot_be_answered(self, ctx, async_session, make_episode) -> None:
        episode = await make_episode()
        attempt = (await plan_attempts(async_session, episode.active_plan_id))[0]

        with pytest.raises(StateConflictError):
            await ResponseInterpreter(ctx).interpret(attempt.id, {"text": "fine"})

    async def test_empty_reply(self, ctx, sent_attempt) -> None:
        _, attempt = await sent_attempt()

        with pytest.raises(ValidationError):
            await ResponseInterpreter(ctx).interpret(attempt.id, {"text": "   "})

    async def test_unknown_attempt(self, ctx) -> None:
        with pytest.raises(NotFoundError):
            await ResponseInterpreter(ctx).interpret("missing", {"text": "fine"})

    async def test_recorded_response_is_immutable(self, ctx, async_session, sent_attempt) -> None:
        _, attempt = await sent_attempt()
        result = await ResponseInterpreter(ctx).interpret(attempt.id, {"text": "fine"})

        response = await reload(async_session, PatientResponse, result.response_id)
        response.raw_text = "edited"

        with pytest.raises(ImmutableRecordError):
            await async_session.flush()
        await async_session.rollback()

    async def test_three_wellness_replies_lower_risk(
        self, ctx, async_session, clock, sent_attempt
    ) -> None:
        episode, attempt = await sent_attempt(risk=RiskLevel.MEDIUM)
        interpreter = ResponseInterpreter(ctx)

        for text in ("good", "doing well", "fine thanks"):
            result = await interpreter.interpret(attempt.id, {"text": text})

        episode = await reload(async_session, Episode, episode.id)
        assert result.risk_changed is True
        assert episode.risk_level == "LOW"
        assert episode.wellness_streak == 0
