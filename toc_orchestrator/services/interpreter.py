"""Response interpreter.

Turns a patient's reply into a recorded PatientResponse and a risk signal,
using the active protocol content pack. Matching is deterministic: rules are
tried in order and the first applicable match wins. Replies that match no
rule are kept verbatim and flagged for staff review.
"""

import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from sqlalchemy import select

from toc_orchestrator.core.errors import NotFoundError, StateConflictError, ValidationError
from toc_orchestrator.models.audit_event import ActorType
from toc_orchestrator.models.interaction import AgentInteraction, MessageRole
from toc_orchestrator.models.outreach import AttemptStatus, OutreachAttempt
from toc_orchestrator.models.response import PatientResponse, RiskSignal
from toc_orchestrator.models.risk import RiskSource
from toc_orchestrator.rules import (
    ContentPack,
    ProtocolRule,
    extract_number,
    load_content_pack,
    match_reply,
    normalize_text,
    payload_text,
)
from toc_orchestrator.services.audit import write_audit_event
from toc_orchestrator.services.context import (
    OrchestratorContext,
    load_episode,
    retry_on_conflict,
)
from toc_orchestrator.services.interactions import append_message, get_or_create_interaction
from toc_orchestrator.services.risk import RiskStateMachine
from toc_orchestrator.services.work_queue import KIND_PATIENT_NOTIFICATION, TaskQueue

logger = logging.getLogger(__name__)


@dataclass
class Interpretation:
    """What a reply meant, before anything is persisted."""

    rule: ProtocolRule | None
    signal: RiskSignal | None
    numeric_value: float | None = None
    needs_follow_up: bool = False
    is_follow_up_answer: bool = False

    @property
    def matched(self) -> bool:
        return self.rule is not None


@dataclass
class InterpretationResult:
    """Outcome of handling one inbound reply."""

    response_id: str
    attempt_id: str
    episode_id: str
    matched_rule_id: str | None
    risk_signal: str
    needs_follow_up: bool
    needs_review: bool
    follow_up_question: str | None
    wellness_confirmation_count: int
    risk_level: str
    risk_changed: bool
    task_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "responseId": self.response_id,
            "attemptId": self.attempt_id,
            "episodeId": self.episode_id,
            "matchedRuleId": self.matched_rule_id,
            "riskSignal": self.risk_signal,
            "needsFollowUp": self.needs_follow_up,
            "needsReview": self.needs_review,
            "followUpQuestion": self.follow_up_question,
            "wellnessConfirmationCount": self.wellness_confirmation_count,
            "riskLevel": self.risk_level,
            "riskChanged": self.risk_changed,
            "taskId": self.task_id,
        }


def signal_for(rule: ProtocolRule, breached: bool = True) -> RiskSignal:
    """Rule signal, upgraded when the rule is flagged critical."""
    if not breached:
        return RiskSignal.NONE
    signal = RiskSignal(rule.signal)
    if rule.critical and signal == RiskSignal.ELEVATED:
        return RiskSignal.CRITICAL
    return signal


def interpret_text(
    pack: ContentPack,
    normalized: str,
    payload: dict[str, Any],
    condition: str | None,
    category: str | None,
    pending_rule_id: str | None = None,
) -> Interpretation:
    """Pure interpretation of a reply against a content pack."""
    number = extract_number(normalized, payload)

    if pending_rule_id and number is not None:
        rule = pack.get_rule(pending_rule_id)
        if rule is not None and rule.numeric_follow_up is not None:
            return Interpretation(
                rule=rule,
                signal=signal_for(rule, rule.numeric_follow_up.breached(number)),
                numeric_value=number,
                is_follow_up_answer=True,
            )

    rule = match_reply(pack, normalized, condition, category)
    if rule is None:
        return Interpretation(rule=None, signal=None, numeric_value=number)

    if rule.numeric_follow_up is not None:
        if number is None:
            return Interpretation(rule=rule, signal=None, needs_follow_up=True)
        return Interpretation(
            rule=rule,
            signal=signal_for(rule, rule.numeric_follow_up.breached(number)),
            numeric_value=number,
        )

    return Interpretation(rule=rule, signal=signal_for(rule), numeric_value=number)


class ResponseInterpreter:
    """Records and interprets inbound patient replies."""

    def __init__(self, ctx: OrchestratorContext) -> None:
        self.ctx = ctx
        self.session = ctx.session
        self.risk = RiskStateMachine(ctx)
        self.queue = TaskQueue(ctx.session, ctx.settings)

    async def _load_attempt(self, attempt_id: str) -> OutreachAttempt:
        result = await self.session.execute(
            select(OutreachAttempt)
            .where(OutreachAttempt.id == attempt_id)
            .execution_options(populate_existing=True)
        )
        attempt = result.scalar_one_or_none()
        if attempt is None:
            raise NotFoundError("Attempt", attempt_id)
        return attempt

    async def interpret(self, attempt_id: str, payload: dict[str, Any]) -> InterpretationResult:
        """Record a reply to an attempt and act on it.

        The response, attempt status, conversation state and any risk change
        commit together.

        Raises:
            NotFoundError: Unknown attempt
            ValidationError: Empty reply
            StateConflictError: Attempt not yet sent, or concurrent update
        """
        raw_text = payload_text(payload)
        if not raw_text.strip():
            raise ValidationError("Response contains no text or value")

        async def operation() -> InterpretationResult:
            return await self._interpret(attempt_id, payload, raw_text)

        return await retry_on_conflict(
            self.session, operation, f"Interpret response to attempt {attempt_id}"
        )

    async def _interpret(
        self,
        attempt_id: str,
        payload: dict[str, Any],
        raw_text: str,
    ) -> InterpretationResult:
        now = self.ctx.now()
        attempt = await self._load_attempt(attempt_id)
        if attempt.status == AttemptStatus.PENDING:
            raise StateConflictError(f"Attempt {attempt_id} has not been sent")

        episode = await load_episode(self.session, attempt.episode_id)
        pack = load_content_pack()
        interaction = await get_or_create_interaction(
            self.session, episode.id, episode.patient_id, attempt.channel
        )

        normalized = normalize_text(raw_text)
        pending_rule_id = (
            interaction.pending_follow_up_rule_id
            if interaction.pending_follow_up_attempt_id == attempt.id
            else None
        )
        result = interpret_text(
            pack,
            normalized,
            payload,
            episode.condition_code,
            attempt.category,
            pending_rule_id=pending_rule_id,
        )

        late_reply = attempt.status in (AttemptStatus.CANCELLED, AttemptStatus.MISSED)
        needs_review = not result.matched or late_reply

        self._update_conversation(interaction, attempt, result)

        response = PatientResponse(
            id=str(uuid4()),
            attempt_id=attempt.id,
            episode_id=episode.id,
            interaction_id=interaction.id,
            raw_text=raw_text,
            raw_payload=payload,
            normalized_text=normalized,
            matched_rule_id=result.rule.id if result.rule else None,
            content_pack_version=pack.version,
            risk_signal=(result.signal or RiskSignal.NONE).value,
            numeric_value=result.numeric_value,
            is_follow_up_answer=result.is_follow_up_answer,
            needs_follow_up=result.needs_follow_up,
            needs_review=needs_review,
            received_at=now,
        )
        self.session.add(response)

        if attempt.status == AttemptStatus.SENT:
            attempt.transition(AttemptStatus.RESPONDED, now)

        await append_message(
            self.session, interaction.id, MessageRole.PATIENT, raw_text, attempt_id=attempt.id
        )

        follow_up_question = None
        if result.needs_follow_up:
            follow_up_question = pack.question_text(result.rule.numeric_follow_up.question)
            await append_message(
                self.session, interaction.id, MessageRole.AGENT, follow_up_question,
                attempt_id=attempt.id,
            )
            await self.queue.enqueue(
                kind=KIND_PATIENT_NOTIFICATION,
                payload={
                    "episode_id": episode.id,
                    "attempt_id": attempt.id,
                    "channel": attempt.channel,
                    "body": follow_up_question,
                },
                idempotency_key=f"follow-up:{attempt.id}:{result.rule.id}",
                available_at=now,
            )

        await self.session.flush()

        outcome = None
        if result.signal is not None:
            outcome = await self.risk.apply_signal_in_transaction(
                episode,
                result.signal,
                RiskSource.INTERPRETER,
                idempotency_key=f"response:{response.id}",
                wellness_count=interaction.wellness_confirmation_count,
                reason=f"Rule {result.rule.id}",
                interaction_id=interaction.id,
                response_id=response.id,
            )

        await write_audit_event(
            session=self.session,
            actor_type=ActorType.PATIENT,
            actor_id=episode.patient_id,
            action="response_received",
            action_category="outreach",
            entity_type="patient_response",
            entity_id=response.id,
            metadata={
                "attempt_id": attempt.id,
                "episode_id": episode.id,
                "matched_rule_id": response.matched_rule_id,
                "risk_signal": response.risk_signal,
                "needs_follow_up": result.needs_follow_up,
                "needs_review": needs_review,
                "content_pack_version": pack.version,
                "content_pack_hash": pack.content_hash,
            },
        )

        episode.touch(now)
        await self.session.commit()

        if needs_review:
            logger.info(
                f"Response {response.id} flagged for review",
                extra={"episode_id": episode.id},
            )

        return InterpretationResult(
            response_id=response.id,
            attempt_id=attempt.id,
            episode_id=episode.id,
            matched_rule_id=response.matched_rule_id,
            risk_signal=response.risk_signal,
            needs_follow_up=result.needs_follow_up,
            needs_review=needs_review,
            follow_up_question=follow_up_question,
            wellness_confirmation_count=interaction.wellness_confirmation_count,
            risk_level=episode.current_risk.value,
            risk_changed=bool(outcome and outcome.changed),
            task_id=outcome.task_id if outcome else None,
        )

    def _update_conversation(
        self,
        interaction: AgentInteraction,
        attempt: OutreachAttempt,
        result: Interpretation,
    ) -> None:
        """Wellness count and pending follow-up bookkeeping."""
        if result.needs_follow_up:
            interaction.pending_follow_up_rule_id = result.rule.id
            interaction.pending_follow_up_attempt_id = attempt.id
            return

        if result.is_follow_up_answer:
            interaction.pending_follow_up_rule_id = None
            interaction.pending_follow_up_attempt_id = None

        if not result.matched:
            # Unrecognised text neither confirms wellness nor breaks the streak
            return

        if result.signal == RiskSignal.NONE:
            interaction.wellness_confirmation_count = (
                interaction.wellness_confirmation_count or 0
            ) + 1
        else:
            interaction.wellness_confirmation_count = 0
