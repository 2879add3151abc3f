"""Outreach scheduler.

A sweep runs on a fixed interval and dispatches every due attempt. Each
attempt is handled in its own transaction: a failure on one attempt is
logged and counted, never fatal to the sweep.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm.exc import StaleDataError

from toc_orchestrator.core.errors import OrchestratorError
from toc_orchestrator.models.audit_event import ActorType
from toc_orchestrator.models.episode import Episode, EpisodeStatus
from toc_orchestrator.models.interaction import MessageRole
from toc_orchestrator.models.outreach import (
    AttemptStatus,
    OutreachAttempt,
    OutreachPlan,
    PlanStatus,
)
from toc_orchestrator.rules import load_content_pack
from toc_orchestrator.services.audit import write_audit_event
from toc_orchestrator.services.context import OrchestratorContext, load_episode, load_patient
from toc_orchestrator.services.interactions import append_message, get_or_create_interaction
from toc_orchestrator.services.notifications import (
    PermanentGatewayError,
    TransientGatewayError,
    send_with_timeout,
)

logger = logging.getLogger(__name__)

GRACE_WINDOW_EXPIRED = "GRACE_WINDOW_EXPIRED"
PERMANENT_DELIVERY_FAILURE = "PERMANENT_DELIVERY_FAILURE"
NO_RESPONSE = "NO_RESPONSE"


@dataclass
class SweepResult:
    """Counts from one scheduler sweep."""

    sent: int = 0
    missed: int = 0
    deferred: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: int = 0
    expired: int = 0
    plans_completed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class OutreachScheduler:
    """Dispatches due outreach attempts."""

    def __init__(self, ctx: OrchestratorContext) -> None:
        self.ctx = ctx
        self.session = ctx.session
        self.settings = ctx.settings

    async def due_attempt_ids(self, now: datetime) -> list[str]:
        """PENDING attempts due by ``now`` on active plans of open episodes."""
        result = await self.session.execute(
            select(OutreachAttempt.id)
            .join(OutreachPlan, OutreachPlan.id == OutreachAttempt.plan_id)
            .join(Episode, Episode.id == OutreachAttempt.episode_id)
            .where(
                OutreachAttempt.status == AttemptStatus.PENDING.value,
                OutreachAttempt.due_at <= now,
                OutreachPlan.status == PlanStatus.ACTIVE.value,
                Episode.status == EpisodeStatus.OPEN.value,
            )
            .order_by(OutreachAttempt.plan_id, OutreachAttempt.sequence_number)
            .limit(self.settings.sweep_batch_size)
        )
        return list(result.scalars().all())

    async def run_sweep(self, now: datetime | None = None) -> SweepResult:
        """Dispatch due attempts, expire unanswered ones, complete finished plans.

        Safe to re-run: SENT attempts are never sent again, and the attempt
        id is the gateway idempotency key.
        """
        now = now or self.ctx.now()
        result = SweepResult()

        for attempt_id in await self.due_attempt_ids(now):
            try:
                outcome = await self._process_attempt(attempt_id, now)
            except (OrchestratorError, StaleDataError) as e:
                await self.session.rollback()
                logger.warning(f"Attempt {attempt_id} failed during sweep: {e}")
                result.failed += 1
                continue
            setattr(result, outcome, getattr(result, outcome) + 1)

        result.expired = await self._expire_unanswered(now)
        result.plans_completed = await self._complete_finished_plans(now)

        logger.info(f"Outreach sweep at {now.isoformat()}: {result.to_dict()}")
        return result

    async def _load_attempt(self, attempt_id: str) -> OutreachAttempt | None:
        result = await self.session.execute(
            select(OutreachAttempt)
            .where(OutreachAttempt.id == attempt_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _has_pending_predecessor(self, attempt: OutreachAttempt) -> bool:
        result = await self.session.execute(
            select(OutreachAttempt.id)
            .where(
                OutreachAttempt.plan_id == attempt.plan_id,
                OutreachAttempt.sequence_number < attempt.sequence_number,
                OutreachAttempt.status == AttemptStatus.PENDING.value,
            )
            .limit(1)
        )
        return result.first() is not None

    async def _claim(self, attempt: OutreachAttempt, now: datetime) -> bool:
        """Stamp the dispatch claim if nobody else holds a live one."""
        stale_before = now - timedelta(minutes=self.settings.dispatch_claim_timeout_minutes)
        claim = await self.session.execute(
            update(OutreachAttempt)
            .where(
                OutreachAttempt.id == attempt.id,
                OutreachAttempt.status == AttemptStatus.PENDING.value,
                or_(
                    OutreachAttempt.dispatch_claimed_at.is_(None),
                    OutreachAttempt.dispatch_claimed_at < stale_before,
                ),
            )
            .values(dispatch_claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return claim.rowcount == 1

    async def _process_attempt(self, attempt_id: str, now: datetime) -> str:
        attempt = await self._load_attempt(attempt_id)
        if attempt is None or attempt.status != AttemptStatus.PENDING:
            return "skipped"

        # Re-check the episode and plan: either may have changed since selection
        episode = await load_episode(self.session, attempt.episode_id)
        plan = await self.session.get(OutreachPlan, attempt.plan_id, populate_existing=True)

        if not episode.is_open or plan is None or plan.status != PlanStatus.ACTIVE:
            reason = "EPISODE_CLOSED" if not episode.is_open else "PLAN_INACTIVE"
            attempt.transition(AttemptStatus.CANCELLED, now, reason=reason)
            episode.touch(now)
            await self.session.commit()
            return "cancelled"

        if now - attempt.due_at > timedelta(minutes=self.settings.outreach_grace_minutes):
            attempt.transition(AttemptStatus.MISSED, now, reason=GRACE_WINDOW_EXPIRED)
            await self._audit_attempt(attempt, "attempt_missed", {"reason": GRACE_WINDOW_EXPIRED})
            episode.touch(now)
            await self.session.commit()
            logger.info(
                f"Attempt {attempt.id} missed its grace window",
                extra={"episode_id": episode.id},
            )
            return "missed"

        if await self._has_pending_predecessor(attempt):
            return "deferred"

        if not await self._claim(attempt, now):
            return "skipped"

        return await self._dispatch(attempt_id, now)

    async def _dispatch(self, attempt_id: str, now: datetime) -> str:
        attempt = await self._load_attempt(attempt_id)
        episode = await load_episode(self.session, attempt.episode_id)
        patient = await load_patient(self.session, episode.patient_id)
        pack = load_content_pack()

        body = pack.question_text(attempt.question_code)
        recipient = patient.contact_for(attempt.channel)

        try:
            if not recipient:
                raise PermanentGatewayError(f"No {attempt.channel} contact on file")
            receipt = await send_with_timeout(
                self.ctx.gateway,
                attempt.channel,
                recipient,
                body,
                idempotency_key=attempt.id,
                timeout_seconds=self.settings.gateway_timeout_seconds,
            )
        except TransientGatewayError as e:
            attempt = await self._load_attempt(attempt_id)
            attempt.dispatch_claimed_at = None
            attempt.dispatch_failures = (attempt.dispatch_failures or 0) + 1
            attempt.last_dispatch_error = e.detail
            await self.session.commit()
            logger.warning(
                f"Transient delivery failure for attempt {attempt.id}: {e.detail}",
                extra={"episode_id": attempt.episode_id},
            )
            return "failed"
        except PermanentGatewayError as e:
            attempt = await self._load_attempt(attempt_id)
            episode = await load_episode(self.session, attempt.episode_id)
            attempt.last_dispatch_error = e.detail
            attempt.transition(AttemptStatus.MISSED, now, reason=PERMANENT_DELIVERY_FAILURE)
            await self._audit_attempt(
                attempt, "attempt_missed",
                {"reason": PERMANENT_DELIVERY_FAILURE, "error": e.detail},
            )
            episode.touch(now)
            await self.session.commit()
            logger.warning(
                f"Permanent delivery failure for attempt {attempt.id}: {e.detail}",
                extra={"episode_id": attempt.episode_id},
            )
            return "missed"

        attempt = await self._load_attempt(attempt_id)
        episode = await load_episode(self.session, attempt.episode_id)
        attempt.provider_message_id = receipt.provider_message_id
        attempt.transition(AttemptStatus.SENT, now)

        interaction = await get_or_create_interaction(
            self.session, episode.id, episode.patient_id, attempt.channel
        )
        await append_message(
            self.session, interaction.id, MessageRole.AGENT, body, attempt_id=attempt.id
        )
        await self._audit_attempt(
            attempt, "attempt_sent",
            {"provider_message_id": receipt.provider_message_id, "channel": attempt.channel},
        )
        episode.touch(now)
        await self.session.commit()
        return "sent"

    async def _audit_attempt(self, attempt: OutreachAttempt, action: str, metadata: dict) -> None:
        await write_audit_event(
            session=self.session,
            actor_type=ActorType.SYSTEM,
            actor_id=None,
            action=action,
            action_category="outreach",
            entity_type="outreach_attempt",
            entity_id=attempt.id,
            metadata={"episode_id": attempt.episode_id, **metadata},
        )

    async def _expire_unanswered(self, now: datetime) -> int:
        """SENT attempts with no reply inside the response window become MISSED."""
        cutoff = now - timedelta(hours=self.settings.response_window_hours)
        result = await self.session.execute(
            update(OutreachAttempt)
            .where(
                OutreachAttempt.status == AttemptStatus.SENT.value,
                OutreachAttempt.sent_at <= cutoff,
            )
            .values(
                status=AttemptStatus.MISSED.value,
                status_reason=NO_RESPONSE,
                missed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount or 0

    async def _complete_finished_plans(self, now: datetime) -> int:
        """Active plans with nothing left to send or answer become COMPLETED."""
        open_attempt = (
            select(OutreachAttempt.id)
            .where(
                OutreachAttempt.plan_id == OutreachPlan.id,
                OutreachAttempt.status.in_([AttemptStatus.PENDING.value, AttemptStatus.SENT.value]),
            )
            .exists()
        )
        result = await self.session.execute(
            select(OutreachPlan.id).where(
                and_(OutreachPlan.status == PlanStatus.ACTIVE.value, ~open_attempt)
            )
        )

        completed = 0
        for plan_id in list(result.scalars().all()):
            try:
                plan = await self.session.get(OutreachPlan, plan_id, populate_existing=True)
                episode = await load_episode(self.session, plan.episode_id)
                plan.status = PlanStatus.COMPLETED.value
                plan.deactivated_at = now
                if episode.active_plan_id == plan.id:
                    episode.active_plan_id = None
                episode.touch(now)
                await self.session.commit()
                completed += 1
            except (OrchestratorError, StaleDataError) as e:
                await self.session.rollback()
                logger.warning(f"Could not complete plan {plan_id}: {e}")
        return completed
