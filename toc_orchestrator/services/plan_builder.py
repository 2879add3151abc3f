"""Outreach plan builder.

Turns an episode's condition and risk level into a concrete schedule of
check-in attempts, using the versioned outreach template catalog. A re-plan
supersedes the active plan; plans are never edited in place.
"""

import logging
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import select

from toc_orchestrator.core.errors import ValidationError
from toc_orchestrator.models.audit_event import ActorType
from toc_orchestrator.models.episode import Episode
from toc_orchestrator.models.outreach import (
    AttemptStatus,
    OutreachAttempt,
    OutreachPlan,
    PlanStatus,
)
from toc_orchestrator.rules import load_content_pack, load_template_catalog
from toc_orchestrator.services.audit import write_audit_event
from toc_orchestrator.services.context import (
    OrchestratorContext,
    load_episode,
    retry_on_conflict,
)
from toc_orchestrator.utils.time import ensure_utc

logger = logging.getLogger(__name__)

DUE_BEFORE_REPLAN = "DUE_BEFORE_REPLAN"


class OutreachPlanBuilder:
    """Builds and supersedes outreach plans."""

    def __init__(self, ctx: OrchestratorContext) -> None:
        self.ctx = ctx
        self.session = ctx.session

    async def get_active_plan(self, episode: Episode) -> OutreachPlan | None:
        if not episode.active_plan_id:
            return None
        result = await self.session.execute(
            select(OutreachPlan).where(OutreachPlan.id == episode.active_plan_id)
        )
        return result.scalar_one_or_none()

    async def list_attempts(self, plan_id: str) -> list[OutreachAttempt]:
        result = await self.session.execute(
            select(OutreachAttempt)
            .where(OutreachAttempt.plan_id == plan_id)
            .order_by(OutreachAttempt.sequence_number)
        )
        return list(result.scalars().all())

    async def build_plan(
        self,
        episode_id: str,
        reason: str,
        risk_level: str | None = None,
    ) -> OutreachPlan:
        """Build (or rebuild) the episode's plan and commit it.

        Raises:
            NotFoundError: Unknown episode
            ValidationError: Episode is closed
            NoTemplateError: No template, not even the system default
            StateConflictError: Concurrent update won twice
        """

        async def operation() -> OutreachPlan:
            episode = await load_episode(self.session, episode_id)
            plan = await self.build_plan_in_transaction(episode, reason, risk_level)
            await self.session.commit()
            return plan

        return await retry_on_conflict(
            self.session, operation, f"Build plan for episode {episode_id}"
        )

    async def build_plan_in_transaction(
        self,
        episode: Episode,
        reason: str,
        risk_level: str | None = None,
    ) -> OutreachPlan:
        """Build a plan without committing.

        Template selection happens before any write, so a NoTemplateError
        leaves the session untouched. When a prior plan exists, steps already
        due are recorded CANCELLED (DUE_BEFORE_REPLAN) and never dispatched.
        """
        if not episode.is_open:
            raise ValidationError(f"Episode {episode.id} is closed")

        now = self.ctx.now()
        risk = risk_level or episode.current_risk.value
        catalog = load_template_catalog()
        template = catalog.select(episode.condition_code, risk)
        pack = load_content_pack()

        previous = await self.get_active_plan(episode)

        plan = OutreachPlan(
            id=str(uuid4()),
            episode_id=episode.id,
            template_key=template.key,
            template_version=catalog.version,
            template_hash=catalog.content_hash,
            risk_level=risk,
            status=PlanStatus.ACTIVE.value,
            build_reason=reason,
            activated_at=now,
        )

        if previous is not None and previous.status == PlanStatus.ACTIVE:
            await self._supersede(previous, plan.id, now)

        self.session.add(plan)

        skipped = 0
        for sequence, step in enumerate(template.attempts, start=1):
            question = pack.questions.get(step.question_code)
            attempt = OutreachAttempt(
                plan_id=plan.id,
                episode_id=episode.id,
                sequence_number=sequence,
                due_at=self._due_at(episode.discharge_at, step.offset_hours),
                channel=step.channel,
                question_code=step.question_code,
                category=step.category or (question.category if question else None),
                status=AttemptStatus.PENDING.value,
                dispatch_failures=0,
            )
            if previous is not None and ensure_utc(attempt.due_at) <= now:
                # The superseded plan already covered this slot
                attempt.transition(AttemptStatus.CANCELLED, now, reason=DUE_BEFORE_REPLAN)
                skipped += 1
            self.session.add(attempt)

        episode.active_plan_id = plan.id
        episode.touch(now)

        await self.session.flush()

        await write_audit_event(
            session=self.session,
            actor_type=ActorType.SYSTEM,
            actor_id=None,
            action="plan_built",
            action_category="outreach",
            entity_type="outreach_plan",
            entity_id=plan.id,
            metadata={
                "episode_id": episode.id,
                "template_key": template.key,
                "template_version": catalog.version,
                "template_hash": catalog.content_hash,
                "risk_level": risk,
                "reason": reason,
                "superseded_plan_id": previous.id if previous else None,
                "attempts": len(template.attempts),
                "skipped_past_due": skipped,
            },
        )

        logger.info(
            f"Built plan {plan.id} ({template.key}) for episode {episode.id}: {reason}",
            extra={"episode_id": episode.id},
        )
        return plan

    @staticmethod
    def _due_at(discharge_at: datetime, offset_hours: float) -> datetime:
        return discharge_at + timedelta(hours=offset_hours)

    async def _supersede(self, plan: OutreachPlan, new_plan_id: str, now: datetime) -> None:
        """Retire a plan, cancelling whatever it had not finished."""
        plan.status = PlanStatus.SUPERSEDED.value
        plan.superseded_by_id = new_plan_id
        plan.deactivated_at = now

        for attempt in await self.list_attempts(plan.id):
            if attempt.status in (AttemptStatus.PENDING, AttemptStatus.SENT):
                attempt.transition(AttemptStatus.CANCELLED, now, reason="PLAN_SUPERSEDED")

        await write_audit_event(
            session=self.session,
            actor_type=ActorType.SYSTEM,
            actor_id=None,
            action="plan_superseded",
            action_category="outreach",
            entity_type="outreach_plan",
            entity_id=plan.id,
            metadata={"superseded_by": new_plan_id},
        )

    async def cancel_active_plan(self, episode: Episode, reason: str) -> int:
        """Cancel the active plan and its open attempts. Does not commit.

        Returns the number of attempts cancelled.
        """
        now = self.ctx.now()
        plan = await self.get_active_plan(episode)
        cancelled = 0

        if plan is not None and plan.status == PlanStatus.ACTIVE:
            plan.status = PlanStatus.CANCELLED.value
            plan.deactivated_at = now
            for attempt in await self.list_attempts(plan.id):
                if attempt.status in (AttemptStatus.PENDING, AttemptStatus.SENT):
                    attempt.transition(AttemptStatus.CANCELLED, now, reason=reason)
                    cancelled += 1

        episode.active_plan_id = None
        episode.touch(now)
        return cancelled
