"""Risk state machine.

The only writer of ``Episode.risk_level`` and ``Episode.wellness_streak``.
Other components submit signals here:

    CRITICAL  -> HIGH, whatever the current level
    ELEVATED  -> one level up (no-op at HIGH)
    NONE      -> extends the wellness streak; at the downgrade threshold the
                 level drops one step and the streak restarts

Any non-NONE signal resets the streak. Every upgrade opens or escalates
exactly one escalation task in the same commit. Downgrades never resolve
tasks.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from sqlalchemy import select

from toc_orchestrator.core.errors import StateConflictError, ValidationError
from toc_orchestrator.models.audit_event import ActorType
from toc_orchestrator.models.episode import Episode, RiskLevel
from toc_orchestrator.models.escalation import TaskSeverity
from toc_orchestrator.models.interaction import MessageRole
from toc_orchestrator.models.response import RiskSignal
from toc_orchestrator.models.risk import RiskSource, RiskTransition
from toc_orchestrator.services.audit import write_audit_event
from toc_orchestrator.services.context import (
    OrchestratorContext,
    load_episode,
    retry_on_conflict,
)
from toc_orchestrator.services.escalation import EscalationService
from toc_orchestrator.services.interactions import append_message
from toc_orchestrator.services.work_queue import KIND_REPLAN, KIND_STAFF_NOTIFICATION, TaskQueue

logger = logging.getLogger(__name__)


@dataclass
class RiskOutcome:
    """Result of applying a signal or override."""

    transition: RiskTransition
    task_id: str | None = None
    task_created: bool = False
    duplicate: bool = False

    @property
    def changed(self) -> bool:
        return self.transition.changed


class RiskStateMachine:
    """Applies risk signals and manual overrides to episodes."""

    def __init__(self, ctx: OrchestratorContext) -> None:
        self.ctx = ctx
        self.session = ctx.session
        self.settings = ctx.settings
        self.escalation = EscalationService(ctx)
        self.queue = TaskQueue(ctx.session, ctx.settings)

    async def find_transition(self, idempotency_key: str) -> RiskTransition | None:
        result = await self.session.execute(
            select(RiskTransition).where(RiskTransition.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def history(self, episode_id: str) -> list[RiskTransition]:
        result = await self.session.execute(
            select(RiskTransition)
            .where(RiskTransition.episode_id == episode_id)
            .order_by(RiskTransition.created_at)
        )
        return list(result.scalars().all())

    async def apply_signal(
        self,
        episode_id: str,
        signal: RiskSignal,
        source: RiskSource,
        idempotency_key: str,
        wellness_count: int | None = None,
        reason: str | None = None,
        interaction_id: str | None = None,
        response_id: str | None = None,
    ) -> RiskOutcome | None:
        """Apply one signal in its own transaction.

        Returns None when the episode is closed.

        Raises:
            StateConflictError: If a concurrent writer wins twice
        """

        async def operation() -> RiskOutcome | None:
            episode = await load_episode(self.session, episode_id)
            outcome = await self.apply_signal_in_transaction(
                episode,
                signal,
                source,
                idempotency_key,
                wellness_count=wellness_count,
                reason=reason,
                interaction_id=interaction_id,
                response_id=response_id,
            )
            await self.session.commit()
            return outcome

        return await retry_on_conflict(
            self.session, operation, f"Risk signal for episode {episode_id}"
        )

    async def apply_signal_in_transaction(
        self,
        episode: Episode,
        signal: RiskSignal,
        source: RiskSource,
        idempotency_key: str,
        wellness_count: int | None = None,
        reason: str | None = None,
        interaction_id: str | None = None,
        response_id: str | None = None,
    ) -> RiskOutcome | None:
        """Apply a signal without committing.

        For callers that must record their own changes atomically with the
        risk decision (the response interpreter).
        """
        existing = await self.find_transition(idempotency_key)
        if existing is not None:
            logger.info(f"Risk signal {idempotency_key} already applied")
            return RiskOutcome(transition=existing, task_id=existing.task_id, duplicate=True)

        if not episode.is_open:
            logger.info(
                f"Ignoring {RiskSignal(signal).value} signal for closed episode {episode.id}",
                extra={"episode_id": episode.id},
            )
            return None

        now = self.ctx.now()
        signal = RiskSignal(signal)
        current = episode.current_risk
        streak = episode.wellness_streak or 0

        if signal == RiskSignal.CRITICAL:
            target = RiskLevel.HIGH
            streak = 0
        elif signal == RiskSignal.ELEVATED:
            target = current.up()
            streak = 0
        else:
            streak += 1
            if wellness_count is not None:
                # The conversation's own count can only shorten the streak
                streak = min(streak, wellness_count)
            target = current
            if streak >= self.settings.risk_downgrade_threshold and current != RiskLevel.LOW:
                target = current.down()
                streak = 0

        task_id = None
        task_created = False
        reason_code = f"{source.value}:{signal.value}"

        if target.rank > current.rank:
            task, task_created = await self.escalation.open_or_bump(
                episode,
                TaskSeverity(target.value),
                [reason_code],
                now,
                interaction_id=interaction_id,
                source_response_id=response_id,
            )
            task_id = task.id
        elif signal == RiskSignal.CRITICAL:
            # Already HIGH: a critical reading still needs a human
            task = await self.escalation.get_active_task(episode.id)
            if task is None:
                task, task_created = await self.escalation.open_or_bump(
                    episode,
                    TaskSeverity.HIGH,
                    [reason_code],
                    now,
                    interaction_id=interaction_id,
                    source_response_id=response_id,
                )
            task_id = task.id

        transition = await self._record(
            episode,
            current,
            target,
            streak,
            now,
            source=source,
            signal=signal.value,
            reason=reason,
            actor_id=None,
            task_id=task_id,
            idempotency_key=idempotency_key,
            interaction_id=interaction_id,
        )
        return RiskOutcome(transition=transition, task_id=task_id, task_created=task_created)

    async def manual_override(
        self,
        episode_id: str,
        target_level: str,
        actor_id: str,
        reason: str,
    ) -> RiskOutcome:
        """Staff-initiated level change.

        Upgrades may jump levels; downgrades move one level at a time.

        Raises:
            ValidationError: Unknown level, missing reason, or a multi-level
                downgrade
            StateConflictError: Episode closed, or concurrent update
        """
        try:
            target = RiskLevel(target_level)
        except ValueError as e:
            raise ValidationError(f"Invalid risk level: {target_level}") from e
        if not reason or not reason.strip():
            raise ValidationError("Override reason is required")
        if not actor_id:
            raise ValidationError("Override requires the acting staff member")

        key = f"manual:{uuid4()}"

        async def operation() -> RiskOutcome:
            now = self.ctx.now()
            episode = await load_episode(self.session, episode_id)
            if not episode.is_open:
                raise StateConflictError(f"Episode {episode_id} is closed")

            current = episode.current_risk
            if target.rank < current.rank - 1:
                raise ValidationError(
                    f"Downgrade from {current.value} must go through {current.down().value}"
                )

            task_id = None
            task_created = False
            if target.rank > current.rank:
                task, task_created = await self.escalation.open_or_bump(
                    episode,
                    TaskSeverity(target.value),
                    [f"{RiskSource.MANUAL.value}:OVERRIDE"],
                    now,
                )
                task_id = task.id

            transition = await self._record(
                episode,
                current,
                target,
                0,
                now,
                source=RiskSource.MANUAL,
                signal=None,
                reason=reason.strip(),
                actor_id=actor_id,
                task_id=task_id,
                idempotency_key=key,
                interaction_id=None,
            )
            await self.session.commit()
            return RiskOutcome(transition=transition, task_id=task_id, task_created=task_created)

        return await retry_on_conflict(
            self.session, operation, f"Risk override for episode {episode_id}"
        )

    async def _record(
        self,
        episode: Episode,
        current: RiskLevel,
        target: RiskLevel,
        streak: int,
        now: datetime,
        source: RiskSource,
        signal: str | None,
        reason: str | None,
        actor_id: str | None,
        task_id: str | None,
        idempotency_key: str,
        interaction_id: str | None,
    ) -> RiskTransition:
        """Write the level, the transition row and follow-up work."""
        changed = target != current

        episode.risk_level = target.value
        episode.wellness_streak = streak
        episode.touch(now)

        transition = RiskTransition(
            episode_id=episode.id,
            from_level=current.value,
            to_level=target.value,
            signal=signal,
            source=source.value,
            reason=reason,
            actor_id=actor_id,
            wellness_streak=streak,
            task_id=task_id,
            idempotency_key=idempotency_key,
        )
        self.session.add(transition)
        await self.session.flush()

        if not changed:
            return transition

        await write_audit_event(
            session=self.session,
            actor_type=ActorType.STAFF if actor_id else ActorType.SYSTEM,
            actor_id=actor_id,
            action="risk_changed",
            action_category="risk",
            entity_type="episode",
            entity_id=episode.id,
            metadata={
                "from": current.value,
                "to": target.value,
                "signal": signal,
                "source": source.value,
                "transition_id": transition.id,
            },
            description=reason,
        )

        if interaction_id:
            await append_message(
                self.session,
                interaction_id,
                MessageRole.SYSTEM,
                f"Risk level changed from {current.value} to {target.value}",
            )

        await self.queue.enqueue(
            kind=KIND_REPLAN,
            payload={
                "episode_id": episode.id,
                "risk_level": target.value,
                "reason": f"RISK_{current.value}_TO_{target.value}",
            },
            idempotency_key=f"replan:transition:{transition.id}",
            available_at=now,
        )

        active_task = await self.escalation.get_active_task(episode.id)
        if active_task is not None:
            await self.queue.enqueue(
                kind=KIND_STAFF_NOTIFICATION,
                payload={
                    "task_id": active_task.id,
                    "staff_id": active_task.assigned_to_id,
                    "role": None,
                    "subject": "Patient risk level changed",
                    "body": (
                        f"Episode {episode.id} risk changed from {current.value} "
                        f"to {target.value}."
                    ),
                },
                idempotency_key=f"notify:transition:{transition.id}",
                available_at=now,
            )

        logger.info(
            f"Episode {episode.id} risk {current.value} -> {target.value} ({source.value})",
            extra={"episode_id": episode.id, "action": "risk_changed"},
        )
        return transition

