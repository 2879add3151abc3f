"""Escalation task lifecycle and SLA monitoring.

Tasks are opened (or their severity bumped) by the risk state machine, in
the same transaction as the risk change. This service assigns them to care
staff, watches their SLA deadlines and records resolutions.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from sqlalchemy import case, func, select
from sqlalchemy.orm.exc import StaleDataError

from toc_orchestrator.core.errors import (
    NotFoundError,
    OrchestratorError,
    StateConflictError,
    ValidationError,
)
from toc_orchestrator.models.audit_event import ActorType
from toc_orchestrator.models.episode import Episode
from toc_orchestrator.models.escalation import (
    ACTIVE_TASK_STATUSES,
    EscalationTask,
    ResolutionOutcome,
    StaffMember,
    StaffRole,
    TaskEvent,
    TaskEventType,
    TaskSeverity,
    TaskStatus,
)
from toc_orchestrator.services.audit import write_audit_event
from toc_orchestrator.services.context import (
    OrchestratorContext,
    load_episode,
    retry_on_conflict,
)
from toc_orchestrator.services.work_queue import (
    KIND_REPLAN,
    KIND_STAFF_NOTIFICATION,
    TaskQueue,
)

logger = logging.getLogger(__name__)

_SEVERITY_RANK = {TaskSeverity.LOW: 0, TaskSeverity.MEDIUM: 1, TaskSeverity.HIGH: 2}


def severity_rank(severity: str) -> int:
    return _SEVERITY_RANK[TaskSeverity(severity)]


@dataclass
class SlaMonitorResult:
    """Counts from one SLA monitor pass."""

    assigned: int = 0
    warned: int = 0
    breached: int = 0
    reassigned: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class EscalationService:
    """Service for escalation tasks and their SLAs."""

    def __init__(self, ctx: OrchestratorContext) -> None:
        self.ctx = ctx
        self.session = ctx.session
        self.settings = ctx.settings
        self.queue = TaskQueue(ctx.session, ctx.settings)

    def sla_minutes(self, severity: str) -> int:
        """SLA window for a severity."""
        return {
            TaskSeverity.HIGH: self.settings.sla_minutes_high,
            TaskSeverity.MEDIUM: self.settings.sla_minutes_medium,
            TaskSeverity.LOW: self.settings.sla_minutes_low,
        }[TaskSeverity(severity)]

    def _start_sla(self, task: EscalationTask, now: datetime) -> None:
        task.sla_started_at = now
        task.sla_due_at = now + timedelta(minutes=self.sla_minutes(task.severity))
        task.sla_warning_sent_at = None

    async def get_task(self, task_id: str) -> EscalationTask:
        result = await self.session.execute(
            select(EscalationTask)
            .where(EscalationTask.id == task_id)
            .execution_options(populate_existing=True)
        )
        task = result.scalar_one_or_none()
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    async def get_active_task(self, episode_id: str) -> EscalationTask | None:
        """The episode's open or assigned task, if any."""
        result = await self.session.execute(
            select(EscalationTask)
            .where(
                EscalationTask.episode_id == episode_id,
                EscalationTask.status.in_(ACTIVE_TASK_STATUSES),
            )
            .order_by(EscalationTask.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def list_events(self, task_id: str) -> list[TaskEvent]:
        result = await self.session.execute(
            select(TaskEvent)
            .where(TaskEvent.task_id == task_id)
            .order_by(TaskEvent.created_at)
        )
        return list(result.scalars().all())

    def _record_event(
        self,
        task: EscalationTask,
        event_type: TaskEventType,
        from_severity: str | None = None,
        to_severity: str | None = None,
        staff_id: str | None = None,
        detail: str | None = None,
    ) -> TaskEvent:
        event = TaskEvent(
            task_id=task.id,
            event_type=event_type,
            from_severity=from_severity,
            to_severity=to_severity,
            staff_id=staff_id,
            detail=detail,
        )
        self.session.add(event)
        return event

    async def open_or_bump(
        self,
        episode: Episode,
        severity: TaskSeverity,
        reason_codes: list[str],
        now: datetime,
        interaction_id: str | None = None,
        source_response_id: str | None = None,
    ) -> tuple[EscalationTask, bool]:
        """Open a task for the episode, or escalate the one already open.

        Does not commit; the caller's transaction carries the risk change
        and the task together.

        Returns:
            (task, created)
        """
        task = await self.get_active_task(episode.id)

        if task is None:
            task = EscalationTask(
                episode_id=episode.id,
                interaction_id=interaction_id,
                source_response_id=source_response_id,
                severity=severity.value,
                status=TaskStatus.OPEN.value,
                reason_codes=list(reason_codes),
                escalation_count=0,
            )
            self._start_sla(task, now)
            self.session.add(task)
            await self.session.flush()

            self._record_event(task, TaskEventType.CREATED, to_severity=severity.value)
            await write_audit_event(
                session=self.session,
                actor_type=ActorType.SYSTEM,
                actor_id=None,
                action="task_created",
                action_category="escalation",
                entity_type="escalation_task",
                entity_id=task.id,
                metadata={
                    "episode_id": episode.id,
                    "severity": severity.value,
                    "reason_codes": list(reason_codes),
                },
            )
            logger.info(
                f"Opened {severity.value} task {task.id} for episode {episode.id}",
                extra={"episode_id": episode.id, "task_id": task.id},
            )

            await self.assign_task(task, episode, now)
            return task, True

        previous = TaskSeverity(task.severity)
        task.reason_codes = list(task.reason_codes or []) + [
            code for code in reason_codes if code not in (task.reason_codes or [])
        ]
        if source_response_id:
            task.source_response_id = source_response_id

        raised = severity_rank(severity) > severity_rank(previous)
        if raised:
            task.severity = severity.value
            self._start_sla(task, now)
            detail = None
        else:
            # Already at or above the requested severity; keep the tighter deadline
            detail = "re-escalated at current severity"

        self._record_event(
            task,
            TaskEventType.SEVERITY_BUMPED,
            from_severity=previous.value,
            to_severity=TaskSeverity(task.severity).value,
            detail=detail,
        )
        await write_audit_event(
            session=self.session,
            actor_type=ActorType.SYSTEM,
            actor_id=None,
            action="task_escalated",
            action_category="escalation",
            entity_type="escalation_task",
            entity_id=task.id,
            metadata={
                "episode_id": episode.id,
                "from_severity": previous.value,
                "to_severity": TaskSeverity(task.severity).value,
            },
        )

        if task.assigned_to_id is None:
            await self.assign_task(task, episode, now)
        elif not raised or await self.rebalance_high_task(task, episode, now) is None:
            await self._notify_staff(
                task,
                staff_id=task.assigned_to_id,
                key=f"task:{task.id}:bump:{now.isoformat()}",
                subject="Escalation task severity increased",
                body=f"Task for episode {episode.id} is now {TaskSeverity(task.severity).value}.",
                now=now,
            )

        return task, False

    async def _staff_loads(self) -> dict[str, tuple[int, int]]:
        """Open HIGH task count and total open task count per assignee."""
        result = await self.session.execute(
            select(
                EscalationTask.assigned_to_id,
                func.sum(case((EscalationTask.severity == TaskSeverity.HIGH.value, 1), else_=0)),
                func.count(EscalationTask.id),
            )
            .where(
                EscalationTask.status.in_(ACTIVE_TASK_STATUSES),
                EscalationTask.assigned_to_id.is_not(None),
            )
            .group_by(EscalationTask.assigned_to_id)
        )
        return {row[0]: (int(row[1] or 0), int(row[2] or 0)) for row in result.all()}

    async def select_assignee(
        self,
        condition_code: str,
        exclude_staff_id: str | None = None,
    ) -> StaffMember | None:
        """Least-loaded available nurse, preferring condition specialists."""
        result = await self.session.execute(
            select(StaffMember).where(
                StaffMember.role == StaffRole.NURSE.value,
                StaffMember.is_available == True,  # noqa: E712
            )
        )
        nurses = [s for s in result.scalars().all() if s.id != exclude_staff_id]
        if not nurses:
            return None

        specialists = [s for s in nurses if condition_code in (s.specialties or [])]
        pool = specialists or nurses

        loads = await self._staff_loads()

        def load_key(staff: StaffMember) -> tuple[int, int, str]:
            high, total = loads.get(staff.id, (0, 0))
            return (high, total, staff.name)

        return min(pool, key=load_key)

    async def rebalance_high_task(
        self,
        task: EscalationTask,
        episode: Episode,
        now: datetime,
    ) -> StaffMember | None:
        """Move a task that just became HIGH off an assignee with more HIGH work.

        The holder keeps the task unless a peer in the same preference tier
        (specialist or not) holds fewer HIGH tasks than the holder would
        without it. Does not commit.

        Returns the new assignee, or None when the task stays put.
        """
        holder_id = task.assigned_to_id
        if holder_id is None or task.severity != TaskSeverity.HIGH:
            return None

        # Counts must include this task's new severity
        await self.session.flush()
        peer = await self.select_assignee(episode.condition_code, exclude_staff_id=holder_id)
        if peer is None:
            return None

        holder = await self.session.get(StaffMember, holder_id)
        if holder is not None and holder.is_available:
            holder_specialist = episode.condition_code in (holder.specialties or [])
            peer_specialist = episode.condition_code in (peer.specialties or [])
            if holder_specialist and not peer_specialist:
                return None

        loads = await self._staff_loads()
        holder_high = loads.get(holder_id, (0, 0))[0] - 1
        peer_high = loads.get(peer.id, (0, 0))[0]
        if holder_high <= peer_high:
            return None

        logger.info(
            f"Rebalancing HIGH task {task.id} from {holder_id} ({holder_high} other HIGH) "
            f"to {peer.id} ({peer_high} HIGH)",
            extra={"task_id": task.id, "episode_id": episode.id},
        )
        return await self.assign_task(task, episode, now, exclude_staff_id=holder_id)

    async def assign_task(
        self,
        task: EscalationTask,
        episode: Episode,
        now: datetime,
        exclude_staff_id: str | None = None,
    ) -> StaffMember | None:
        """Assign to the best available nurse. Does not commit.

        Returns the assignee, or None when nobody is available (the task
        stays OPEN for the next monitor pass).
        """
        staff = await self.select_assignee(episode.condition_code, exclude_staff_id)
        if staff is None:
            logger.warning(
                f"No available nurse for task {task.id}",
                extra={"task_id": task.id},
            )
            return None

        previous = task.assigned_to_id
        task.assigned_to_id = staff.id
        task.assigned_at = now
        task.status = TaskStatus.ASSIGNED.value

        self._record_event(
            task,
            TaskEventType.REASSIGNED if previous else TaskEventType.ASSIGNED,
            staff_id=staff.id,
            detail=f"from {previous}" if previous else None,
        )
        await write_audit_event(
            session=self.session,
            actor_type=ActorType.SYSTEM,
            actor_id=None,
            action="task_reassigned" if previous else "task_assigned",
            action_category="escalation",
            entity_type="escalation_task",
            entity_id=task.id,
            metadata={"staff_id": staff.id, "previous_staff_id": previous},
        )
        await self._notify_staff(
            task,
            staff_id=staff.id,
            key=f"task:{task.id}:assigned:{staff.id}:{now.isoformat()}",
            subject="New escalation task assigned",
            body=(
                f"A {TaskSeverity(task.severity).value} priority follow-up task for "
                f"episode {episode.id} has been assigned to you."
            ),
            now=now,
        )
        return staff

    async def _notify_staff(
        self,
        task: EscalationTask,
        key: str,
        subject: str,
        body: str,
        now: datetime,
        staff_id: str | None = None,
        role: StaffRole | None = None,
    ) -> None:
        await self.queue.enqueue(
            kind=KIND_STAFF_NOTIFICATION,
            payload={
                "task_id": task.id,
                "staff_id": staff_id,
                "role": role.value if role else None,
                "subject": subject,
                "body": body,
            },
            idempotency_key=key,
            available_at=now,
        )

    async def resolve_task(
        self,
        task_id: str,
        outcome: str,
        notes: str,
        user_id: str | None,
    ) -> EscalationTask:
        """Close a task with an outcome and notes.

        Resolution never changes the episode's risk level; it queues a
        re-plan at the current level so outreach continues.

        Raises:
            NotFoundError: Unknown task
            ValidationError: Invalid outcome or missing notes
            StateConflictError: Task already resolved
        """
        try:
            outcome_code = ResolutionOutcome(outcome)
        except ValueError as e:
            raise ValidationError(f"Invalid outcome: {outcome}") from e
        if not notes or not notes.strip():
            raise ValidationError("Resolution notes are required")

        async def operation() -> EscalationTask:
            now = self.ctx.now()
            task = await self.get_task(task_id)
            if task.status == TaskStatus.RESOLVED:
                raise StateConflictError(f"Task {task_id} is already resolved")

            episode = await load_episode(self.session, task.episode_id)

            task.status = TaskStatus.RESOLVED.value
            task.outcome = outcome_code.value
            task.resolution_notes = notes.strip()
            task.resolved_by = user_id
            task.resolved_at = now

            self._record_event(
                task,
                TaskEventType.RESOLVED,
                staff_id=user_id,
                detail=outcome_code.value,
            )
            await write_audit_event(
                session=self.session,
                actor_type=ActorType.STAFF,
                actor_id=user_id,
                action="task_resolved",
                action_category="escalation",
                entity_type="escalation_task",
                entity_id=task.id,
                metadata={"outcome": outcome_code.value, "episode_id": episode.id},
            )

            if episode.is_open:
                await self.queue.enqueue(
                    kind=KIND_REPLAN,
                    payload={
                        "episode_id": episode.id,
                        "risk_level": episode.current_risk.value,
                        "reason": f"TASK_RESOLVED:{outcome_code.value}",
                    },
                    idempotency_key=f"replan:task:{task.id}",
                    available_at=now,
                )

            episode.touch(now)
            await self.session.commit()

            logger.info(
                f"Task {task.id} resolved with {outcome_code.value}",
                extra={"task_id": task.id, "episode_id": episode.id},
            )
            return task

        return await retry_on_conflict(self.session, operation, f"Resolve task {task_id}")

    async def run_sla_monitor(self, now: datetime | None = None) -> SlaMonitorResult:
        """One monitor pass over every open or assigned task.

        Each task is handled in its own transaction; a failure on one task
        is logged and does not stop the pass.
        """
        now = now or self.ctx.now()
        result = SlaMonitorResult()

        ids = await self.session.execute(
            select(EscalationTask.id)
            .where(EscalationTask.status.in_(ACTIVE_TASK_STATUSES))
            .order_by(EscalationTask.sla_due_at)
        )

        for task_id in list(ids.scalars().all()):
            try:
                outcome = await self._monitor_task(task_id, now)
            except (OrchestratorError, StaleDataError) as e:
                await self.session.rollback()
                logger.warning(
                    f"SLA check for task {task_id} failed: {e}",
                    extra={"task_id": task_id},
                )
                result.failed += 1
                continue

            for name in outcome:
                setattr(result, name, getattr(result, name) + 1)

        logger.info(f"SLA monitor: {result.to_dict()}")
        return result

    async def _monitor_task(self, task_id: str, now: datetime) -> list[str]:
        outcome: list[str] = []
        task = await self.get_task(task_id)
        if not task.is_active:
            return outcome

        episode = await load_episode(self.session, task.episode_id)

        if task.assigned_to_id is None:
            if await self.assign_task(task, episode, now):
                outcome.append("assigned")

        if task.sla_due_at <= now:
            await self._handle_breach(task, episode, now, outcome)
        elif task.sla_warning_sent_at is None:
            window = task.sla_due_at - task.sla_started_at
            warn_at = task.sla_started_at + window * self.settings.sla_warning_fraction
            if now >= warn_at:
                task.sla_warning_sent_at = now
                self._record_event(task, TaskEventType.SLA_WARNING, staff_id=task.assigned_to_id)
                await self._notify_staff(
                    task,
                    staff_id=task.assigned_to_id,
                    role=None if task.assigned_to_id else StaffRole.SUPERVISOR,
                    key=f"task:{task.id}:warning:{task.sla_due_at.isoformat()}",
                    subject="Escalation task nearing SLA",
                    body=f"Task for episode {episode.id} is due by {task.sla_due_at.isoformat()}.",
                    now=now,
                )
                outcome.append("warned")

        if outcome:
            episode.touch(now)
            await self.session.commit()
        return outcome

    async def _handle_breach(
        self,
        task: EscalationTask,
        episode: Episode,
        now: datetime,
        outcome: list[str],
    ) -> None:
        """Re-escalate a task whose SLA deadline has passed."""
        previous = TaskSeverity(task.severity)
        detail = None

        if previous != TaskSeverity.HIGH:
            task.severity = previous.bump().value
            detail = f"severity raised to {task.severity}"
            staff = await self.rebalance_high_task(task, episode, now)
            if staff is not None:
                outcome.append("reassigned")
                detail = f"{detail}, reassigned to {staff.id}"
        elif task.assigned_to_id:
            staff = await self.assign_task(task, episode, now, exclude_staff_id=task.assigned_to_id)
            if staff is not None:
                outcome.append("reassigned")
                detail = f"reassigned to {staff.id}"

        task.escalation_count = (task.escalation_count or 0) + 1
        self._start_sla(task, now)

        self._record_event(
            task,
            TaskEventType.SLA_BREACH,
            from_severity=previous.value,
            to_severity=TaskSeverity(task.severity).value,
            staff_id=task.assigned_to_id,
            detail=detail,
        )
        await write_audit_event(
            session=self.session,
            actor_type=ActorType.SYSTEM,
            actor_id=None,
            action="task_sla_breached",
            action_category="escalation",
            entity_type="escalation_task",
            entity_id=task.id,
            metadata={
                "episode_id": episode.id,
                "escalation_count": task.escalation_count,
                "from_severity": previous.value,
                "to_severity": TaskSeverity(task.severity).value,
            },
        )
        await self._notify_staff(
            task,
            role=StaffRole.SUPERVISOR,
            key=f"task:{task.id}:breach:{task.escalation_count}",
            subject="Escalation task breached SLA",
            body=(
                f"Task for episode {episode.id} missed its SLA "
                f"(escalation #{task.escalation_count})."
            ),
            now=now,
        )
        logger.warning(
            f"Task {task.id} breached SLA, escalation #{task.escalation_count}",
            extra={"task_id": task.id, "episode_id": episode.id},
        )
        outcome.append("breached")
