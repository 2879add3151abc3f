"""Work queue handlers.

Each handler receives the context and the claimed work item. Handlers may
run more than once for the same item and must tolerate it.
"""

import logging
from datetime import datetime

from sqlalchemy import select

from toc_orchestrator.core.errors import TransientIntegrationError
from toc_orchestrator.models.ehr import ExportStatus
from toc_orchestrator.models.escalation import StaffMember, StaffRole
from toc_orchestrator.models.work_item import WorkItem
from toc_orchestrator.services.context import (
    OrchestratorContext,
    load_episode,
    load_patient,
    retry_on_conflict,
)
from toc_orchestrator.services.ehr_outbound import EHRExportService
from toc_orchestrator.services.escalation import EscalationService
from toc_orchestrator.services.notifications import PermanentGatewayError, send_with_timeout
from toc_orchestrator.services.plan_builder import OutreachPlanBuilder
from toc_orchestrator.services.work_queue import (
    KIND_EXPORT_NOTE,
    KIND_PATIENT_NOTIFICATION,
    KIND_REPLAN,
    KIND_STAFF_NOTIFICATION,
    Handler,
)
from toc_orchestrator.utils.time import ensure_utc

logger = logging.getLogger(__name__)


async def handle_replan(ctx: OrchestratorContext, item: WorkItem) -> None:
    """Rebuild the outreach plan at the episode's current risk level.

    Skipped when the episode has closed or when a plan at the current level
    was already built after the change that queued this item.
    """
    episode_id = item.payload["episode_id"]
    reason = item.payload.get("reason", "REPLAN")
    requested_at: datetime = ensure_utc(item.available_at)
    builder = OutreachPlanBuilder(ctx)

    async def operation() -> None:
        episode = await load_episode(ctx.session, episode_id)
        if not episode.is_open:
            logger.info(f"Skipping replan for closed episode {episode_id}")
            return

        plan = await builder.get_active_plan(episode)
        if (
            plan is not None
            and plan.risk_level == episode.current_risk.value
            and ensure_utc(plan.activated_at) >= requested_at
        ):
            logger.info(f"Plan {plan.id} already current for episode {episode_id}")
            return

        await builder.build_plan_in_transaction(episode, reason=reason)

    await retry_on_conflict(ctx.session, operation, f"Replan episode {episode_id}")


async def handle_patient_notification(ctx: OrchestratorContext, item: WorkItem) -> None:
    """Send a follow-up question or other message to the patient."""
    payload = item.payload
    episode = await load_episode(ctx.session, payload["episode_id"])
    patient = await load_patient(ctx.session, episode.patient_id)
    channel = payload["channel"]

    recipient = patient.contact_for(channel)
    if not recipient:
        raise PermanentGatewayError(f"No {channel} contact on file for patient {patient.id}")

    await send_with_timeout(
        ctx.gateway,
        channel,
        recipient,
        payload["body"],
        idempotency_key=item.idempotency_key,
        timeout_seconds=ctx.settings.gateway_timeout_seconds,
    )


async def _staff_recipients(ctx: OrchestratorContext, payload: dict) -> list[StaffMember]:
    staff_id = payload.get("staff_id")
    if staff_id is None and payload.get("task_id") and not payload.get("role"):
        task = await EscalationService(ctx).get_task(payload["task_id"])
        staff_id = task.assigned_to_id

    if staff_id:
        staff = await ctx.session.get(StaffMember, staff_id)
        return [staff] if staff is not None else []

    role = payload.get("role") or StaffRole.SUPERVISOR.value
    result = await ctx.session.execute(
        select(StaffMember)
        .where(StaffMember.role == role, StaffMember.is_available.is_(True))
        .order_by(StaffMember.name)
    )
    return list(result.scalars().all())


async def handle_staff_notification(ctx: OrchestratorContext, item: WorkItem) -> None:
    """Notify the assignee, or everyone holding the requested role."""
    payload = item.payload
    recipients = await _staff_recipients(ctx, payload)
    if not recipients:
        logger.warning(f"No staff to notify for work item {item.id} (task {payload.get('task_id')})")
        return

    body = f"{payload['subject']}: {payload['body']}"
    for staff in recipients:
        if staff.email:
            channel, address = "EMAIL", staff.email
        elif staff.phone:
            channel, address = "SMS", staff.phone
        else:
            logger.warning(f"Staff member {staff.id} has no contact details")
            continue
        await send_with_timeout(
            ctx.gateway,
            channel,
            address,
            body,
            idempotency_key=f"{item.idempotency_key}:{staff.id}",
            timeout_seconds=ctx.settings.gateway_timeout_seconds,
        )


async def handle_export_note(ctx: OrchestratorContext, item: WorkItem) -> None:
    """Retry delivery of a pending encounter note export."""
    service = EHRExportService(ctx)
    export_id = item.payload["export_id"]
    export = await service.get_export(export_id)
    if export.status != ExportStatus.PENDING:
        return

    try:
        await service.deliver(export_id, raise_transient=True)
    except TransientIntegrationError as e:
        if item.attempts >= item.max_attempts:
            export = await service.get_export(export_id)
            export.status = ExportStatus.FAILED.value
            export.last_error = f"Gave up after {export.attempts} attempts: {e.detail}"
            await ctx.session.commit()
            logger.error(f"Export {export_id} failed permanently: {e.detail}")
        raise


DEFAULT_HANDLERS: dict[str, Handler] = {
    KIND_REPLAN: handle_replan,
    KIND_PATIENT_NOTIFICATION: handle_patient_notification,
    KIND_STAFF_NOTIFICATION: handle_staff_notification,
    KIND_EXPORT_NOTE: handle_export_note,
}
