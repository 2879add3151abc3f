"""Cron trigger for the periodic outreach work."""

import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from toc_orchestrator.api.deps import Context, verify_cron_secret
from toc_orchestrator.services.escalation import EscalationService
from toc_orchestrator.services.scheduler import OutreachScheduler
from toc_orchestrator.services.work_queue import WorkQueueRunner
from toc_orchestrator.utils.time import format_datetime

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/outreach",
    status_code=status.HTTP_200_OK,
    summary="Run outreach cycle",
    description="Runs the outreach sweep, the SLA monitor and a work queue drain",
    dependencies=[Depends(verify_cron_secret)],
)
async def run_outreach_cycle(ctx: Context) -> JSONResponse:
    """Run one scheduling cycle. Each pass is safe to re-run."""
    now = ctx.now()
    try:
        sweep = await OutreachScheduler(ctx).run_sweep(now)
        sla = await EscalationService(ctx).run_sla_monitor(now)
        queue = await WorkQueueRunner(ctx).drain(now)
    except Exception as e:
        logger.exception(f"Outreach cycle failed: {e}")
        await ctx.session.rollback()
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "cron_failed", "details": str(e)},
        )

    return JSONResponse(content={
        "success": True,
        "timestamp": format_datetime(now),
        "sweep": sweep.to_dict(),
        "sla": sla.to_dict(),
        "queue": queue.to_dict(),
    })
