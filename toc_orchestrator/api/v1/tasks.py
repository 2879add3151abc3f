"""Escalation task endpoints."""

from fastapi import APIRouter

from toc_orchestrator.api.deps import Context
from toc_orchestrator.schemas.task import ResolveTaskRequest, TaskRead
from toc_orchestrator.services.escalation import EscalationService

router = APIRouter()


@router.get(
    "/{task_id}",
    response_model=TaskRead,
    summary="Get escalation task",
)
async def get_task(task_id: str, ctx: Context) -> TaskRead:
    task = await EscalationService(ctx).get_task(task_id)
    return TaskRead.model_validate(task)


@router.post(
    "/{task_id}/resolve",
    response_model=TaskRead,
    summary="Resolve escalation task",
    description="Closes the task with an outcome and notes and queues a re-plan",
)
async def resolve_task(
    task_id: str,
    request: ResolveTaskRequest,
    ctx: Context,
) -> TaskRead:
    task = await EscalationService(ctx).resolve_task(
        task_id,
        outcome=request.outcome,
        notes=request.notes,
        user_id=request.user_id,
    )
    return TaskRead.model_validate(task)
