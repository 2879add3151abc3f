"""Administrative interaction endpoints."""

from fastapi import APIRouter, Query

from toc_orchestrator.api.deps import Context
from toc_orchestrator.services.interactions import purge_interaction

router = APIRouter()


@router.delete(
    "/{interaction_id}",
    summary="Purge interaction",
    description="Deletes a conversation with its messages and linked tasks in one transaction",
)
async def delete_interaction(
    interaction_id: str,
    ctx: Context,
    user_id: str | None = Query(None, alias="userId"),
) -> dict:
    deleted = await purge_interaction(ctx.session, interaction_id, actor_id=user_id)
    return {"success": True, "deleted": deleted}
