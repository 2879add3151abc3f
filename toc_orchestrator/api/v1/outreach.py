"""Outreach response endpoint."""

from typing import Any

from fastapi import APIRouter

from toc_orchestrator.api.deps import Context
from toc_orchestrator.schemas.outreach import PatientReplyPayload
from toc_orchestrator.services.interpreter import ResponseInterpreter

router = APIRouter()


@router.post(
    "/attempts/{attempt_id}/responses",
    summary="Record patient reply",
    description="Interprets a patient reply and applies any resulting risk signal",
)
async def record_response(
    attempt_id: str,
    request: PatientReplyPayload,
    ctx: Context,
) -> dict[str, Any]:
    result = await ResponseInterpreter(ctx).interpret(attempt_id, request.to_payload())
    return result.to_dict()
