"""Inbound EHR (ADT) endpoint."""

import json

from fastapi import APIRouter, Request, status

from toc_orchestrator.api.deps import Context
from toc_orchestrator.core.errors import MalformedMessageError
from toc_orchestrator.schemas.ehr import ADTResult
from toc_orchestrator.services.ehr_inbound import EHRInboundAdapter

router = APIRouter()


@router.post(
    "/adt",
    response_model=ADTResult,
    status_code=status.HTTP_200_OK,
    summary="Receive ADT message",
    description="Accepts a JSON ADT message or raw HL7 v2 text",
)
async def receive_adt(request: Request, ctx: Context) -> ADTResult:
    """Process an admit/discharge/transfer event.

    Re-delivery of an already processed message returns the original result
    with ``duplicate`` set.
    """
    raw = await request.body()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedMessageError("ADT body is not valid UTF-8") from e
    if not text.strip():
        raise MalformedMessageError("Empty ADT message")

    content_type = request.headers.get("content-type", "")
    if "json" in content_type:
        try:
            body = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedMessageError(f"Invalid JSON: {e.msg}") from e
        if not isinstance(body, dict):
            raise MalformedMessageError("ADT JSON body must be an object")
    else:
        body = text

    return await EHRInboundAdapter(ctx).process(body)
