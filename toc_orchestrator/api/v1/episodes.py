"""Episode endpoints: adherence, risk override, note export and closure."""

from typing import Any

from fastapi import APIRouter, status

from toc_orchestrator.api.deps import Context
from toc_orchestrator.core.errors import ValidationError
from toc_orchestrator.schemas.ehr import EncounterExportRead, ExportNoteRequest
from toc_orchestrator.schemas.episode import (
    AdherenceActionRequest,
    CloseEpisodeRequest,
    EpisodeRead,
    RiskOverrideRequest,
    RiskTransitionRead,
)
from toc_orchestrator.services.adherence import MedicationAdherenceTracker
from toc_orchestrator.services.context import load_episode
from toc_orchestrator.services.ehr_outbound import EHRExportService
from toc_orchestrator.services.episodes import close_episode
from toc_orchestrator.services.risk import RiskStateMachine

router = APIRouter()


@router.get(
    "/{episode_id}",
    response_model=EpisodeRead,
    summary="Get episode",
)
async def get_episode(episode_id: str, ctx: Context) -> EpisodeRead:
    episode = await load_episode(ctx.session, episode_id)
    return EpisodeRead.model_validate(episode)


@router.get(
    "/{episode_id}/adherence",
    summary="Medication adherence summary",
)
async def get_adherence(episode_id: str, ctx: Context) -> dict[str, Any]:
    summary = await MedicationAdherenceTracker(ctx).summary(episode_id)
    return summary.to_dict()


@router.post(
    "/{episode_id}/adherence",
    summary="Adherence action",
    description="check_pharmacy queries fill status; log_dose records a patient-reported dose",
)
async def adherence_action(
    episode_id: str,
    request: dict[str, Any],
    ctx: Context,
) -> dict[str, Any]:
    """Run an adherence action.

    The body is validated here rather than by FastAPI so an unknown action
    is reported as a validation error.
    """
    action = request.get("action")
    if action not in ("check_pharmacy", "log_dose"):
        raise ValidationError(f"Unknown action: {action}")
    try:
        body = AdherenceActionRequest.model_validate(request)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    tracker = MedicationAdherenceTracker(ctx)
    if body.action == "check_pharmacy":
        return await tracker.check_pharmacy(episode_id)

    if body.taken is None:
        raise ValidationError("log_dose requires 'taken'")
    summary = await tracker.log_dose(
        episode_id,
        body.medication or "",
        taken=body.taken,
        reported_at=body.reported_at,
    )
    return summary.to_dict()


@router.post(
    "/{episode_id}/risk-override",
    summary="Manual risk override",
)
async def risk_override(
    episode_id: str,
    request: RiskOverrideRequest,
    ctx: Context,
) -> dict[str, Any]:
    outcome = await RiskStateMachine(ctx).manual_override(
        episode_id,
        target_level=request.risk_level.value,
        actor_id=request.user_id,
        reason=request.reason,
    )
    return {
        "success": True,
        "changed": outcome.changed,
        "taskId": outcome.task_id,
        "transition": RiskTransitionRead.model_validate(outcome.transition).model_dump(mode="json"),
    }


@router.get(
    "/{episode_id}/risk-history",
    response_model=list[RiskTransitionRead],
    summary="Risk transition history",
)
async def risk_history(episode_id: str, ctx: Context) -> list[RiskTransitionRead]:
    await load_episode(ctx.session, episode_id)
    transitions = await RiskStateMachine(ctx).history(episode_id)
    return [RiskTransitionRead.model_validate(t) for t in transitions]


@router.post(
    "/{episode_id}/export-note",
    response_model=EncounterExportRead,
    summary="Export encounter note",
)
async def export_note(
    episode_id: str,
    request: dict[str, Any],
    ctx: Context,
) -> EncounterExportRead:
    try:
        body = ExportNoteRequest.model_validate(request)
    except ValueError as e:
        raise ValidationError(f"Invalid destination: {request.get('destination')}") from e

    export = await EHRExportService(ctx).export_note(episode_id, body.destination.value)
    return EncounterExportRead.model_validate(export)


@router.post(
    "/{episode_id}/close",
    response_model=EpisodeRead,
    status_code=status.HTTP_200_OK,
    summary="Close episode",
)
async def close(
    episode_id: str,
    request: CloseEpisodeRequest,
    ctx: Context,
) -> EpisodeRead:
    episode = await close_episode(ctx, episode_id, request.reason, actor_id=request.user_id)
    return EpisodeRead.model_validate(episode)
