"""Episode lifecycle operations."""

import logging

from toc_orchestrator.core.errors import StateConflictError, ValidationError
from toc_orchestrator.models.audit_event import ActorType
from toc_orchestrator.models.episode import Episode, EpisodeStatus
from toc_orchestrator.services.audit import write_audit_event
from toc_orchestrator.services.context import OrchestratorContext, load_episode, retry_on_conflict
from toc_orchestrator.services.plan_builder import OutreachPlanBuilder

logger = logging.getLogger(__name__)

EPISODE_CLOSED = "EPISODE_CLOSED"


async def close_episode(
    ctx: OrchestratorContext,
    episode_id: str,
    reason: str,
    actor_id: str | None = None,
) -> Episode:
    """Close an episode and cancel its outstanding outreach.

    Open escalation tasks are left for staff to resolve.

    Raises:
        ValidationError: Missing reason
        NotFoundError: Unknown episode
        StateConflictError: Episode already closed
    """
    if not reason or not reason.strip():
        raise ValidationError("A close reason is required")

    session = ctx.session
    builder = OutreachPlanBuilder(ctx)

    async def operation() -> Episode:
        episode = await load_episode(session, episode_id)
        if not episode.is_open:
            raise StateConflictError(f"Episode {episode_id} is already closed")

        now = ctx.now()
        cancelled = await builder.cancel_active_plan(episode, reason=EPISODE_CLOSED)
        episode.status = EpisodeStatus.CLOSED.value
        episode.closed_at = now
        episode.close_reason = reason.strip()

        await write_audit_event(
            session=session,
            actor_type=ActorType.STAFF if actor_id else ActorType.SYSTEM,
            actor_id=actor_id,
            action="episode_closed",
            action_category="episode",
            entity_type="episode",
            entity_id=episode.id,
            metadata={"reason": episode.close_reason, "attempts_cancelled": cancelled},
        )
        await session.commit()
        return episode

    episode = await retry_on_conflict(session, operation, f"Close episode {episode_id}")
    logger.info(f"Closed episode {episode.id}: {episode.close_reason}")
    return episode
