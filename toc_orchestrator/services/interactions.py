"""Conversation threads: lookup, message append and administrative purge."""

import logging

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from toc_orchestrator.core.errors import NotFoundError
from toc_orchestrator.models.audit_event import ActorType
from toc_orchestrator.models.escalation import EscalationTask, TaskEvent
from toc_orchestrator.models.interaction import (
    AgentInteraction,
    AgentMessage,
    InteractionStatus,
    MessageRole,
)
from toc_orchestrator.services.audit import write_audit_event

logger = logging.getLogger(__name__)


async def get_active_interaction(session: AsyncSession, episode_id: str) -> AgentInteraction | None:
    result = await session.execute(
        select(AgentInteraction)
        .where(
            AgentInteraction.episode_id == episode_id,
            AgentInteraction.status == InteractionStatus.ACTIVE.value,
        )
        .order_by(AgentInteraction.created_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def get_or_create_interaction(
    session: AsyncSession,
    episode_id: str,
    patient_id: str,
    channel: str,
) -> AgentInteraction:
    """The episode's active conversation, created on first contact."""
    interaction = await get_active_interaction(session, episode_id)
    if interaction is not None:
        return interaction

    interaction = AgentInteraction(
        episode_id=episode_id,
        patient_id=patient_id,
        channel=channel,
        status=InteractionStatus.ACTIVE.value,
        wellness_confirmation_count=0,
    )
    session.add(interaction)
    await session.flush()
    return interaction


async def next_sequence_number(session: AsyncSession, interaction_id: str) -> int:
    # Includes messages added earlier in this transaction
    await session.flush()
    result = await session.execute(
        select(func.max(AgentMessage.sequence_number)).where(
            AgentMessage.interaction_id == interaction_id
        )
    )
    return (result.scalar() or 0) + 1


async def append_message(
    session: AsyncSession,
    interaction_id: str,
    role: MessageRole,
    content: str,
    attempt_id: str | None = None,
) -> AgentMessage:
    message = AgentMessage(
        interaction_id=interaction_id,
        role=role.value,
        content=content,
        sequence_number=await next_sequence_number(session, interaction_id),
        attempt_id=attempt_id,
    )
    session.add(message)
    await session.flush()
    return message


async def list_messages(session: AsyncSession, interaction_id: str) -> list[AgentMessage]:
    result = await session.execute(
        select(AgentMessage)
        .where(AgentMessage.interaction_id == interaction_id)
        .order_by(AgentMessage.sequence_number)
    )
    return list(result.scalars().all())


async def purge_interaction(
    session: AsyncSession,
    interaction_id: str,
    actor_id: str | None = None,
) -> dict[str, int]:
    """Delete a conversation with its messages and linked escalation tasks.

    Everything goes in one transaction: either the whole thread and its
    tasks disappear or nothing does.

    Raises:
        NotFoundError: Unknown interaction
    """
    interaction = await session.get(AgentInteraction, interaction_id)
    if interaction is None:
        raise NotFoundError("Interaction", interaction_id)

    try:
        task_ids = list((await session.execute(
            select(EscalationTask.id).where(EscalationTask.interaction_id == interaction_id)
        )).scalars().all())

        events_deleted = 0
        tasks_deleted = 0
        if task_ids:
            events = await session.execute(
                delete(TaskEvent).where(TaskEvent.task_id.in_(task_ids))
            )
            events_deleted = events.rowcount or 0
            tasks = await session.execute(
                delete(EscalationTask).where(EscalationTask.id.in_(task_ids))
            )
            tasks_deleted = tasks.rowcount or 0

        messages = await session.execute(
            delete(AgentMessage).where(AgentMessage.interaction_id == interaction_id)
        )
        await session.delete(interaction)

        counts = {
            "messages": messages.rowcount or 0,
            "tasks": tasks_deleted,
            "task_events": events_deleted,
        }

        await write_audit_event(
            session=session,
            actor_type=ActorType.STAFF if actor_id else ActorType.SYSTEM,
            actor_id=actor_id,
            action="interaction_purged",
            action_category="admin",
            entity_type="agent_interaction",
            entity_id=interaction_id,
            metadata=counts,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(f"Purged interaction {interaction_id}: {counts}")
    return counts
