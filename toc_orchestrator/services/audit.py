"""Audit trail writes and queries."""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from toc_orchestrator.core.logging import audit_logger
from toc_orchestrator.models.audit_event import ActorType, AuditEvent


def _episode_of(entity_type: str, entity_id: str | None, metadata: dict[str, Any] | None) -> str | None:
    if entity_type == "episode":
        return entity_id
    return (metadata or {}).get("episode_id")


async def write_audit_event(
    session: AsyncSession,
    actor_type: ActorType,
    actor_id: str | None,
    action: str,
    entity_type: str,
    entity_id: str | None,
    metadata: dict[str, Any] | None = None,
    action_category: str | None = None,
    description: str | None = None,
) -> AuditEvent:
    """Add an audit event to the current unit of work.

    The event is flushed but not committed: it becomes durable together
    with the change it describes, or not at all.

    Args:
        session: Database session
        actor_type: system, staff, patient or ehr
        actor_id: Staff user id, patient id or source system
        action: What happened (e.g. "plan_built", "risk_changed")
        entity_type: Kind of record affected (e.g. "episode", "escalation_task")
        entity_id: ID of the affected record
        metadata: Additional context stored as JSON; an ``episode_id`` key
            links the event to its episode
        action_category: outreach, risk, escalation, ehr, adherence or admin
        description: Human-readable description

    Returns:
        Created AuditEvent instance
    """
    episode_id = _episode_of(entity_type, entity_id, metadata)
    event = AuditEvent(
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        action_category=action_category,
        entity_type=entity_type,
        entity_id=entity_id,
        episode_id=episode_id,
        event_metadata=metadata,
        description=description,
    )

    session.add(event)
    await session.flush()

    audit_logger.log(
        action=action,
        actor=f"{actor_type.value}:{actor_id or '-'}",
        entity=f"{entity_type}:{entity_id or '-'}",
        episode_id=episode_id,
        metadata=metadata,
    )

    return event


async def list_audit_events(
    session: AsyncSession,
    entity_type: str | None = None,
    entity_id: str | None = None,
    action: str | None = None,
    episode_id: str | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    """Query audit events, newest first."""
    query = select(AuditEvent)

    if entity_type:
        query = query.where(AuditEvent.entity_type == entity_type)
    if entity_id:
        query = query.where(AuditEvent.entity_id == entity_id)
    if action:
        query = query.where(AuditEvent.action == action)
    if episode_id:
        query = query.where(AuditEvent.episode_id == episode_id)

    query = query.order_by(AuditEvent.created_at.desc()).limit(limit)

    result = await session.execute(query)
    return list(result.scalars().all())
