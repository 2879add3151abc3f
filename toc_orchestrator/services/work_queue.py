"""Durable work queue for deferred operations.

Work items are rows in ``work_items``. Producers enqueue inside their own
transaction, so a re-plan or notification is queued if and only if the
change that caused it commits. The runner claims due items, executes the
registered handler and records the outcome. Delivery is at-least-once:
handlers must be safe to re-run.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from toc_orchestrator.core.config import Settings, get_settings
from toc_orchestrator.core.errors import OrchestratorError, TransientIntegrationError
from toc_orchestrator.models.work_item import WorkItem, WorkItemStatus
from toc_orchestrator.services.context import OrchestratorContext

logger = logging.getLogger(__name__)

# Work item kinds
KIND_REPLAN = "outreach.replan"
KIND_PATIENT_NOTIFICATION = "notification.patient"
KIND_STAFF_NOTIFICATION = "notification.staff"
KIND_EXPORT_NOTE = "ehr.export_note"

# RUNNING items not finished within this window are claimable again
STALE_CLAIM_MINUTES = 15


class TaskQueue:
    """Enqueue, claim and settle work items."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        idempotency_key: str,
        available_at: datetime,
    ) -> WorkItem:
        """Add a work item to the current transaction.

        Returns the existing item when the key was already used.
        """
        result = await self.session.execute(
            select(WorkItem).where(WorkItem.idempotency_key == idempotency_key)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing

        item = WorkItem(
            kind=kind,
            payload=payload,
            idempotency_key=idempotency_key,
            status=WorkItemStatus.QUEUED,
            attempts=0,
            max_attempts=self.settings.queue_max_attempts,
            available_at=available_at,
        )
        self.session.add(item)
        await self.session.flush()

        logger.debug(f"Enqueued {kind} key={idempotency_key}")
        return item

    async def claim_due(self, now: datetime, limit: int | None = None) -> list[str]:
        """Claim due items and return their ids.

        Each claim is a conditional update, so concurrent runners never
        claim the same item.
        """
        stale_before = now - timedelta(minutes=STALE_CLAIM_MINUTES)
        claimable = or_(
            and_(WorkItem.status == WorkItemStatus.QUEUED, WorkItem.available_at <= now),
            and_(WorkItem.status == WorkItemStatus.RUNNING, WorkItem.claimed_at < stale_before),
        )

        result = await self.session.execute(
            select(WorkItem.id)
            .where(claimable)
            .order_by(WorkItem.available_at)
            .limit(limit or self.settings.queue_batch_size)
        )
        candidate_ids = list(result.scalars().all())

        claimed = []
        for item_id in candidate_ids:
            claim = await self.session.execute(
                update(WorkItem)
                .where(WorkItem.id == item_id, claimable)
                .values(
                    status=WorkItemStatus.RUNNING,
                    claimed_at=now,
                    attempts=WorkItem.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount == 1:
                claimed.append(item_id)

        await self.session.commit()
        return claimed

    async def get(self, item_id: str) -> WorkItem | None:
        result = await self.session.execute(
            select(WorkItem)
            .where(WorkItem.id == item_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def complete(self, item: WorkItem, now: datetime) -> None:
        item.status = WorkItemStatus.DONE
        item.completed_at = now
        item.last_error = None

    def fail(self, item: WorkItem, error: str, now: datetime, retryable: bool) -> None:
        """Schedule a retry with exponential backoff, or fail permanently."""
        item.last_error = error[:2000]
        item.claimed_at = None

        if retryable and item.attempts < item.max_attempts:
            delay = self.settings.queue_backoff_seconds * 2 ** max(item.attempts - 1, 0)
            item.status = WorkItemStatus.QUEUED
            item.available_at = now + timedelta(seconds=delay)
        else:
            item.status = WorkItemStatus.FAILED
            item.completed_at = now


Handler = Callable[[OrchestratorContext, WorkItem], Awaitable[None]]


@dataclass
class DrainResult:
    """Outcome counts of one queue drain."""

    done: int = 0
    retried: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class WorkQueueRunner:
    """Executes claimed work items through registered handlers."""

    def __init__(self, ctx: OrchestratorContext, handlers: dict[str, Handler] | None = None) -> None:
        from toc_orchestrator.services.handlers import DEFAULT_HANDLERS

        self.ctx = ctx
        self.queue = TaskQueue(ctx.session, ctx.settings)
        self.handlers = handlers if handlers is not None else DEFAULT_HANDLERS

    async def drain(self, now: datetime | None = None, limit: int | None = None) -> DrainResult:
        """Run every due item once."""
        now = now or self.ctx.now()
        session = self.ctx.session
        result = DrainResult()

        for item_id in await self.queue.claim_due(now, limit):
            item = await self.queue.get(item_id)
            if item is None:
                continue

            handler = self.handlers.get(item.kind)
            if handler is None:
                logger.error(f"No handler for work item kind {item.kind}")
                self.queue.fail(item, f"Unknown work item kind: {item.kind}", now, retryable=False)
                await session.commit()
                result.failed += 1
                continue

            kind, attempts = item.kind, item.attempts
            try:
                await handler(self.ctx, item)
                await session.commit()
            except TransientIntegrationError as e:
                await session.rollback()
                item = await self.queue.get(item_id)
                self.queue.fail(item, str(e), now, retryable=True)
                await session.commit()
                if item.status == WorkItemStatus.FAILED:
                    logger.error(f"Work item {item_id} ({kind}) exhausted retries: {e}")
                    result.failed += 1
                else:
                    logger.warning(f"Work item {item_id} ({kind}) attempt {attempts} failed: {e}")
                    result.retried += 1
                continue
            except OrchestratorError as e:
                await session.rollback()
                logger.error(f"Work item {item_id} ({kind}) failed: {e.detail}")
                item = await self.queue.get(item_id)
                self.queue.fail(item, str(e), now, retryable=False)
                await session.commit()
                result.failed += 1
                continue
            except Exception as e:
                await session.rollback()
                logger.exception(f"Work item {item_id} ({kind}) raised unexpectedly: {e}")
                item = await self.queue.get(item_id)
                self.queue.fail(item, repr(e), now, retryable=False)
                await session.commit()
                result.failed += 1
                continue

            item = await self.queue.get(item_id)
            self.queue.complete(item, now)
            await session.commit()
            result.done += 1

        if result.done or result.retried or result.failed:
            logger.info(
                f"Queue drain: done={result.done} retried={result.retried} failed={result.failed}"
            )
        return result
