"""Scheduled work queue drain.

Runs due work items: re-plans, patient and staff notifications and
encounter note export retries. Failed items are retried with backoff.

Usage:
    python -m toc_orchestrator.tasks.work_queue --limit 200
"""

import asyncio
import logging
import sys

from toc_orchestrator.core.logging import setup_logging
from toc_orchestrator.services.work_queue import WorkQueueRunner
from toc_orchestrator.tasks.common import job_context

logger = logging.getLogger(__name__)


async def run_work_queue_task(database_url: str | None = None, limit: int | None = None) -> dict:
    async with job_context(database_url) as ctx:
        result = await WorkQueueRunner(ctx).drain(limit=limit)
        return result.to_dict()


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Drain the durable work queue")
    parser.add_argument(
        "--database-url",
        help="Database URL (overrides DATABASE_URL env var)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum items to claim (default: queue_batch_size)",
    )

    args = parser.parse_args()
    setup_logging()

    try:
        results = asyncio.run(
            run_work_queue_task(database_url=args.database_url, limit=args.limit)
        )
        print(f"Queue drain completed: {results}")
        sys.exit(0)
    except Exception as e:
        logger.exception(f"Job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
