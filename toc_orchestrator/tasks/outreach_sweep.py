"""Scheduled outreach sweep.

Dispatches due outreach attempts, marks attempts whose grace window or
response window has passed as missed, and completes finished plans.

Usage:
    # Run directly
    python -m toc_orchestrator.tasks.outreach_sweep

    # Or via cron (recommended every 5 minutes)
    */5 * * * * cd /path/to/project && python -m toc_orchestrator.tasks.outreach_sweep

    # Environment variables:
    DATABASE_URL - PostgreSQL connection string
"""

import asyncio
import logging
import sys

from toc_orchestrator.core.logging import setup_logging
from toc_orchestrator.services.scheduler import OutreachScheduler
from toc_orchestrator.tasks.common import job_context

logger = logging.getLogger(__name__)


async def run_outreach_sweep_task(database_url: str | None = None) -> dict:
    """Run one scheduler sweep.

    Args:
        database_url: Database connection string. Defaults to DATABASE_URL.

    Returns:
        Sweep counts
    """
    async with job_context(database_url) as ctx:
        logger.info(f"Starting outreach sweep at {ctx.now().isoformat()}")
        result = await OutreachScheduler(ctx).run_sweep()
        logger.info(f"Outreach sweep complete: {result.to_dict()}")
        return result.to_dict()


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Run the outreach scheduler sweep")
    parser.add_argument(
        "--database-url",
        help="Database URL (overrides DATABASE_URL env var)",
    )

    args = parser.parse_args()
    setup_logging()

    try:
        results = asyncio.run(run_outreach_sweep_task(database_url=args.database_url))
        print(f"Sweep completed: {results}")
        sys.exit(0)
    except Exception as e:
        logger.exception(f"Job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
