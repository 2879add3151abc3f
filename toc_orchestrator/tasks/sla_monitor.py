"""Scheduled escalation SLA monitor.

Assigns unassigned tasks, sends warnings as deadlines approach and
re-escalates breached tasks.

Usage:
    python -m toc_orchestrator.tasks.sla_monitor

    # Environment variables:
    DATABASE_URL - PostgreSQL connection string
"""

import asyncio
import logging
import sys

from toc_orchestrator.core.logging import setup_logging
from toc_orchestrator.services.escalation import EscalationService
from toc_orchestrator.tasks.common import job_context

logger = logging.getLogger(__name__)


async def run_sla_monitor_task(database_url: str | None = None) -> dict:
    """Run one SLA monitor pass and return its counts."""
    async with job_context(database_url) as ctx:
        result = await EscalationService(ctx).run_sla_monitor()
        logger.info(f"SLA monitor complete: {result.to_dict()}")
        return result.to_dict()


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Run the escalation SLA monitor")
    parser.add_argument(
        "--database-url",
        help="Database URL (overrides DATABASE_URL env var)",
    )

    args = parser.parse_args()
    setup_logging()

    try:
        results = asyncio.run(run_sla_monitor_task(database_url=args.database_url))
        print(f"SLA monitor completed: {results}")
        sys.exit(0)
    except Exception as e:
        logger.exception(f"Job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
