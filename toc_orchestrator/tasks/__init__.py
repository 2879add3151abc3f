"""Scheduled jobs for the transition-of-care orchestrator.

- Outreach sweep (dispatch, missed windows, plan completion)
- Escalation SLA monitoring
- Durable work queue drain
"""

from toc_orchestrator.tasks.outreach_sweep import run_outreach_sweep_task
from toc_orchestrator.tasks.sla_monitor import run_sla_monitor_task
from toc_orchestrator.tasks.work_queue import run_work_queue_task

__all__ = [
    "run_outreach_sweep_task",
    "run_sla_monitor_task",
    "run_work_queue_task",
]
