"""API v1 router aggregating all endpoints."""

from fastapi import APIRouter

from toc_orchestrator.api.v1 import adt, cron, episodes, health, interactions, outreach, tasks

api_router = APIRouter()

# Health check
api_router.include_router(
    health.router,
    prefix="/health",
    tags=["health"],
)

# EHR inbound
api_router.include_router(
    adt.router,
    prefix="/ehr",
    tags=["ehr"],
)

# Cron trigger
api_router.include_router(
    cron.router,
    prefix="/cron",
    tags=["cron"],
)

# Episodes
api_router.include_router(
    episodes.router,
    prefix="/episodes",
    tags=["episodes"],
)

# Escalation tasks
api_router.include_router(
    tasks.router,
    prefix="/tasks",
    tags=["tasks"],
)

# Patient replies
api_router.include_router(
    outreach.router,
    prefix="/outreach",
    tags=["outreach"],
)

# Administration
api_router.include_router(
    interactions.router,
    prefix="/interactions",
    tags=["interactions"],
)
