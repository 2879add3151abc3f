"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from toc_orchestrator import __version__
from toc_orchestrator.api.v1.router import api_router
from toc_orchestrator.core.config import settings
from toc_orchestrator.core.errors import OrchestratorError
from toc_orchestrator.core.logging import setup_logging
from toc_orchestrator.db.init_db import create_tables

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown events."""
    logger.info(f"Starting Transition of Care Orchestrator (env={settings.env})")

    if settings.init_db_on_startup and not settings.is_prod:
        logger.info("Initializing database...")
        await create_tables()

    yield

    logger.info("Shutting down Transition of Care Orchestrator")


app = FastAPI(
    title="Transition of Care Orchestrator",
    description="Post-discharge outreach, risk tracking and escalation",
    version=__version__,
    docs_url="/docs" if settings.is_dev else None,
    redoc_url="/redoc" if settings.is_dev else None,
    openapi_url="/openapi.json" if settings.is_dev else None,
    lifespan=lifespan,
)


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    """Render domain errors as ``{"error": code, "details": detail}``."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "details": exc.detail},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {"loc": (), "msg": "Invalid request"}
    location = ".".join(str(part) for part in first["loc"] if part != "body")
    details = f"{location}: {first['msg']}" if location else first["msg"]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "validation_error", "details": details},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # Don't expose internal errors in production
    details = "Internal server error" if settings.is_prod else str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "details": details},
    )


app.include_router(api_router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root() -> dict:
    return {
        "service": "Transition of Care Orchestrator",
        "version": __version__,
        "docs": "/docs" if settings.is_dev else "Disabled in production",
    }
