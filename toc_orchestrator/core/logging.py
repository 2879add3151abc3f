"""Logging configuration."""

import logging
import sys
from typing import Any

from toc_orchestrator.core.config import settings

# Extra fields carried onto structured lines when a call site supplies them
CONTEXT_FIELDS = ("episode_id", "task_id", "attempt_id", "work_item_id", "action")


class StructuredFormatter(logging.Formatter):
    """key=value lines for log shipping outside development."""

    def format(self, record: logging.LogRecord) -> str:
        fields = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                fields[name] = value

        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return " ".join(f"{k}={v}" for k, v in fields.items())


def setup_logging() -> None:
    """Configure the root logger from settings."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if settings.is_dev:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        formatter = StructuredFormatter()

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


class AuditLogger:
    """Mirrors persisted audit events onto the ``audit`` logger."""

    def __init__(self) -> None:
        self.logger = logging.getLogger("audit")

    def log(
        self,
        action: str,
        actor: str,
        entity: str,
        episode_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.logger.info(
            f"AUDIT: action={action} actor={actor} entity={entity} metadata={metadata or {}}",
            extra={"episode_id": episode_id, "action": action},
        )


audit_logger = AuditLogger()
