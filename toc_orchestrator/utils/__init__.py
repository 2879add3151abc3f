"""Utility functions."""

from toc_orchestrator.utils.time import SystemClock, ensure_utc, format_datetime, utc_now

__all__ = ["utc_now", "ensure_utc", "format_datetime", "SystemClock"]
