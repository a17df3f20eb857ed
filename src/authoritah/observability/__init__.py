"""Logging and metrics for authoritah."""

from authoritah.observability.logging import (
    ConsoleFormatter,
    JsonFormatter,
    LogContext,
    configure_logging,
)
from authoritah.observability.metrics import get_metrics

__all__ = [
    "ConsoleFormatter",
    "JsonFormatter",
    "LogContext",
    "configure_logging",
    "get_metrics",
]
