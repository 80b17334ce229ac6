"""Shared telemetry: logging setup, OpenTelemetry config, tracing and metrics."""

from mailhub.shared.telemetry.logging import get_logger, setup_logging
from mailhub.shared.telemetry.metrics import MailhubMetrics
from mailhub.shared.telemetry.telemetry import (
    TelemetryConfig,
    get_telemetry,
    set_telemetry,
)
from mailhub.shared.telemetry.tracing import add_span_attributes, traced

__all__ = [
    "setup_logging",
    "get_logger",
    "MailhubMetrics",
    "TelemetryConfig",
    "get_telemetry",
    "set_telemetry",
    "traced",
    "add_span_attributes",
]
