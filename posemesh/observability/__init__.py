"""
Observability module: Metrics and structured logging.
"""

from posemesh.observability.metrics import (
    MetricsCollector,
    Counter,
    Gauge,
    Histogram,
    TelemetryMetrics,
)
from posemesh.observability.logging import (
    LogLevel,
    log_context,
    setup_logging,
)

__all__ = [
    "MetricsCollector",
    "Counter",
    "Gauge",
    "Histogram",
    "TelemetryMetrics",
    "LogLevel",
    "log_context",
    "setup_logging",
]
