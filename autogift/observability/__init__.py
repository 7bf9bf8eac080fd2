"""
Observability module - Logging, Metrics, and Tracing.
"""

from autogift.observability.logging import get_logger, log_context, setup_logging
from autogift.observability.metrics import metrics
from autogift.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
