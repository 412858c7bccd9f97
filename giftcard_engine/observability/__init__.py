"""
Observability module - Logging, Metrics, and Tracing.
"""

from giftcard_engine.observability.logging import get_logger, log_context, setup_logging
from giftcard_engine.observability.metrics import metrics
from giftcard_engine.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
