"""Observability module for metrics."""

from callbridge.observability.metrics import (
    ACTIVE_CALLS,
    ACTIVE_OBSERVERS,
    CALL_DURATION,
    CALL_TOTAL,
    PARSE_FAILURES,
    record_call_metrics,
)

__all__ = [
    "CALL_TOTAL",
    "CALL_DURATION",
    "ACTIVE_CALLS",
    "ACTIVE_OBSERVERS",
    "PARSE_FAILURES",
    "record_call_metrics",
]
