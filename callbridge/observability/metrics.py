"""Prometheus metrics for the call bridge.

Provides metrics for monitoring call outcomes, relay health, and observer fan-out.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST

# =============================================================================
# Counters
# =============================================================================

CALL_TOTAL = Counter(
    "callbridge_call_total",
    "Total bridged calls by terminal state",
    ["outcome"],
)

ADMISSION_REJECTIONS = Counter(
    "callbridge_admission_rejections_total",
    "Inbound media streams refused at admission",
    ["reason"],
)

MEDIA_FRAMES = Counter(
    "callbridge_media_frames_total",
    "Audio frames forwarded from telephony to the speech session",
)

PARSE_FAILURES = Counter(
    "callbridge_parse_failures_total",
    "Malformed frames dropped by the relay",
    ["source"],
)

TRANSCRIPTS_TOTAL = Counter(
    "callbridge_transcripts_total",
    "Transcript lines published to observers",
    ["speaker"],
)

OBSERVER_EVICTIONS = Counter(
    "callbridge_observer_evictions_total",
    "Observers disconnected because their send queue overflowed",
)

# =============================================================================
# Gauges
# =============================================================================

ACTIVE_CALLS = Gauge(
    "callbridge_active_calls",
    "Currently bridged calls",
)

ACTIVE_OBSERVERS = Gauge(
    "callbridge_active_observers",
    "Currently connected observers",
)

# =============================================================================
# Histograms
# =============================================================================

CALL_DURATION = Histogram(
    "callbridge_call_duration_seconds",
    "Bridged call duration in seconds",
    buckets=[10, 30, 60, 120, 300, 600, 900, 1800],
)

SPEECH_SESSION_LATENCY = Histogram(
    "callbridge_speech_session_seconds",
    "Time to create and join a speech session",
    buckets=[0.1, 0.25, 0.5, 0.75, 1.0, 1.5, 2.0, 3.0, 5.0, 10.0],
)

# =============================================================================
# Helper Functions
# =============================================================================


def record_call_metrics(outcome: str, duration_seconds: float) -> None:
    """Record metrics for a finished call.

    Args:
        outcome: Terminal call state (completed, failed)
        duration_seconds: Time from admission to the terminal state
    """
    CALL_TOTAL.labels(outcome=outcome).inc()
    CALL_DURATION.observe(duration_seconds)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output.

    Returns:
        Metrics in Prometheus text exposition format.
    """
    return generate_latest()


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
