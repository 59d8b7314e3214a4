"""Core call bridge components.

This module provides the realtime bridge between a phone call and a speech session:
- BridgeSupervisor: Admits media streams and runs one bridge per call
- CallSession: Per-call state machine and event source
- AudioRelay: Frame pump between the two transports
- ObserverRegistry / EventBroadcaster: Fan-out to dashboard observers
"""

from callbridge.core.broadcast import EventBroadcaster, ObserverConnection, ObserverRegistry
from callbridge.core.events import (
    CallState,
    Speaker,
    StatusEvent,
    TranscriptEvent,
    map_telephony_status,
)
from callbridge.core.relay import AudioRelay, RelayResult, RelayStats, TelephonyTransport
from callbridge.core.session import CallSession
from callbridge.core.supervisor import BridgeSupervisor

__all__ = [
    # Supervision
    "BridgeSupervisor",
    "CallSession",
    # Relay
    "AudioRelay",
    "RelayResult",
    "RelayStats",
    "TelephonyTransport",
    # Fan-out
    "ObserverRegistry",
    "ObserverConnection",
    "EventBroadcaster",
    # Events
    "CallState",
    "Speaker",
    "StatusEvent",
    "TranscriptEvent",
    "map_telephony_status",
]
