"""WebSocket handlers for media streams and observers.

This module provides WebSocket endpoints:
- media_stream_endpoint: Twilio media stream, one bridge per call
- observer_stream_endpoint: Dashboard fan-out of transcript/status events
"""

from callbridge.api.websocket.media_stream import TwilioMediaTransport, media_stream_endpoint
from callbridge.api.websocket.observers import observer_stream_endpoint

__all__ = [
    "media_stream_endpoint",
    "observer_stream_endpoint",
    "TwilioMediaTransport",
]
