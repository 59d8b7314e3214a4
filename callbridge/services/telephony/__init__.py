"""Telephony services (Twilio).

This module provides integration with Twilio for voice telephony:
- TwilioService: TwiML generation, call placement
- Media Streams frame parsing
"""

from callbridge.services.telephony.twilio import (
    MEDIA_EVENT,
    START_EVENT,
    STOP_EVENT,
    StreamMessage,
    TwilioCallInfo,
    TwilioService,
    decode_media_payload,
    parse_stream_message,
)

__all__ = [
    # Service
    "TwilioService",
    # Data classes
    "TwilioCallInfo",
    "StreamMessage",
    # Frame parsing
    "parse_stream_message",
    "decode_media_payload",
    # Constants
    "MEDIA_EVENT",
    "START_EVENT",
    "STOP_EVENT",
]
