"""Speech AI services (Ultravox)."""

from callbridge.services.speech.protocol import (
    SpeechAIService,
    SpeechEvent,
    SpeechSession,
    SpeechTransport,
)
from callbridge.services.speech.ultravox import (
    UltravoxService,
    UltravoxTransport,
    parse_ultravox_message,
)

__all__ = [
    "SpeechAIService",
    "SpeechTransport",
    "SpeechSession",
    "SpeechEvent",
    "UltravoxService",
    "UltravoxTransport",
    "parse_ultravox_message",
]
