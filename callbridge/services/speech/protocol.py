"""Speech AI service protocol and data types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from callbridge.core.events import TRANSCRIPT_EVENT, Speaker


@dataclass(frozen=True, slots=True)
class SpeechSession:
    """A hosted realtime speech session ready to be joined."""

    session_id: str
    join_url: str


@dataclass(frozen=True, slots=True)
class SpeechEvent:
    """One parsed event from the speech transport."""

    kind: str
    text: str = ""
    speaker: Speaker = Speaker.USER
    final: bool = True
    payload: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_transcript(self) -> bool:
        """True for a transcript event worth publishing."""
        return self.kind == TRANSCRIPT_EVENT and self.final and bool(self.text.strip())


class SpeechTransport(Protocol):
    """Bidirectional realtime stream to a speech session.

    ``send_audio`` and ``receive`` raise TransportClosed once the stream ends.
    """

    async def send_audio(self, audio: bytes) -> None:
        """Forward one chunk of caller audio."""
        ...

    async def receive(self) -> str | bytes:
        """Wait for the next frame (text event or binary agent audio)."""
        ...

    def parse_event(self, text: str) -> SpeechEvent:
        """Parse a text frame. Raises ParseError if malformed."""
        ...

    async def close(self) -> None:
        """Close the stream."""
        ...


class SpeechAIService(Protocol):
    """Protocol for speech AI service implementations."""

    async def create_session(self, call_id: str) -> SpeechSession:
        """Create a realtime session for a call.

        Raises:
            SpeechSessionError: If the provider refuses or returns a bad body.
        """
        ...

    async def connect(self, session: SpeechSession) -> SpeechTransport:
        """Join a created session.

        Raises:
            SpeechSessionError: If the stream cannot be opened.
        """
        ...

    async def health_check(self) -> bool:
        """Check if the service is operational."""
        ...
