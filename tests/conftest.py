"""Shared pytest fixtures for call bridge tests."""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Callable, Generator
from typing import Any

import pytest

# callbridge.main builds an app at import time from the environment
os.environ.setdefault("ULTRAVOX_API_KEY", "test-ultravox-key")

from callbridge.config import Settings  # noqa: E402
from callbridge.core.broadcast import EventBroadcaster, ObserverRegistry  # noqa: E402
from callbridge.core.events import BridgeEvent  # noqa: E402
from callbridge.exceptions import SpeechSessionError, TransportClosed  # noqa: E402
from callbridge.services.speech.protocol import SpeechEvent, SpeechSession  # noqa: E402
from callbridge.services.speech.ultravox import parse_ultravox_message  # noqa: E402


def build_settings(**overrides) -> Settings:
    """Create a Settings object with safe test defaults."""
    base = {
        "ultravox_api_key": "test-ultravox-key",
        "ultravox_api_url": "https://ultravox.test/api/calls",
        "twilio_account_sid": "ACtest",
        "twilio_auth_token": "test-twilio-token",
        "twilio_from_number": "+15550000000",
        "public_base_url": "https://bridge.example.com",
    }
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    """Return a factory to build Settings with overrides."""
    return build_settings


@pytest.fixture
def settings(settings_factory: Callable[..., Settings]) -> Settings:
    """Default Settings fixture."""
    return settings_factory()


# =============================================================================
# Frame Builders
# =============================================================================


class StreamFrames:
    """Twilio Media Streams frames as sent on the wire."""

    @staticmethod
    def start(call_sid: str = "CA123", stream_sid: str = "MZ123", **parameters: str) -> str:
        return json.dumps(
            {
                "event": "start",
                "streamSid": stream_sid,
                "start": {
                    "streamSid": stream_sid,
                    "callSid": call_sid,
                    "tracks": ["inbound"],
                    "customParameters": parameters,
                    "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
                },
            }
        )

    @staticmethod
    def media(payload: str = "AAA=", track: str = "inbound") -> str:
        return json.dumps(
            {
                "event": "media",
                "streamSid": "MZ123",
                "media": {"track": track, "chunk": "1", "timestamp": "5", "payload": payload},
            }
        )

    @staticmethod
    def stop() -> str:
        return json.dumps({"event": "stop", "streamSid": "MZ123"})

    @staticmethod
    def transcript(text: str, role: str = "user", final: bool = True) -> str:
        return json.dumps({"type": "transcript", "role": role, "text": text, "final": final})


@pytest.fixture
def frames() -> type[StreamFrames]:
    """Builders for telephony and speech frames."""
    return StreamFrames


# =============================================================================
# Transport Fakes
# =============================================================================


class FakeSpeechTransport:
    """In-memory speech stream.

    Frames pushed with ``push`` are returned by ``receive``; ``replies`` are
    pushed once the first audio chunk arrives.
    """

    def __init__(self, replies: list[str] | None = None) -> None:
        self.sent: list[bytes] = []
        self.closed = False
        self._replies = list(replies or [])
        self._inbox: asyncio.Queue[Any] | None = None

    def _queue(self) -> asyncio.Queue[Any]:
        if self._inbox is None:
            self._inbox = asyncio.Queue()
        return self._inbox

    def push(self, frame: str | bytes) -> None:
        self._queue().put_nowait(frame)

    def end(self, *, clean: bool = True) -> None:
        code = 1000 if clean else 1011
        self._queue().put_nowait(TransportClosed("fake speech closed", clean=clean, code=code))

    async def send_audio(self, audio: bytes) -> None:
        if self.closed:
            raise TransportClosed("fake speech closed", clean=True, code=1000)
        self.sent.append(audio)
        if len(self.sent) == 1:
            for reply in self._replies:
                self.push(reply)

    async def receive(self) -> str | bytes:
        item = await self._queue().get()
        if isinstance(item, TransportClosed):
            raise item
        return item

    def parse_event(self, text: str) -> SpeechEvent:
        return parse_ultravox_message(text)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.end()


class FakeSpeechService:
    """Speech AI service returning in-memory transports."""

    def __init__(
        self,
        *,
        session_id: str = "US456",
        replies: list[str] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.session_id = session_id
        self.replies = replies
        self.error = error
        self.delay = delay
        self.created: list[str] = []
        self.transports: list[FakeSpeechTransport] = []

    async def create_session(self, call_id: str) -> SpeechSession:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.created.append(call_id)
        return SpeechSession(session_id=self.session_id, join_url=f"wss://ultravox.test/{call_id}")

    async def connect(self, session: SpeechSession) -> FakeSpeechTransport:
        transport = FakeSpeechTransport(self.replies)
        self.transports.append(transport)
        return transport

    async def health_check(self) -> bool:
        return self.error is None


class FakeTelephonyTransport:
    """Scripted media stream.

    Returns ``frames`` in order, then closes with ``close_clean``. With
    ``close_clean=None`` the stream stays open until cancelled.
    """

    def __init__(self, frames: list[str] | None = None, *, close_clean: bool | None = True) -> None:
        self._frames = list(frames or [])
        self._close_clean = close_clean
        self.closed_with: int | None = None

    async def receive_text(self) -> str:
        if self._frames:
            return self._frames.pop(0)
        if self._close_clean is None:
            await asyncio.Event().wait()
        code = 1000 if self._close_clean else 1006
        raise TransportClosed("fake telephony closed", clean=bool(self._close_clean), code=code)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code


class RecordingBroadcaster(EventBroadcaster):
    """Broadcaster that also keeps every published event."""

    def __init__(self, registry: ObserverRegistry | None = None) -> None:
        super().__init__(registry or ObserverRegistry())
        self.events: list[BridgeEvent] = []

    async def publish(self, event: BridgeEvent) -> int:
        self.events.append(event)
        return await super().publish(event)


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    """Broadcaster that records published events."""
    return RecordingBroadcaster()


@pytest.fixture
def speech_factory() -> Callable[..., FakeSpeechService]:
    """Return a factory for fake speech services."""
    return FakeSpeechService


@pytest.fixture
def telephony_factory() -> Callable[..., FakeTelephonyTransport]:
    """Return a factory for scripted media streams."""
    return FakeTelephonyTransport


@pytest.fixture
def speech_transport() -> FakeSpeechTransport:
    """A standalone speech stream."""
    return FakeSpeechTransport()


@pytest.fixture
def failing_speech_service() -> FakeSpeechService:
    """Speech service that refuses every session."""
    return FakeSpeechService(error=SpeechSessionError("speech provider unavailable"))


# =============================================================================
# FastAPI Test Client Fixtures
# =============================================================================


@pytest.fixture
def speech_service(frames: type[StreamFrames]) -> FakeSpeechService:
    """Speech service that answers the first audio chunk with one transcript."""
    return FakeSpeechService(replies=[frames.transcript("hello")])


@pytest.fixture
def test_client(settings_factory, speech_service) -> Generator:
    """FastAPI TestClient wired to the fake speech service."""
    from fastapi.testclient import TestClient

    from callbridge.config import get_settings
    from callbridge.main import create_app

    test_settings = settings_factory()

    app = create_app(settings=test_settings, speech_service=speech_service)
    app.dependency_overrides[get_settings] = lambda: test_settings

    with TestClient(app) as client:
        yield client
