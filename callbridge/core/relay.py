"""Audio relay between a telephony media stream and a speech session.

Two directions run as sibling tasks sharing one stop signal:
- telephony -> speech: decoded media payloads are forwarded unmodified
- speech -> session: transcript events are handed to the CallSession

The relay is a pass-through with one frame in flight per direction. It does
not buffer, reorder, or reassemble audio.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from callbridge.core.events import ERROR_EVENT
from callbridge.exceptions import ParseError, TransportClosed
from callbridge.logging_config import get_logger
from callbridge.observability.metrics import MEDIA_FRAMES, PARSE_FAILURES
from callbridge.services.telephony.twilio import STOP_EVENT, parse_stream_message

if TYPE_CHECKING:
    from callbridge.core.session import CallSession
    from callbridge.services.speech.protocol import SpeechTransport

logger: Any = get_logger(__name__)


class TelephonyTransport(Protocol):
    """Inbound media stream for one call leg.

    ``receive_text`` raises TransportClosed once the stream ends.
    """

    async def receive_text(self) -> str:
        """Wait for the next JSON text frame."""
        ...

    async def close(self, code: int = 1000) -> None:
        """Close the stream."""
        ...


@dataclass(frozen=True, slots=True)
class RelayResult:
    """Why the relay stopped."""

    clean: bool
    reason: str


@dataclass
class RelayStats:
    """Per-relay counters."""

    frames_forwarded: int = 0
    bytes_forwarded: int = 0
    control_frames: int = 0
    parse_failures: int = 0
    speech_events: int = 0
    transcripts: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "frames_forwarded": self.frames_forwarded,
            "bytes_forwarded": self.bytes_forwarded,
            "control_frames": self.control_frames,
            "parse_failures": self.parse_failures,
            "speech_events": self.speech_events,
            "transcripts": self.transcripts,
        }


class AudioRelay:
    """Bidirectional frame pump for one bridged call."""

    def __init__(
        self,
        session: CallSession,
        telephony: TelephonyTransport,
        speech: SpeechTransport,
    ) -> None:
        self._session = session
        self._telephony = telephony
        self._speech = speech
        self._stop = asyncio.Event()
        self._stop_reason = ""
        self.stats = RelayStats()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self, reason: str = "stopped") -> None:
        """Ask both directions to stop. Safe to call more than once."""
        if not self._stop.is_set():
            self._stop_reason = reason
            self._stop.set()

    async def run(self) -> RelayResult:
        """Pump frames until either transport ends or ``stop`` is called.

        Returns:
            Clean result for a normal close or an explicit stop, unclean for
            transport errors and speech session errors.
        """
        call_id = self._session.call_id
        telephony_task = asyncio.create_task(
            self._pump_telephony(), name=f"relay-telephony-{call_id}"
        )
        speech_task = asyncio.create_task(self._pump_speech(), name=f"relay-speech-{call_id}")
        stop_task = asyncio.create_task(self._stop.wait(), name=f"relay-stop-{call_id}")
        tasks = {telephony_task, speech_task, stop_task}

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if stop_task in done:
            result = RelayResult(clean=True, reason=self._stop_reason or "stopped")
        else:
            # Prefer the telephony side when both finished together
            finished = telephony_task if telephony_task in done else speech_task
            result = self._result_of(finished)

        self._stop.set()
        logger.info(
            f"Relay for call {call_id} ended ({result.reason}, clean={result.clean}): "
            f"{self.stats.frames_forwarded} frames, {self.stats.parse_failures} parse failures"
        )
        return result

    @staticmethod
    def _result_of(task: asyncio.Task[RelayResult]) -> RelayResult:
        if task.cancelled():
            return RelayResult(clean=False, reason="relay cancelled")
        error = task.exception()
        if error is not None:
            logger.error(f"Relay direction {task.get_name()} failed: {error!r}")
            return RelayResult(clean=False, reason=f"{type(error).__name__}: {error}")
        return task.result()

    async def _pump_telephony(self) -> RelayResult:
        """Telephony -> speech."""
        while True:
            try:
                raw = await self._telephony.receive_text()
            except TransportClosed as e:
                return RelayResult(clean=e.clean, reason=f"telephony closed (code={e.code})")

            try:
                message = parse_stream_message(raw)
            except ParseError as e:
                self.stats.parse_failures += 1
                PARSE_FAILURES.labels(source="telephony").inc()
                logger.warning(f"Dropping malformed media frame for call {self._session.call_id}: {e}")
                continue

            if message.is_inbound_media:
                try:
                    await self._speech.send_audio(message.audio)
                except TransportClosed as e:
                    return RelayResult(clean=e.clean, reason=f"speech closed (code={e.code})")
                self.stats.frames_forwarded += 1
                self.stats.bytes_forwarded += len(message.audio)
                MEDIA_FRAMES.inc()
            elif message.event == STOP_EVENT:
                return RelayResult(clean=True, reason="telephony stream stopped")
            else:
                self.stats.control_frames += 1

    async def _pump_speech(self) -> RelayResult:
        """Speech -> call session."""
        while True:
            try:
                frame = await self._speech.receive()
            except TransportClosed as e:
                return RelayResult(clean=e.clean, reason=f"speech closed (code={e.code})")

            # Binary frames are agent audio
            if isinstance(frame, bytes | bytearray):
                continue

            try:
                event = self._speech.parse_event(frame)
            except ParseError as e:
                self.stats.parse_failures += 1
                PARSE_FAILURES.labels(source="speech").inc()
                logger.warning(f"Dropping malformed speech event for call {self._session.call_id}: {e}")
                continue

            self.stats.speech_events += 1

            if event.is_transcript:
                if await self._session.record_transcript(event.speaker, event.text):
                    self.stats.transcripts += 1
            elif event.kind == ERROR_EVENT:
                message = event.payload.get("message") or event.payload.get("error") or "unknown"
                return RelayResult(clean=False, reason=f"speech session error: {message}")
            else:
                logger.debug(f"Speech event {event.kind} for call {self._session.call_id}")
