"""Ultravox realtime speech service.

Sessions are created over REST and then joined over a WebSocket:
- Outbound binary frames carry caller audio
- Inbound text frames are JSON events (transcripts, state, errors)
- Inbound binary frames carry agent audio
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from callbridge.config import Settings, get_settings
from callbridge.core.events import TRANSCRIPT_EVENT, Speaker
from callbridge.exceptions import ParseError, SpeechSessionError, TransportClosed
from callbridge.logging_config import get_logger
from callbridge.services.speech.protocol import SpeechEvent, SpeechSession

logger: Any = get_logger(__name__)


def parse_ultravox_message(text: str) -> SpeechEvent:
    """Parse an Ultravox data message.

    Accepts both the flat shape (``{"type": "transcript", "role": "user",
    "text": "..."}``) and the nested one (``{"transcript": {"text": "..."}}``).

    Raises:
        ParseError: If the frame is not a JSON object with a ``type``.
    """
    try:
        message = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise ParseError(f"invalid JSON event: {e}") from e

    if not isinstance(message, dict):
        raise ParseError("event is not a JSON object")

    kind = message.get("type")
    if not isinstance(kind, str) or not kind:
        raise ParseError("event has no type")

    if kind != TRANSCRIPT_EVENT:
        return SpeechEvent(kind=kind, payload=message)

    text_value = message.get("text")
    nested = message.get("transcript")
    if not text_value and isinstance(nested, dict):
        text_value = nested.get("text")

    role = message.get("speaker") or message.get("role")
    if not role and isinstance(nested, dict):
        role = nested.get("speaker") or nested.get("role")

    # Agent text arrives as deltas followed by a final message with full text
    final = message.get("final", True) is not False

    return SpeechEvent(
        kind=kind,
        text=text_value if isinstance(text_value, str) else "",
        speaker=Speaker.from_role(role if isinstance(role, str) else None),
        final=final,
        payload=message,
    )


class UltravoxTransport:
    """Joined Ultravox session stream."""

    def __init__(self, websocket: Any) -> None:
        self._websocket = websocket

    async def send_audio(self, audio: bytes) -> None:
        try:
            await self._websocket.send(audio)
        except ConnectionClosedOK as e:
            raise TransportClosed("speech stream closed", clean=True, code=_close_code(e)) from e
        except ConnectionClosed as e:
            raise TransportClosed("speech stream dropped", clean=False, code=_close_code(e)) from e

    async def receive(self) -> str | bytes:
        try:
            return await self._websocket.recv()
        except ConnectionClosedOK as e:
            raise TransportClosed("speech stream closed", clean=True, code=_close_code(e)) from e
        except ConnectionClosed as e:
            raise TransportClosed("speech stream dropped", clean=False, code=_close_code(e)) from e

    def parse_event(self, text: str) -> SpeechEvent:
        return parse_ultravox_message(text)

    async def close(self) -> None:
        try:
            await self._websocket.close()
        except Exception as e:
            logger.debug(f"Error closing speech stream: {e}")


def _close_code(error: ConnectionClosed) -> int | None:
    frame = error.rcvd or error.sent
    return frame.code if frame is not None else None


class UltravoxService:
    """Ultravox speech AI service.

    Session creation is a single REST call; the returned join URL is opened
    as a WebSocket for the lifetime of the call.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport

    def _session_payload(self) -> dict[str, Any]:
        settings = self._settings
        return {
            "systemPrompt": settings.system_prompt,
            "voice": settings.ultravox_voice,
            "medium": {
                "serverWebSocket": {
                    "inputSampleRate": settings.ultravox_input_sample_rate,
                    "outputSampleRate": settings.ultravox_output_sample_rate,
                }
            },
        }

    async def create_session(self, call_id: str) -> SpeechSession:
        """Create a realtime session for a call.

        Args:
            call_id: Telephony call identifier (for logging only)

        Returns:
            Session identifier and join URL

        Raises:
            SpeechSessionError: On transport failure, non-2xx status,
                malformed body, or missing fields.
        """
        headers = {"X-API-Key": self._settings.ultravox_api_key.get_secret_value()}

        try:
            async with httpx.AsyncClient(
                timeout=self._settings.speech_session_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self._settings.ultravox_api_url,
                    json=self._session_payload(),
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise SpeechSessionError(f"Speech session request failed: {e}") from e

        if not response.is_success:
            raise SpeechSessionError(
                f"Speech session request rejected: {response.status_code} {response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise SpeechSessionError("Speech session response is not JSON") from e

        if not isinstance(body, dict):
            raise SpeechSessionError("Speech session response is not an object")

        session_id = body.get("callId")
        join_url = body.get("joinUrl")
        if not isinstance(session_id, str) or not session_id:
            raise SpeechSessionError("Speech session response has no callId")
        if not isinstance(join_url, str) or not join_url:
            raise SpeechSessionError("Speech session response has no joinUrl")

        logger.info(f"Created speech session {session_id} for call {call_id}")
        return SpeechSession(session_id=session_id, join_url=join_url)

    async def connect(self, session: SpeechSession) -> UltravoxTransport:
        """Join a created session over WebSocket."""
        try:
            websocket = await websockets.connect(session.join_url, max_size=None)
        except (OSError, WebSocketException) as e:
            raise SpeechSessionError(
                f"Failed to join speech session {session.session_id}: {e}"
            ) from e

        logger.debug(f"Joined speech session {session.session_id}")
        return UltravoxTransport(websocket)

    async def health_check(self) -> bool:
        """Check the service is configured (no API call)."""
        return bool(self._settings.ultravox_api_key.get_secret_value())
