"""WebSocket handler for Twilio Media Streams.

Handles the Twilio <Stream> protocol:
- Waits for the start event to learn the call identifier
- Admits the call with the bridge supervisor
- Relays media to the speech session until the stream ends
"""

from __future__ import annotations

from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from callbridge.core.supervisor import BridgeSupervisor
from callbridge.exceptions import DuplicateCallError, ParseError, TransportClosed
from callbridge.logging_config import get_logger
from callbridge.observability.metrics import PARSE_FAILURES
from callbridge.services.telephony.twilio import (
    START_EVENT,
    STOP_EVENT,
    StreamMessage,
    parse_stream_message,
)

logger: Any = get_logger(__name__)

# Close codes treated as a normal end of call
CLEAN_CLOSE_CODES = frozenset({1000, 1001})

# Policy violation: duplicate stream for a live call
DUPLICATE_CLOSE_CODE = 1008


class TwilioMediaTransport:
    """Telephony side of the bridge over a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._closed = False

    async def receive_text(self) -> str:
        """Receive the next frame as text.

        Raises:
            TransportClosed: When the peer disconnects.
        """
        if self._closed:
            raise TransportClosed("media stream closed", clean=True)

        message = await self._websocket.receive()
        if message["type"] == "websocket.disconnect":
            self._closed = True
            code = int(message.get("code") or 1000)
            raise TransportClosed(
                "media stream disconnected", clean=code in CLEAN_CLOSE_CODES, code=code
            )

        text = message.get("text")
        if text is None:
            text = (message.get("bytes") or b"").decode("utf-8", errors="replace")
        return text

    async def wait_for_start(self) -> StreamMessage:
        """Read frames until the stream start event.

        Raises:
            TransportClosed: If the stream ends (or stops) before starting.
        """
        while True:
            raw = await self.receive_text()
            try:
                message = parse_stream_message(raw)
            except ParseError as e:
                PARSE_FAILURES.labels(source="telephony").inc()
                logger.warning(f"Dropping malformed frame before stream start: {e}")
                continue

            if message.event == START_EVENT:
                if message.call_sid:
                    return message
                PARSE_FAILURES.labels(source="telephony").inc()
                logger.warning("Start event without callSid")
            elif message.event == STOP_EVENT:
                raise TransportClosed("media stream stopped before start", clean=True)

    async def close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True
        if self._websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self._websocket.close(code=code)
        except RuntimeError as e:
            logger.debug(f"Media stream already closed: {e}")


async def media_stream_endpoint(websocket: WebSocket) -> None:
    """Handle a Twilio media stream WebSocket connection.

    Protocol:
    - Receives JSON messages with events: connected, start, media, mark, stop
    - Sends nothing back; agent audio is not played to the caller
    """
    supervisor: BridgeSupervisor = websocket.app.state.supervisor

    await websocket.accept()
    transport = TwilioMediaTransport(websocket)
    logger.info("Media stream connected")

    try:
        try:
            start = await transport.wait_for_start()
        except TransportClosed as e:
            logger.info(f"Media stream ended before start: {e}")
            return

        try:
            session = await supervisor.admit(
                start.call_sid,
                stream_sid=start.stream_sid,
                from_number=start.parameters.get("from", ""),
                to_number=start.parameters.get("to", ""),
            )
        except DuplicateCallError:
            await transport.close(code=DUPLICATE_CLOSE_CODE)
            return

        state = await supervisor.bridge(session, transport)
        logger.info(f"Media stream for call {start.call_sid} finished as {state.value}")

    except Exception as e:
        logger.error(f"Media stream error: {e}")

    finally:
        await transport.close()
