"""Twilio telephony service for the call bridge.

Handles:
- TwiML generation to start a media stream
- Outbound call placement via the Twilio SDK
- Parsing of Media Streams frames and status webhooks
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from xml.etree.ElementTree import Element, SubElement, tostring

from callbridge.config import Settings, get_settings
from callbridge.exceptions import ParseError, TelephonyConfigError
from callbridge.logging_config import get_logger, mask_phone

if TYPE_CHECKING:
    from twilio.rest import Client

logger: Any = get_logger(__name__)

# Call progress events requested for the status callback
STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]

# Media Streams event names
MEDIA_EVENT = "media"
START_EVENT = "start"
STOP_EVENT = "stop"


@dataclass(frozen=True, slots=True)
class TwilioCallInfo:
    """Information about a Twilio call."""

    call_sid: str
    from_number: str
    to_number: str
    status: str = "initiated"
    direction: str = "outbound-api"

    @classmethod
    def from_webhook(cls, form_data: dict[str, str]) -> TwilioCallInfo:
        """Create from Twilio webhook form data."""
        return cls(
            call_sid=form_data.get("CallSid", ""),
            from_number=form_data.get("From", ""),
            to_number=form_data.get("To", ""),
            status=form_data.get("CallStatus", "initiated"),
            direction=form_data.get("Direction", "outbound-api"),
        )


@dataclass(frozen=True, slots=True)
class StreamMessage:
    """One parsed Media Streams frame."""

    event: str
    stream_sid: str = ""
    call_sid: str = ""
    audio: bytes = b""
    track: str = ""
    parameters: dict[str, str] = field(default_factory=dict)

    @property
    def is_inbound_media(self) -> bool:
        return self.event == MEDIA_EVENT and self.track in ("", "inbound", "inbound_track")


def decode_media_payload(payload: Any) -> bytes:
    """Decode a base64 media payload into raw audio bytes.

    Raises:
        ParseError: If the payload is missing or not valid base64.
    """
    if not isinstance(payload, str) or not payload:
        raise ParseError("media frame without payload")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ParseError(f"invalid base64 payload: {e}") from e


def parse_stream_message(text: str) -> StreamMessage:
    """Parse a Twilio Media Streams text frame.

    Raises:
        ParseError: If the frame is not a JSON object with an ``event`` field,
            or a media frame carries no decodable payload.
    """
    try:
        message = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise ParseError(f"invalid JSON frame: {e}") from e

    if not isinstance(message, dict):
        raise ParseError("frame is not a JSON object")

    event = message.get("event")
    if not isinstance(event, str) or not event:
        raise ParseError("frame has no event")

    stream_sid = str(message.get("streamSid") or "")

    if event == MEDIA_EVENT:
        media = message.get("media")
        if not isinstance(media, dict):
            raise ParseError("media frame without media object")
        return StreamMessage(
            event=event,
            stream_sid=stream_sid,
            audio=decode_media_payload(media.get("payload")),
            track=str(media.get("track") or ""),
        )

    if event == START_EVENT:
        start = message.get("start")
        if not isinstance(start, dict):
            raise ParseError("start frame without start object")
        custom = start.get("customParameters")
        parameters = (
            {str(k): str(v) for k, v in custom.items()} if isinstance(custom, dict) else {}
        )
        return StreamMessage(
            event=event,
            stream_sid=str(start.get("streamSid") or stream_sid),
            call_sid=str(start.get("callSid") or ""),
            parameters=parameters,
        )

    return StreamMessage(event=event, stream_sid=stream_sid)


class TwilioService:
    """Service for Twilio telephony operations."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._client: Client | None = None

    @property
    def client(self) -> Client:
        """Lazy-initialize Twilio REST client."""
        if self._client is None:
            settings = self._settings
            if not settings.twilio_account_sid or not settings.twilio_auth_token:
                raise TelephonyConfigError("Twilio credentials are not configured")

            from twilio.rest import Client

            self._client = Client(
                settings.twilio_account_sid,
                settings.twilio_auth_token.get_secret_value(),
            )
        return self._client

    def generate_stream_twiml(
        self,
        websocket_url: str,
        *,
        greeting: str | None = None,
        pause_seconds: int | None = None,
        parameters: dict[str, str] | None = None,
    ) -> str:
        """Generate TwiML that forks call audio to a media stream.

        Args:
            websocket_url: WebSocket URL that receives the media stream
            greeting: Text spoken after the stream starts
            pause_seconds: How long to keep the call open while streaming
            parameters: Custom parameters echoed back in the stream's start frame

        Returns:
            TwiML string
        """
        greeting = self._settings.twiml_greeting if greeting is None else greeting
        pause_seconds = pause_seconds or self._settings.twiml_pause_seconds

        response = Element("Response")

        start = SubElement(response, "Start")
        stream = SubElement(start, "Stream")
        stream.set("url", websocket_url)
        for name, value in (parameters or {}).items():
            if value:
                param = SubElement(stream, "Parameter")
                param.set("name", name)
                param.set("value", value)

        if greeting:
            say = SubElement(response, "Say")
            say.text = greeting

        pause = SubElement(response, "Pause")
        pause.set("length", str(max(1, int(pause_seconds))))

        xml_str = tostring(response, encoding="unicode")
        return f'<?xml version="1.0" encoding="UTF-8"?>{xml_str}'

    async def make_call(
        self,
        to_number: str,
        twiml_url: str,
        *,
        status_callback_url: str | None = None,
    ) -> TwilioCallInfo:
        """Initiate an outbound call.

        Args:
            to_number: Number to call
            twiml_url: Webhook Twilio fetches TwiML from once the call connects
            status_callback_url: Optional webhook for call progress events

        Returns:
            Call information

        Raises:
            TelephonyConfigError: If credentials or caller ID are missing.
        """
        from_number = self._settings.twilio_from_number
        if not from_number:
            raise TelephonyConfigError("Twilio from-number is not configured")

        params: dict[str, Any] = {
            "to": to_number,
            "from_": from_number,
            "url": twiml_url,
            "method": "POST",
        }
        if status_callback_url:
            params["status_callback"] = status_callback_url
            params["status_callback_event"] = STATUS_CALLBACK_EVENTS
            params["status_callback_method"] = "POST"

        client = self.client

        # Run sync SDK call in thread pool
        loop = asyncio.get_running_loop()
        call = await loop.run_in_executor(None, lambda: client.calls.create(**params))

        logger.info(f"Placed call {call.sid} to {mask_phone(to_number)}")

        return TwilioCallInfo(
            call_sid=call.sid,
            from_number=from_number,
            to_number=to_number,
            status="queued",
        )

    async def health_check(self) -> bool:
        """Check Twilio API connectivity."""
        try:
            client = self.client
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                lambda: client.api.accounts(self._settings.twilio_account_sid).fetch(),
            )
            return True
        except Exception as e:
            logger.warning(f"Twilio health check failed: {e}")
            return False
