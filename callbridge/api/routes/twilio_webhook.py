"""Twilio webhook handlers for call lifecycle management.

Handles:
- Call endpoint: Places an outbound call
- TwiML webhook: Returns TwiML that starts the media stream
- Status webhook: Publishes call status transitions to observers
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from callbridge.config import Settings, get_settings
from callbridge.core.supervisor import BridgeSupervisor
from callbridge.logging_config import get_logger, mask_phone
from callbridge.services.telephony.twilio import TwilioCallInfo, TwilioService

router = APIRouter(prefix="/twilio", tags=["Twilio"])
logger: Any = get_logger(__name__)


class CallRequest(BaseModel):
    """Outbound call request."""

    to: str = Field(min_length=1, description="E.164 number to call")


class CallResponse(BaseModel):
    """Outbound call result."""

    success: bool
    sid: str


def get_twilio_service(settings: Settings = Depends(get_settings)) -> TwilioService:
    """Dependency injection for TwilioService."""
    return TwilioService(settings=settings)


def get_supervisor(request: Request) -> BridgeSupervisor:
    """Bridge supervisor created at application startup."""
    return request.app.state.supervisor


def _public_base_url(request: Request, settings: Settings) -> str:
    """Base URL Twilio can reach, honouring proxy headers."""
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")
    host = request.headers.get("x-forwarded-host") or request.headers.get("host", "localhost:8000")
    proto = request.headers.get("x-forwarded-proto", request.url.scheme)
    return f"{proto}://{host}"


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


@router.post("/call", response_model=CallResponse)
async def place_call(
    body: CallRequest,
    request: Request,
    twilio: TwilioService = Depends(get_twilio_service),
    settings: Settings = Depends(get_settings),
) -> CallResponse | JSONResponse:
    """Place an outbound call that streams its audio back to this service."""
    base_url = _public_base_url(request, settings)

    try:
        call_info = await twilio.make_call(
            body.to,
            f"{base_url}/api/twilio/twiml",
            status_callback_url=f"{base_url}/api/twilio/status",
        )
    except Exception as e:
        logger.error(f"Call to {mask_phone(body.to)} failed: {e}")
        return JSONResponse(status_code=500, content={"error": str(e)})

    return CallResponse(success=True, sid=call_info.call_sid)


@router.post("/twiml")
async def twiml_webhook(
    request: Request,
    twilio: TwilioService = Depends(get_twilio_service),
    settings: Settings = Depends(get_settings),
) -> Response:
    """Return TwiML that forks the call audio to the media stream endpoint."""
    stream_url = f"{_to_ws_url(_public_base_url(request, settings))}/ws/twilio"

    form_data = await request.form()
    call_info = TwilioCallInfo.from_webhook({k: str(v) for k, v in form_data.items()})
    logger.debug(f"Returning stream TwiML for {call_info.call_sid or 'unknown call'}")

    # Twilio echoes these back in the stream's start frame
    parameters = {"from": call_info.from_number, "to": call_info.to_number}

    return Response(
        content=twilio.generate_stream_twiml(stream_url, parameters=parameters),
        media_type="application/xml",
    )


@router.post("/status")
async def status_webhook(
    request: Request,
    supervisor: BridgeSupervisor = Depends(get_supervisor),
) -> dict[str, bool]:
    """Handle call progress events from Twilio.

    Expected form data:
    - CallSid: Unique call identifier
    - CallStatus: queued, initiated, ringing, in-progress, completed, busy, ...
    - From / To: Endpoint addresses
    """
    form_data = await request.form()
    call_info = TwilioCallInfo.from_webhook({k: str(v) for k, v in form_data.items()})

    if not call_info.call_sid:
        logger.warning("Status webhook without CallSid")
        return {"ok": True}

    logger.info(f"Call status: {call_info.call_sid} -> {call_info.status}")
    await supervisor.ingest_status(call_info)

    return {"ok": True}


@router.get("/health")
async def twilio_health(
    supervisor: BridgeSupervisor = Depends(get_supervisor),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Report telephony configuration and live calls."""
    return {
        "healthy": settings.twilio_configured,
        "active_calls": supervisor.active_count,
        "calls": supervisor.snapshot(),
    }
