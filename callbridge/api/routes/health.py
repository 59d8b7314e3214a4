"""Health check endpoints.

Provides:
- Basic health check (GET /health)
- Detailed health check with component status (GET /health/detailed)
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from callbridge.config import Settings, get_settings

router = APIRouter()

VERSION = "0.1.0"


class HealthResponse(BaseModel):
    """Basic health check response."""

    status: str


class DetailedHealthResponse(BaseModel):
    """Detailed health check response."""

    status: str
    checks: dict[str, str]
    version: str


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Basic health check endpoint."""
    return HealthResponse(status="healthy")


@router.get("/health/detailed", response_model=DetailedHealthResponse)
async def detailed_health_check(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> DetailedHealthResponse:
    """Detailed health check including component status.

    Checks:
    - Speech AI service configuration
    - Telephony configuration (only needed for outbound calls)
    - Live calls and connected observers
    """
    checks = {}

    speech = request.app.state.speech_service
    checks["speech"] = "configured" if await speech.health_check() else "missing"
    checks["twilio"] = "configured" if settings.twilio_configured else "missing"
    checks["active_calls"] = str(request.app.state.supervisor.active_count)
    checks["observers"] = str(request.app.state.observers.count)

    status = "healthy" if checks["speech"] == "configured" else "degraded"

    return DetailedHealthResponse(
        status=status,
        checks=checks,
        version=VERSION,
    )
