"""FastAPI application entry point.

Call Bridge - relays Twilio media streams to an Ultravox speech session and
fans transcripts and call status out to dashboard observers.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from callbridge.api.routes import health, metrics, twilio_webhook
from callbridge.api.websocket import media_stream_endpoint, observer_stream_endpoint
from callbridge.config import Settings, get_settings
from callbridge.core.broadcast import EventBroadcaster, ObserverRegistry
from callbridge.core.supervisor import BridgeSupervisor
from callbridge.logging_config import setup_logging
from callbridge.services.speech import SpeechAIService, UltravoxService


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Startup:
    - Initialize logging
    - Create the observer registry, broadcaster and bridge supervisor

    Shutdown:
    - Fail any live call sessions
    - Disconnect observers
    """
    settings: Settings = app.state.settings

    # Startup
    setup_logging(
        level=settings.log_level,
        enable_file=settings.is_production,
    )

    speech: SpeechAIService = app.state.speech_service or UltravoxService(settings)
    observers = ObserverRegistry(max_queue=settings.observer_queue_size)
    broadcaster = EventBroadcaster(observers)

    app.state.speech_service = speech
    app.state.observers = observers
    app.state.broadcaster = broadcaster
    app.state.supervisor = BridgeSupervisor(broadcaster, speech, settings=settings)

    yield

    # Shutdown
    # Sessions first so their terminal status still reaches observers
    await app.state.supervisor.close_all()
    await observers.close_all()


def create_app(
    settings: Settings | None = None,
    speech_service: SpeechAIService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Call Bridge API",
        description="Realtime bridge between Twilio media streams and Ultravox",
        version=health.VERSION,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.speech_service = speech_service

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check routes
    app.include_router(health.router, tags=["Health"])

    # Twilio webhook routes
    app.include_router(twilio_webhook.router, prefix="/api", tags=["Twilio"])

    # Metrics endpoint for Prometheus scraping
    app.include_router(metrics.router, tags=["Observability"])

    # WebSocket endpoint for Twilio media streams
    @app.websocket("/ws/twilio")
    async def twilio_ws(websocket: WebSocket):
        """WebSocket endpoint for Twilio media streams."""
        await media_stream_endpoint(websocket)

    # WebSocket endpoint for dashboard observers
    @app.websocket("/ws/observers")
    async def observers_ws(websocket: WebSocket):
        """WebSocket endpoint for transcript and status observers."""
        await observer_stream_endpoint(websocket)

    return app


# Application instance
app = create_app()
