"""WebSocket handler for dashboard observers.

Observers receive transcript and status events as JSON text frames.
Anything an observer sends is read and discarded.
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from callbridge.core.broadcast import ObserverConnection, ObserverRegistry
from callbridge.logging_config import get_logger

logger: Any = get_logger(__name__)

# Try again later: the observer fell too far behind
EVICTED_CLOSE_CODE = 1013


async def _forward_frames(websocket: WebSocket, observer: ObserverConnection) -> None:
    """Write queued frames until the observer is closed."""
    while True:
        frame = await observer.next_frame()
        if frame is None:
            return
        await websocket.send_text(frame)


async def _discard_inbound(websocket: WebSocket) -> None:
    """Drain inbound messages until the observer disconnects."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def observer_stream_endpoint(websocket: WebSocket) -> None:
    """Handle an observer WebSocket connection."""
    registry: ObserverRegistry = websocket.app.state.observers

    # Register before completing the handshake so no event published after
    # the client sees the connection open is missed
    observer = await registry.register()
    try:
        await websocket.accept()

        writer = asyncio.create_task(_forward_frames(websocket, observer))
        reader = asyncio.create_task(_discard_inbound(websocket))
        done, pending = await asyncio.wait({writer, reader}, return_when=asyncio.FIRST_COMPLETED)

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if writer in done:
            error = writer.exception()
            if error is not None:
                logger.info(f"Observer {observer.id} send failed: {error!r}")
            elif websocket.application_state == WebSocketState.CONNECTED:
                # Evicted or shut down while the client is still connected
                await websocket.close(code=EVICTED_CLOSE_CODE)

    except Exception as e:
        logger.error(f"Observer {observer.id} error: {e}")

    finally:
        await registry.unregister(observer.id)
