"""Prometheus scrape endpoint for bridge metrics."""

from __future__ import annotations

from fastapi import APIRouter, Request, Response

from callbridge.observability.metrics import (
    ACTIVE_CALLS,
    ACTIVE_OBSERVERS,
    get_content_type,
    get_metrics,
)

router = APIRouter()


@router.get("/metrics", include_in_schema=False)
async def metrics(request: Request) -> Response:
    """Expose metrics in Prometheus exposition format.

    Gauges are refreshed from live state first so a scrape never reports
    calls or observers that have already gone.
    """
    state = request.app.state
    ACTIVE_CALLS.set(state.supervisor.active_count)
    ACTIVE_OBSERVERS.set(state.observers.count)

    return Response(content=get_metrics(), media_type=get_content_type())
