"""SSE fallback for dashboards that cannot hold a WebSocket."""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from fleetlink.messages.envelope import ConnectionEvent, encode_frame
from fleetlink.messages.types import CHANNEL_PLAYBACK

from hub.registry import ConnectionRole, HubConnection, TelemetryHub
from hub.sse import SseSink, format_event

log = logging.getLogger(__name__)

router = APIRouter()


@router.get("/sse/playback")
async def playback_events(request: Request, admin: bool = False, clientId: str = ""):
    """Stream hub events; ``admin=true`` also receives playback telemetry."""
    hub: TelemetryHub = request.app.state.hub
    settings = request.app.state.settings
    connection_id = uuid.uuid4().hex[:12]
    sink = SseSink(maxsize=settings.sse_queue_size)
    conn = HubConnection(
        sink=sink,
        client_id=clientId or f"sse-{connection_id}",
        role=ConnectionRole.ADMIN_OBSERVER if admin else ConnectionRole.LISTENER,
        channel=CHANNEL_PLAYBACK,
        transport="sse",
    )
    await hub.register(conn)

    async def stream():
        try:
            yield format_event(
                encode_frame(ConnectionEvent(connection_id=connection_id, message="connected"))
            )
            async for chunk in sink.events(settings.sse_heartbeat_s):
                yield chunk
        finally:
            await hub.release(conn, "sse stream ended")

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
