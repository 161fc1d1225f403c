"""Read-only presence and debug views."""

from __future__ import annotations

from fastapi import APIRouter, Request

from hub.registry import ConnectionRole, TelemetryHub

router = APIRouter()


@router.get("/devices/status")
async def devices_status(request: Request) -> dict:
    hub: TelemetryHub = request.app.state.hub
    return {
        "devices": [s.to_dict() for s in hub.presence.all_statuses()],
        "summary": hub.presence.summary(),
    }


@router.get("/devices/status/{device_id}")
async def device_status(device_id: str, request: Request) -> dict:
    hub: TelemetryHub = request.app.state.hub
    data = hub.presence.status(device_id).to_dict()
    playback = next(
        (
            c.playback
            for c in hub.connections(ConnectionRole.DEVICE)
            if c.client_id == device_id and c.playback is not None
        ),
        None,
    )
    data["playback"] = playback.to_dict() if playback else None
    return data


@router.get("/debug/hub")
async def debug_hub(request: Request) -> dict:
    hub: TelemetryHub = request.app.state.hub
    return hub.snapshot()
