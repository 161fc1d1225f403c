"""WebSocket /ws/{channel} endpoint: device producers and admin observers.

Query parameters (headers of the same name, dash-cased, also accepted):
    deviceId    device or observer identifier (required unless admin=true)
    materialId  mounted display identifier (devices)
    slotNumber  slot on the material (playback devices)
    admin       "true" for dashboard observers

Client → Server:
    {"type": "ping"} / {"type": "pong"}
    {"type": "status", "deviceId": ..., "materialId": ..., "platform": ..., ...}
    {"type": "adPlaybackUpdate", "adId": ..., "state": "playing", ...}
    {"type": "syncRequest", "materialId": ..., "slotNumber": 2}

Server → Client:
    {"type": "ping"} / {"type": "pong"}
    {"type": "deviceUpdate", "device": {...}}            observers
    {"type": "deviceList", "devices": [...]}             observers
    {"type": "adPlaybackUpdate", ...}                    admin observers
    {"type": "slotSync", "sourceSlot": 1, ...}           sibling devices
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from fleetlink.messages.types import CHANNELS

from hub.registry import ConnectionRole, HubConnection, TelemetryHub

log = logging.getLogger(__name__)

router = APIRouter()


def _param(ws: WebSocket, name: str, header: str) -> str:
    return (ws.query_params.get(name) or ws.headers.get(header) or "").strip()


@router.websocket("/ws/{channel}")
async def telemetry_socket(ws: WebSocket, channel: str):
    if channel not in CHANNELS:
        await ws.close(code=4404, reason="unknown_channel")
        return

    device_id = _param(ws, "deviceId", "device-id")
    material_id = _param(ws, "materialId", "material-id") or None
    is_admin = _param(ws, "admin", "admin").lower() == "true"
    slot_number = _to_int(_param(ws, "slotNumber", "slot-number"))

    if not device_id and not is_admin:
        await ws.close(code=4400, reason="missing_device_id")
        return

    await ws.accept()
    hub: TelemetryHub = ws.app.state.hub
    conn = HubConnection(
        sink=ws,
        client_id=device_id or "admin",
        role=ConnectionRole.ADMIN_OBSERVER if is_admin else ConnectionRole.DEVICE,
        channel=channel,
        material_id=material_id,
        slot_number=slot_number,
    )
    await hub.register(conn)
    reason = "client closed"
    try:
        while True:
            raw = await ws.receive_text()
            await hub.handle_text(conn, raw)
    except WebSocketDisconnect as e:
        reason = f"client closed ({e.code})"
    except RuntimeError as e:
        # receive after the hub already closed this socket on eviction
        reason = f"socket closed: {e}"
    finally:
        await hub.release(conn, reason)


def _to_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None
