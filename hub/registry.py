"""Telemetry fan-out hub: registry of live connections and broadcast.

Devices publish on the status and playback channels; admin observers
subscribe.  Device events go to observers only, never back to the
producer.  A write failure on one connection evicts that connection and
never blocks delivery to the others.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from fleetlink.messages.envelope import (
    DeviceList,
    DeviceUpdate,
    Frame,
    FrameError,
    Ping,
    PlaybackUpdate,
    Pong,
    SlotSync,
    StatusFrame,
    SyncRequest,
    decode_frame,
    encode_frame,
    utc_now_iso,
)
from fleetlink.messages.types import PLAYING, UNSETTLED_STATES

from hub.presence import PresenceTracker

log = logging.getLogger(__name__)

_PING_TEXT = encode_frame(Ping())


class ConnectionRole(str, Enum):
    DEVICE = "device"
    ADMIN_OBSERVER = "admin"
    # non-admin SSE stream: receives hub-wide broadcasts only
    LISTENER = "listener"


@dataclass(eq=False, slots=True)
class HubConnection:
    """One live socket or SSE stream.  Compared and hashed by identity."""

    sink: Any
    client_id: str
    role: ConnectionRole
    channel: str
    material_id: str | None = None
    slot_number: int | None = None
    transport: str = "websocket"
    connected_mono: float = field(default_factory=time.monotonic)
    last_seen_mono: float = field(default_factory=time.monotonic)
    device_info: dict[str, Any] = field(default_factory=dict)
    playback: PlaybackUpdate | None = None
    frames_in: int = 0

    def to_dict(self, now: float) -> dict:
        return {
            "client_id": self.client_id,
            "role": self.role.value,
            "channel": self.channel,
            "transport": self.transport,
            "material_id": self.material_id,
            "slot_number": self.slot_number,
            "connected_s": round(now - self.connected_mono, 1),
            "idle_s": round(now - self.last_seen_mono, 1),
            "frames_in": self.frames_in,
            "playback_state": self.playback.state if self.playback else None,
        }


class TelemetryHub:
    def __init__(
        self,
        *,
        presence: PresenceTracker | None = None,
        pong_timeout_s: float = 30.0,
        send_timeout_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.presence = presence or PresenceTracker()
        self._pong_timeout_s = pong_timeout_s
        self._send_timeout_s = send_timeout_s
        self._clock = clock
        self._connections: set[HubConnection] = set()
        # deviceId → most recent device connection (last writer wins)
        self._devices: dict[str, HubConnection] = {}
        self._releasing: set[asyncio.Task] = set()

        self._registered = 0
        self._unregistered = 0
        self._evicted = 0
        self._frames_in = 0
        self._frames_bad = 0
        self._broadcasts = 0
        self._deliveries = 0

    # ── Registry ─────────────────────────────────────────────────

    def connections(
        self, role: ConnectionRole | None = None, channel: str | None = None
    ) -> list[HubConnection]:
        return [
            c
            for c in self._connections
            if (role is None or c.role is role) and (channel is None or c.channel == channel)
        ]

    def device_connection(self, device_id: str) -> HubConnection | None:
        return self._devices.get(device_id)

    async def register(self, conn: HubConnection) -> None:
        conn.last_seen_mono = self._clock()
        self._connections.add(conn)
        self._registered += 1
        log.info(
            "hub: +%s %s on %s via %s (%d live)",
            conn.role.value,
            conn.client_id,
            conn.channel,
            conn.transport,
            len(self._connections),
        )
        if conn.role is ConnectionRole.DEVICE:
            await self._mark_device(conn)

    async def unregister(self, conn: HubConnection, reason: str = "closed") -> bool:
        """Drop a connection.  Returns False if it was already gone."""
        if conn not in self._connections:
            return False
        self._connections.discard(conn)
        self._unregistered += 1
        log.info(
            "hub: -%s %s on %s (%s, %d live)",
            conn.role.value,
            conn.client_id,
            conn.channel,
            reason,
            len(self._connections),
        )
        if conn.role is ConnectionRole.DEVICE:
            if self._devices.get(conn.client_id) is conn:
                del self._devices[conn.client_id]
            still_up = any(
                c.role is ConnectionRole.DEVICE and c.client_id == conn.client_id
                for c in self._connections
            )
            if not still_up:
                status = self.presence.set_socket_status(conn.client_id, False)
                await self.broadcast_to_observers(DeviceUpdate(device=status.to_dict()))
                await self.broadcast_to_observers(self.device_list())
        return True

    async def release(self, conn: HubConnection, reason: str = "closed") -> None:
        """Unregister from a handler's ``finally``.

        The unregister and its offline broadcast run in their own task, so
        cancelling the handler (client teardown, server shutdown) cannot cut
        them short.
        """
        task = asyncio.create_task(
            self.unregister(conn, reason), name=f"release-{conn.client_id}"
        )
        self._releasing.add(task)
        task.add_done_callback(self._releasing.discard)
        await asyncio.shield(task)

    async def _mark_device(self, conn: HubConnection) -> None:
        self._devices[conn.client_id] = conn
        status = self.presence.set_socket_status(conn.client_id, True)
        await self.broadcast_to_observers(DeviceUpdate(device=status.to_dict()))
        await self.broadcast_to_observers(self.device_list())

    def device_list(self) -> DeviceList:
        return DeviceList(devices=[s.to_dict() for s in self.presence.all_statuses()])

    # ── Delivery ─────────────────────────────────────────────────

    async def send_to(self, conn: HubConnection, frame: Frame) -> bool:
        ok = await self._send(conn, encode_frame(frame))
        if not ok:
            await self.evict(conn, "write failed")
        return ok

    async def broadcast(self, frame: Frame, *, exclude: HubConnection | None = None) -> int:
        """Send to every live connection except ``exclude``."""
        targets = [c for c in self._connections if c is not exclude]
        return await self._deliver(targets, frame)

    async def broadcast_to_observers(self, frame: Frame) -> int:
        """Send to every non-device connection (admins and SSE listeners)."""
        targets = [c for c in self._connections if c.role is not ConnectionRole.DEVICE]
        return await self._deliver(targets, frame)

    async def broadcast_to_admins(
        self, frame: Frame, *, exclude: HubConnection | None = None
    ) -> int:
        targets = [
            c
            for c in self._connections
            if c.role is ConnectionRole.ADMIN_OBSERVER and c is not exclude
        ]
        return await self._deliver(targets, frame)

    async def _deliver(self, targets: list[HubConnection], frame: Frame) -> int:
        self._broadcasts += 1
        if not targets:
            return 0
        text = encode_frame(frame)
        results = await asyncio.gather(*(self._send(c, text) for c in targets))
        failed = [c for c, ok in zip(targets, results) if not ok]
        for conn in failed:
            await self.evict(conn, "write failed")
        delivered = len(targets) - len(failed)
        self._deliveries += delivered
        return delivered

    async def _send(self, conn: HubConnection, text: str) -> bool:
        try:
            await asyncio.wait_for(conn.sink.send_text(text), timeout=self._send_timeout_s)
            return True
        except asyncio.TimeoutError:
            log.warning(
                "hub: send to %s stalled for %.1fs", conn.client_id, self._send_timeout_s
            )
            return False
        except Exception as e:
            log.warning("hub: send to %s failed: %s", conn.client_id, e)
            return False

    async def evict(self, conn: HubConnection, reason: str) -> None:
        """Unregister and close a connection (no-op if already gone)."""
        if not await self.unregister(conn, reason):
            return
        self._evicted += 1
        try:
            await asyncio.wait_for(
                conn.sink.close(code=1011, reason=reason), timeout=self._send_timeout_s
            )
        except Exception as e:
            log.debug("hub: close of evicted %s failed: %s", conn.client_id, e)

    # ── Inbound ──────────────────────────────────────────────────

    async def handle_text(self, conn: HubConnection, raw: str | bytes) -> None:
        conn.last_seen_mono = self._clock()
        conn.frames_in += 1
        self._frames_in += 1
        try:
            frame = decode_frame(raw)
        except FrameError as e:
            self._frames_bad += 1
            log.debug("hub: bad frame from %s: %s", conn.client_id, e)
            return

        if isinstance(frame, Ping):
            await self.send_to(conn, Pong())
        elif isinstance(frame, Pong):
            pass
        elif isinstance(frame, StatusFrame):
            await self._on_status(conn, frame)
        elif conn.role is not ConnectionRole.DEVICE:
            log.debug("hub: ignoring %s from observer %s", frame.TYPE, conn.client_id)
        elif isinstance(frame, PlaybackUpdate):
            await self._on_playback(conn, frame)
        elif isinstance(frame, SyncRequest):
            await self._on_sync_request(conn, frame)
        else:
            log.debug("hub: ignoring %s from %s", frame.TYPE, conn.client_id)

    async def _on_status(self, conn: HubConnection, frame: StatusFrame) -> None:
        if conn.role is ConnectionRole.ADMIN_OBSERVER:
            return
        conn.device_info = {
            "platform": frame.platform,
            "deviceName": frame.device_name,
            "osVersion": frame.os_version,
        }
        if not conn.material_id and frame.material_id:
            conn.material_id = frame.material_id
        await self._mark_device(conn)

    async def _on_playback(self, conn: HubConnection, update: PlaybackUpdate) -> None:
        # the socket's identity wins over whatever the payload claims
        update = dataclasses.replace(update, device_id=conn.client_id, timestamp=utc_now_iso())
        conn.playback = update
        await self.broadcast_to_admins(update, exclude=conn)
        if conn.material_id and conn.slot_number is not None:
            sync = SlotSync.from_update(
                update, source_slot=conn.slot_number, material_id=conn.material_id
            )
            await self._deliver(self._siblings(conn, conn.material_id), sync)

    async def _on_sync_request(self, conn: HubConnection, req: SyncRequest) -> None:
        peers = [p for p in self._siblings(conn, req.material_id) if p.playback is not None]
        best = next((p for p in peers if p.playback.state == PLAYING), None)
        if best is None:
            best = next((p for p in peers if p.playback.state not in UNSETTLED_STATES), None)
        if best is None or best.slot_number is None:
            log.debug("hub: no sync source for %s/%s", req.material_id, req.slot_number)
            return
        await self.send_to(
            conn,
            SlotSync.from_update(
                best.playback, source_slot=best.slot_number, material_id=req.material_id
            ),
        )

    def _siblings(self, conn: HubConnection, material_id: str) -> list[HubConnection]:
        return [
            c
            for c in self._connections
            if c is not conn
            and c.role is ConnectionRole.DEVICE
            and c.material_id == material_id
            and c.slot_number is not None
            and c.slot_number != conn.slot_number
        ]

    # ── Offline-queue intake ─────────────────────────────────────

    async def report_status(self, device_id: str, is_online: bool, when: float | None = None) -> None:
        """Presence that arrived over HTTP instead of a socket."""
        status = self.presence.set_reported_status(device_id, is_online, when)
        await self.broadcast_to_observers(DeviceUpdate(device=status.to_dict()))

    # ── Liveness ─────────────────────────────────────────────────

    async def sweep(self) -> int:
        """Evict silent sockets and ping the rest.  Returns evictions."""
        now = self._clock()
        evicted = 0
        for conn in list(self._connections):
            if conn.transport != "websocket":
                continue
            if now - conn.last_seen_mono > self._pong_timeout_s:
                await self.evict(conn, "liveness timeout")
                evicted += 1
            elif not await self._send(conn, _PING_TEXT):
                await self.evict(conn, "ping failed")
                evicted += 1
        return evicted

    async def run_sweeper(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                n = await self.sweep()
            except Exception:
                log.exception("hub: sweep failed")
                continue
            if n:
                log.info("hub: sweep evicted %d connections", n)

    async def close_all(self, code: int = 1001, reason: str = "server shutdown") -> None:
        if self._releasing:
            await asyncio.gather(*self._releasing, return_exceptions=True)
        conns = list(self._connections)
        self._connections.clear()
        self._devices.clear()
        for conn in conns:
            try:
                await asyncio.wait_for(
                    conn.sink.close(code=code, reason=reason), timeout=self._send_timeout_s
                )
            except Exception as e:
                log.debug("hub: close of %s failed: %s", conn.client_id, e)

    def snapshot(self) -> dict:
        now = self._clock()
        by_role: dict[str, int] = {}
        by_channel: dict[str, int] = {}
        for c in self._connections:
            by_role[c.role.value] = by_role.get(c.role.value, 0) + 1
            by_channel[c.channel] = by_channel.get(c.channel, 0) + 1
        return {
            "live": len(self._connections),
            "by_role": by_role,
            "by_channel": by_channel,
            "registered": self._registered,
            "unregistered": self._unregistered,
            "evicted": self._evicted,
            "frames_in": self._frames_in,
            "frames_bad": self._frames_bad,
            "broadcasts": self._broadcasts,
            "deliveries": self._deliveries,
            "connections": sorted(
                (c.to_dict(now) for c in self._connections),
                key=lambda d: (d["role"], d["client_id"]),
            ),
            "presence": self.presence.summary(),
        }
