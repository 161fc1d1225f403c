"""Device and observer supervisors talking to a live TelemetryHub in-process.

The opener hands each supervisor a bridge transport whose sends go straight
into ``TelemetryHub.handle_text`` and whose receives come from the hub's
writes to the paired connection.
"""

from __future__ import annotations

import asyncio
import time
from urllib.parse import parse_qs, urlsplit

import pytest

from fleetlink.config import DeviceConfig, HeartbeatConfig, LinkConfig
from fleetlink.core.throttler import PlaybackThrottler
from fleetlink.io.connection import ConnectionSupervisor
from fleetlink.observer import FleetView
from fleetlink.roles import ObserverRole, PlaybackDeviceRole

from hub.registry import ConnectionRole, HubConnection, TelemetryHub


class _BridgeSink:
    def __init__(self, bridge: _Bridge) -> None:
        self._bridge = bridge

    async def send_text(self, text: str) -> None:
        if self._bridge.close_code is not None:
            raise ConnectionResetError("client gone")
        self._bridge.inbox.put_nowait(text)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self._bridge.server_closed(code)


class _Bridge:
    def __init__(self, hub: TelemetryHub, url: str) -> None:
        parts = urlsplit(url)
        q = {k: v[0] for k, v in parse_qs(parts.query).items()}
        is_admin = q.get("admin") == "true"
        self.hub = hub
        self.inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.close_code: int | None = None
        self.conn = HubConnection(
            sink=_BridgeSink(self),
            client_id=q.get("deviceId", "admin"),
            role=ConnectionRole.ADMIN_OBSERVER if is_admin else ConnectionRole.DEVICE,
            channel=parts.path.rsplit("/", 1)[-1],
            material_id=q.get("materialId"),
            slot_number=int(q["slotNumber"]) if "slotNumber" in q else None,
        )

    def server_closed(self, code: int) -> None:
        if self.close_code is None:
            self.close_code = code
            self.inbox.put_nowait(None)

    async def send(self, message: str) -> None:
        if self.close_code is not None:
            raise ConnectionResetError("closed")
        await self.hub.handle_text(self.conn, message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.server_closed(code)
        await self.hub.unregister(self.conn, "client closed")

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self.inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class _HubOpener:
    def __init__(self, hub: TelemetryHub) -> None:
        self.hub = hub
        self.bridges: list[_Bridge] = []

    async def __call__(self, url: str) -> _Bridge:
        bridge = _Bridge(self.hub, url)
        await self.hub.register(bridge.conn)
        self.bridges.append(bridge)
        return bridge


async def _until(pred, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not pred():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.002)


def _link() -> LinkConfig:
    return LinkConfig(base_url="http://hub.local", backoff_base_s=0.02, backoff_max_s=0.05)


@pytest.mark.asyncio
async def test_playback_reaches_observer_and_device_recovers_from_eviction():
    hub = TelemetryHub()
    opener = _HubOpener(hub)
    heartbeat = HeartbeatConfig(ping_interval_s=0.05, pong_timeout_s=1.0)

    observer = ConnectionSupervisor(
        ObserverRole("ops"), link=_link(), heartbeat=heartbeat, opener=opener
    )
    view = FleetView()
    observer.on_message(view.apply)
    seen = []
    view.on_playback(seen.append)

    device = ConnectionSupervisor(
        PlaybackDeviceRole(DeviceConfig(device_id="tab-1", material_id="m-1", slot_number=1)),
        link=_link(),
        heartbeat=heartbeat,
        opener=opener,
    )
    throttler = PlaybackThrottler("tab-1", device.send, sample_interval_s=0.01)

    assert await observer.connect()
    assert await device.connect()
    await _until(lambda: view.device("tab-1") is not None and view.device("tab-1").is_online)

    throttler.update(state="loading", ad_id="a1", ad_title="Promo", duration=1.0)
    throttler.update(state="playing", current_time=0.0)
    for step in range(1, 6):
        await asyncio.sleep(0.015)
        throttler.update(current_time=step * 0.2)
    throttler.update(state="ended")
    await _until(lambda: seen and seen[-1].state == "ended")

    states = [u.state for u in seen]
    assert states[0] == "loading"
    assert "playing" in states
    assert [u.progress for u in seen] == sorted(u.progress for u in seen)
    assert all(u.device_id == "tab-1" for u in seen)

    # hub drops the device socket; the device reconnects on its own
    first = next(b for b in opener.bridges if b.conn.client_id == "tab-1")
    await hub.evict(first.conn, "kicked")
    await _until(lambda: not view.device("tab-1").is_online)
    await _until(lambda: device.connected and len(opener.bridges) == 3)
    assert device.reconnect_attempt == 0
    assert first.close_code == 1011
    await _until(lambda: view.device("tab-1").is_online)

    throttler.stop()
    await device.disconnect()
    await observer.disconnect()
    assert hub.connections() == []
