"""Tests for TelemetryHub registry, fan-out, eviction, and slot sync."""

from __future__ import annotations

import asyncio
import json

import pytest

from fleetlink.messages.envelope import decode_frame
from fleetlink.messages.types import CHANNEL_PLAYBACK, CHANNEL_STATUS

from hub.presence import PresenceTracker
from hub.registry import ConnectionRole, HubConnection, TelemetryHub


class _FakeSink:
    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.closed: list[int] = []
        self.fail = fail

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed.append(code)

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == msg_type]


def _device(device_id: str = "tab-1", *, material_id="m-1", slot=None, channel=CHANNEL_PLAYBACK):
    return HubConnection(
        sink=_FakeSink(),
        client_id=device_id,
        role=ConnectionRole.DEVICE,
        channel=channel,
        material_id=material_id,
        slot_number=slot,
    )


def _observer(name: str = "admin", *, fail: bool = False) -> HubConnection:
    return HubConnection(
        sink=_FakeSink(fail=fail),
        client_id=name,
        role=ConnectionRole.ADMIN_OBSERVER,
        channel=CHANNEL_PLAYBACK,
    )


def _playback(**overrides) -> str:
    d = {
        "type": "adPlaybackUpdate",
        "deviceId": "spoofed",
        "adId": "a1",
        "adTitle": "Promo",
        "state": "playing",
        "currentTime": 2.0,
        "duration": 10.0,
        "progress": 20.0,
        "timestamp": "2026-01-01T00:00:00.000Z",
    }
    d.update(overrides)
    return json.dumps(d)


@pytest.mark.asyncio
async def test_playback_reaches_every_observer_and_never_echoes():
    hub = TelemetryHub()
    observers = [_observer(f"admin-{i}") for i in range(3)]
    for o in observers:
        await hub.register(o)
    device = _device()
    await hub.register(device)

    await hub.handle_text(device, _playback())

    for o in observers:
        updates = o.sink.of_type("adPlaybackUpdate")
        assert len(updates) == 1
        # stamped with the socket's identity, not the payload's
        assert updates[0]["deviceId"] == "tab-1"
    assert device.sink.of_type("adPlaybackUpdate") == []
    assert device.playback is not None and device.playback.progress == 20.0


@pytest.mark.asyncio
async def test_failed_observer_is_evicted_without_blocking_others():
    hub = TelemetryHub()
    good = [_observer("admin-1"), _observer("admin-3")]
    bad = _observer("admin-2", fail=True)
    for o in (good[0], bad, good[1]):
        await hub.register(o)
    frame = decode_frame(_playback(deviceId="tab-1"))

    assert await hub.broadcast_to_admins(frame) == 2
    assert bad not in hub.connections()
    assert bad.sink.closed == [1011]

    assert await hub.broadcast_to_admins(frame) == 2
    assert all(len(o.sink.of_type("adPlaybackUpdate")) == 2 for o in good)
    assert hub.snapshot()["evicted"] == 1


class _StalledSink(_FakeSink):
    """A client that stopped reading: writes and closes never complete."""

    def __init__(self) -> None:
        super().__init__()
        self._never = asyncio.Event()

    async def send_text(self, text: str) -> None:
        await self._never.wait()

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        await self._never.wait()


@pytest.mark.asyncio
async def test_stalled_observer_is_evicted_and_does_not_block_the_hub():
    hub = TelemetryHub(send_timeout_s=0.05)
    good = _observer("admin-1")
    stalled = HubConnection(
        sink=_StalledSink(),
        client_id="admin-2",
        role=ConnectionRole.ADMIN_OBSERVER,
        channel=CHANNEL_PLAYBACK,
    )
    await hub.register(good)
    await hub.register(stalled)

    device = _device()
    await asyncio.wait_for(hub.register(device), timeout=1.0)
    assert stalled not in hub.connections()
    assert good.sink.of_type("deviceUpdate")

    await asyncio.wait_for(hub.handle_text(device, _playback()), timeout=1.0)
    assert len(good.sink.of_type("adPlaybackUpdate")) == 1
    assert hub.snapshot()["evicted"] == 1


class _SlowSink(_FakeSink):
    async def send_text(self, text: str) -> None:
        await asyncio.sleep(0.02)
        await super().send_text(text)


@pytest.mark.asyncio
async def test_release_completes_even_when_the_handler_is_cancelled():
    hub = TelemetryHub()
    obs = HubConnection(
        sink=_SlowSink(),
        client_id="admin",
        role=ConnectionRole.ADMIN_OBSERVER,
        channel=CHANNEL_PLAYBACK,
    )
    await hub.register(obs)
    device = _device()
    await hub.register(device)
    obs.sink.sent.clear()

    handler = asyncio.create_task(hub.release(device, "client closed"))
    await asyncio.sleep(0.005)
    handler.cancel()
    with pytest.raises(asyncio.CancelledError):
        await handler

    await asyncio.sleep(0.1)
    assert device not in hub.connections()
    offline = obs.sink.of_type("deviceUpdate")
    assert offline and offline[-1]["device"]["isOnline"] is False
    assert obs.sink.of_type("deviceList")
    assert not hub.presence.status("tab-1").is_online


@pytest.mark.asyncio
async def test_unregister_is_idempotent():
    hub = TelemetryHub()
    conn = _observer()
    await hub.register(conn)
    assert await hub.unregister(conn) is True
    assert await hub.unregister(conn) is False
    assert hub.connections() == []


@pytest.mark.asyncio
async def test_device_presence_changes_reach_observers_only():
    hub = TelemetryHub()
    obs = _observer()
    await hub.register(obs)
    status_conn = _device(channel=CHANNEL_STATUS)
    playback_conn = _device(channel=CHANNEL_PLAYBACK)
    await hub.register(status_conn)
    await hub.register(playback_conn)

    updates = obs.sink.of_type("deviceUpdate")
    assert updates[-1]["device"]["deviceId"] == "tab-1"
    assert updates[-1]["device"]["isOnline"] is True
    assert updates[-1]["device"]["source"] == "websocket"
    assert obs.sink.of_type("deviceList")[-1]["devices"][0]["deviceId"] == "tab-1"
    assert "deviceUpdate" not in status_conn.sink.types()

    # one of two device sockets closing leaves the device online
    await hub.unregister(status_conn)
    assert hub.presence.status("tab-1").is_online

    await hub.unregister(playback_conn)
    last = obs.sink.of_type("deviceUpdate")[-1]["device"]
    assert last["isOnline"] is False


@pytest.mark.asyncio
async def test_observer_frames_are_not_relayed():
    hub = TelemetryHub()
    a, b = _observer("admin-a"), _observer("admin-b")
    await hub.register(a)
    await hub.register(b)
    await hub.handle_text(a, _playback())
    assert b.sink.sent == []


@pytest.mark.asyncio
async def test_ping_gets_pong_and_bad_frames_are_counted():
    hub = TelemetryHub()
    device = _device()
    await hub.register(device)
    await hub.handle_text(device, '{"type":"ping"}')
    await hub.handle_text(device, "garbage")
    assert device.sink.types() == ["pong"]
    assert hub.snapshot()["frames_bad"] == 1
    assert device in hub.connections()


@pytest.mark.asyncio
async def test_status_frame_fills_in_device_details():
    hub = TelemetryHub()
    device = _device(material_id=None, channel=CHANNEL_STATUS)
    await hub.register(device)
    await hub.handle_text(
        device,
        json.dumps(
            {
                "type": "status",
                "deviceId": "tab-1",
                "materialId": "m-5",
                "timestamp": "2026-01-01T00:00:00.000Z",
                "platform": "android",
                "deviceName": "Lobby",
                "osVersion": "14",
            }
        ),
    )
    assert device.material_id == "m-5"
    assert device.device_info["deviceName"] == "Lobby"
    assert hub.device_connection("tab-1") is device


# ── Slot sync ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_playback_is_relayed_to_sibling_slots():
    hub = TelemetryHub()
    slot1 = _device("tab-1", slot=1)
    slot2 = _device("tab-2", slot=2)
    other = _device("tab-3", material_id="m-2", slot=2)
    for c in (slot1, slot2, other):
        await hub.register(c)

    await hub.handle_text(slot1, _playback(currentTime=4.0, progress=40.0))

    syncs = slot2.sink.of_type("slotSync")
    assert len(syncs) == 1
    assert syncs[0]["sourceSlot"] == 1
    assert syncs[0]["currentTime"] == 4.0
    assert slot1.sink.of_type("slotSync") == []
    assert other.sink.of_type("slotSync") == []


@pytest.mark.asyncio
async def test_sync_request_prefers_playing_peer():
    hub = TelemetryHub()
    loading = _device("tab-1", slot=1)
    playing = _device("tab-2", slot=2)
    newcomer = _device("tab-3", slot=3)
    for c in (loading, playing):
        await hub.register(c)
    await hub.handle_text(loading, _playback(state="loading", progress=0.0, currentTime=0.0))
    await hub.handle_text(playing, _playback(adId="a9", currentTime=7.0, progress=70.0))
    await hub.register(newcomer)

    await hub.handle_text(newcomer, json.dumps({"type": "syncRequest", "materialId": "m-1", "slotNumber": 3}))

    syncs = newcomer.sink.of_type("slotSync")
    assert len(syncs) == 1
    assert syncs[0]["sourceSlot"] == 2
    assert syncs[0]["adId"] == "a9"


@pytest.mark.asyncio
async def test_sync_request_without_settled_peer_is_ignored():
    hub = TelemetryHub()
    buffering = _device("tab-1", slot=1)
    newcomer = _device("tab-2", slot=2)
    await hub.register(buffering)
    await hub.handle_text(buffering, _playback(state="buffering"))
    await hub.register(newcomer)
    await hub.handle_text(newcomer, json.dumps({"type": "syncRequest", "materialId": "m-1"}))
    assert newcomer.sink.of_type("slotSync") == []


# ── Liveness ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_sweep_pings_live_and_evicts_silent_sockets():
    now = {"t": 100.0}
    hub = TelemetryHub(pong_timeout_s=30.0, clock=lambda: now["t"])
    quiet = _device("tab-1")
    chatty = _device("tab-2")
    sse = HubConnection(
        sink=_FakeSink(),
        client_id="sse-1",
        role=ConnectionRole.LISTENER,
        channel=CHANNEL_PLAYBACK,
        transport="sse",
    )
    for c in (quiet, chatty, sse):
        await hub.register(c)

    now["t"] += 25.0
    await hub.handle_text(chatty, '{"type":"pong"}')
    now["t"] += 10.0

    assert await hub.sweep() == 1
    assert quiet not in hub.connections()
    assert quiet.sink.closed == [1011]
    assert chatty.sink.types()[-1] == "ping"
    assert sse in hub.connections()
    assert "ping" not in sse.sink.types()


@pytest.mark.asyncio
async def test_offline_report_is_broadcast_with_medium_confidence():
    now = {"t": 1000.0}
    hub = TelemetryHub(presence=PresenceTracker(fallback_s=30.0, clock=lambda: now["t"]))
    obs = _observer()
    await hub.register(obs)
    await hub.report_status("tab-9", False)
    device = obs.sink.of_type("deviceUpdate")[-1]["device"]
    assert device["deviceId"] == "tab-9"
    assert device["source"] == "offline_queue"
    assert device["confidence"] == "medium"


@pytest.mark.asyncio
async def test_close_all_empties_registry():
    hub = TelemetryHub()
    conns = [_observer("a"), _device("tab-1")]
    for c in conns:
        await hub.register(c)
    await hub.close_all()
    assert hub.connections() == []
    assert all(c.sink.closed == [1001] for c in conns)
