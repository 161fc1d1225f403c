"""Tests for the dashboard FleetView."""

from __future__ import annotations

from fleetlink.messages.envelope import DeviceList, DeviceUpdate, PlaybackUpdate
from fleetlink.observer import FleetView


def _update(device_id: str, progress: float) -> PlaybackUpdate:
    return PlaybackUpdate(
        device_id=device_id,
        ad_id="a1",
        ad_title="Promo",
        state="playing",
        current_time=progress / 10,
        duration=10.0,
        progress=progress,
        timestamp="2026-01-01T00:00:00.000Z",
    )


def test_presence_and_playback_are_tracked_per_device():
    view = FleetView()
    view.apply(DeviceList(devices=[{"deviceId": "tab-1", "isOnline": False}, {"deviceId": "tab-2", "isOnline": True}]))
    view.apply(_update("tab-1", 40.0))
    view.apply(DeviceUpdate(device={"deviceId": "tab-2", "isOnline": False, "source": "timeout"}))

    assert [d.device_id for d in view.devices()] == ["tab-1", "tab-2"]
    assert view.device("tab-1").is_online
    assert view.device("tab-1").playback.progress == 40.0
    assert not view.device("tab-2").is_online
    assert view.device("tab-2").source == "timeout"


def test_filter_ignores_other_devices_and_handlers_fire():
    view = FleetView({"tab-1"})
    seen = []
    view.on_playback(seen.append)
    view.apply(_update("tab-2", 10.0))
    view.apply(_update("tab-1", 20.0))
    assert view.device("tab-2") is None
    assert [u.device_id for u in seen] == ["tab-1"]
