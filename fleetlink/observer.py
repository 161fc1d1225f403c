"""Dashboard-side view of fleet presence and playback.

Feed it every frame an observer link receives (``supervisor.on_message``);
it keeps the latest presence and playback state per device.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from fleetlink.messages.envelope import DeviceList, DeviceUpdate, Frame, PlaybackUpdate

log = logging.getLogger(__name__)


@dataclass(slots=True)
class DeviceView:
    device_id: str
    is_online: bool = False
    last_seen: str | None = None
    source: str | None = None
    playback: PlaybackUpdate | None = None

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "is_online": self.is_online,
            "last_seen": self.last_seen,
            "source": self.source,
            "playback": self.playback.to_dict() if self.playback else None,
        }


class FleetView:
    def __init__(self, device_ids: set[str] | None = None) -> None:
        self._filter = set(device_ids) if device_ids else None
        self._devices: dict[str, DeviceView] = {}
        self._playback_handlers: list[Callable[[PlaybackUpdate], None]] = []

    def on_playback(self, cb: Callable[[PlaybackUpdate], None]) -> None:
        self._playback_handlers.append(cb)

    def device(self, device_id: str) -> DeviceView | None:
        return self._devices.get(device_id)

    def devices(self) -> list[DeviceView]:
        return sorted(self._devices.values(), key=lambda d: d.device_id)

    def apply(self, frame: Frame) -> None:
        if isinstance(frame, PlaybackUpdate):
            self._apply_playback(frame)
        elif isinstance(frame, DeviceUpdate):
            self._apply_presence(frame.device)
        elif isinstance(frame, DeviceList):
            for device in frame.devices:
                self._apply_presence(device)

    def _wanted(self, device_id: str) -> bool:
        return bool(device_id) and (self._filter is None or device_id in self._filter)

    def _view(self, device_id: str) -> DeviceView:
        view = self._devices.get(device_id)
        if view is None:
            view = self._devices[device_id] = DeviceView(device_id=device_id)
        return view

    def _apply_presence(self, device: dict) -> None:
        device_id = str(device.get("deviceId", ""))
        if not self._wanted(device_id):
            return
        view = self._view(device_id)
        view.is_online = bool(device.get("isOnline", False))
        view.last_seen = device.get("lastSeen")
        view.source = device.get("source")

    def _apply_playback(self, update: PlaybackUpdate) -> None:
        if not self._wanted(update.device_id):
            return
        view = self._view(update.device_id)
        view.playback = update
        # a playing device is online even before its presence update lands
        view.is_online = True
        for cb in list(self._playback_handlers):
            try:
                cb(update)
            except Exception:
                log.exception("playback handler failed")
