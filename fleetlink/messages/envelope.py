"""JSON frame codec for the status and playback channels.

Wire format: one JSON object per WebSocket text message, tagged by ``type``.
Field names on the wire are camelCase; the dataclasses use snake_case.

Example::

    {"type": "adPlaybackUpdate", "deviceId": "tab-07", "adId": "a1",
     "adTitle": "Spring promo", "state": "playing", "currentTime": 4.2,
     "duration": 15.0, "progress": 28.0, "timestamp": "2026-01-01T00:00:04.200Z"}

Unknown ``type`` values and frames missing required fields raise
:class:`FrameError`; callers drop the frame and keep the connection.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Union

from fleetlink.messages.types import (
    AD_PLAYBACK_UPDATE,
    CONNECTION,
    DEVICE_LIST,
    DEVICE_UPDATE,
    HEARTBEAT,
    PING,
    PLAYBACK_STATES,
    PONG,
    SLOT_SYNC,
    STATUS,
    SYNC_REQUEST,
)


class FrameError(ValueError):
    """A received frame could not be decoded into a known message."""


def utc_now_iso() -> str:
    """Current UTC time as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def clamp_progress(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def compute_progress(current_time: float, duration: float) -> float:
    """Percent of ``duration`` reached at ``current_time``, clamped to [0, 100]."""
    if duration <= 0:
        return 0.0
    return clamp_progress(current_time / duration * 100.0)


# ── Field helpers ────────────────────────────────────────────────


def _str(d: dict[str, Any], key: str) -> str:
    v = d.get(key)
    if not isinstance(v, str):
        raise FrameError(f"{key!r} must be a string")
    return v


def _opt_str(d: dict[str, Any], key: str) -> str | None:
    v = d.get(key)
    if v is None:
        return None
    if not isinstance(v, str):
        raise FrameError(f"{key!r} must be a string")
    return v


def _num(d: dict[str, Any], key: str) -> float:
    v = d.get(key)
    # bool is an int subclass; reject it explicitly
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise FrameError(f"{key!r} must be a number")
    return float(v)


def _int(d: dict[str, Any], key: str) -> int:
    v = d.get(key)
    if isinstance(v, bool) or not isinstance(v, int):
        raise FrameError(f"{key!r} must be an integer")
    return v


def _opt_int(d: dict[str, Any], key: str) -> int | None:
    if d.get(key) is None:
        return None
    return _int(d, key)


# ── Frames ───────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Ping:
    TYPE: ClassVar[str] = PING

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.TYPE}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Ping:
        return cls()


@dataclass(frozen=True, slots=True)
class Pong:
    TYPE: ClassVar[str] = PONG

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.TYPE}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Pong:
        return cls()


@dataclass(frozen=True, slots=True)
class StatusFrame:
    """Device identification and liveness report on the status channel."""

    TYPE: ClassVar[str] = STATUS

    device_id: str
    material_id: str
    timestamp: str
    platform: str
    device_name: str
    os_version: str
    is_online: bool = True
    last_seen: str | None = None
    gps: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": self.TYPE,
            "deviceId": self.device_id,
            "materialId": self.material_id,
            "timestamp": self.timestamp,
            "platform": self.platform,
            "deviceName": self.device_name,
            "osVersion": self.os_version,
            "isOnline": self.is_online,
        }
        if self.last_seen is not None:
            d["lastSeen"] = self.last_seen
        if self.gps is not None:
            d["gps"] = self.gps
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> StatusFrame:
        gps = d.get("gps")
        if gps is not None and not isinstance(gps, dict):
            raise FrameError("'gps' must be an object")
        is_online = d.get("isOnline", True)
        if not isinstance(is_online, bool):
            raise FrameError("'isOnline' must be a boolean")
        return cls(
            device_id=_str(d, "deviceId"),
            material_id=_str(d, "materialId"),
            timestamp=_str(d, "timestamp"),
            platform=_str(d, "platform"),
            device_name=_str(d, "deviceName"),
            os_version=_str(d, "osVersion"),
            is_online=is_online,
            last_seen=_opt_str(d, "lastSeen"),
            gps=gps,
        )


@dataclass(frozen=True, slots=True)
class PlaybackUpdate:
    """Playback telemetry for the ad currently on screen."""

    TYPE: ClassVar[str] = AD_PLAYBACK_UPDATE

    device_id: str
    ad_id: str
    ad_title: str
    state: str
    current_time: float
    duration: float
    progress: float
    timestamp: str
    start_time: str | None = None

    def __post_init__(self) -> None:
        if self.state not in PLAYBACK_STATES:
            raise FrameError(f"unknown playback state {self.state!r}")
        if not (0.0 <= self.progress <= 100.0):
            raise FrameError(f"progress {self.progress} outside [0, 100]")

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": self.TYPE,
            "deviceId": self.device_id,
            "adId": self.ad_id,
            "adTitle": self.ad_title,
            "state": self.state,
            "currentTime": self.current_time,
            "duration": self.duration,
            "progress": self.progress,
            "timestamp": self.timestamp,
        }
        if self.start_time is not None:
            d["startTime"] = self.start_time
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> PlaybackUpdate:
        return cls(
            device_id=_opt_str(d, "deviceId") or "",
            ad_id=_str(d, "adId"),
            ad_title=_opt_str(d, "adTitle") or "",
            state=_str(d, "state"),
            current_time=_num(d, "currentTime"),
            duration=_num(d, "duration"),
            progress=_num(d, "progress"),
            timestamp=_opt_str(d, "timestamp") or utc_now_iso(),
            start_time=_opt_str(d, "startTime"),
        )


@dataclass(frozen=True, slots=True)
class DeviceUpdate:
    """One device's presence, pushed by the hub when it changes."""

    TYPE: ClassVar[str] = DEVICE_UPDATE

    device: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.TYPE, "device": self.device}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DeviceUpdate:
        device = d.get("device")
        if not isinstance(device, dict):
            raise FrameError("'device' must be an object")
        return cls(device=device)


@dataclass(frozen=True, slots=True)
class DeviceList:
    TYPE: ClassVar[str] = DEVICE_LIST

    devices: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.TYPE, "devices": self.devices}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DeviceList:
        devices = d.get("devices")
        if not isinstance(devices, list):
            raise FrameError("'devices' must be a list")
        return cls(devices=devices)


@dataclass(frozen=True, slots=True)
class SlotSync:
    """Playback position of one slot, relayed to its sibling slots."""

    TYPE: ClassVar[str] = SLOT_SYNC

    source_slot: int
    material_id: str
    ad_id: str
    ad_title: str
    state: str
    current_time: float
    duration: float
    progress: float
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.TYPE,
            "sourceSlot": self.source_slot,
            "materialId": self.material_id,
            "adId": self.ad_id,
            "adTitle": self.ad_title,
            "state": self.state,
            "currentTime": self.current_time,
            "duration": self.duration,
            "progress": self.progress,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SlotSync:
        return cls(
            source_slot=_int(d, "sourceSlot"),
            material_id=_str(d, "materialId"),
            ad_id=_str(d, "adId"),
            ad_title=_opt_str(d, "adTitle") or "",
            state=_str(d, "state"),
            current_time=_num(d, "currentTime"),
            duration=_num(d, "duration"),
            progress=_num(d, "progress"),
            timestamp=_opt_str(d, "timestamp") or utc_now_iso(),
        )

    @classmethod
    def from_update(
        cls, update: PlaybackUpdate, *, source_slot: int, material_id: str
    ) -> SlotSync:
        return cls(
            source_slot=source_slot,
            material_id=material_id,
            ad_id=update.ad_id,
            ad_title=update.ad_title,
            state=update.state,
            current_time=update.current_time,
            duration=update.duration,
            progress=update.progress,
            timestamp=update.timestamp,
        )


@dataclass(frozen=True, slots=True)
class SyncRequest:
    TYPE: ClassVar[str] = SYNC_REQUEST

    material_id: str
    slot_number: int | None = None
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.TYPE,
            "materialId": self.material_id,
            "slotNumber": self.slot_number,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SyncRequest:
        return cls(
            material_id=_str(d, "materialId"),
            slot_number=_opt_int(d, "slotNumber"),
            timestamp=_opt_str(d, "timestamp") or utc_now_iso(),
        )


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    """First event on every SSE stream."""

    TYPE: ClassVar[str] = CONNECTION

    connection_id: str
    message: str = "connected"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.TYPE,
            "connectionId": self.connection_id,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ConnectionEvent:
        return cls(
            connection_id=_str(d, "connectionId"),
            message=_opt_str(d, "message") or "",
        )


@dataclass(frozen=True, slots=True)
class HeartbeatEvent:
    TYPE: ClassVar[str] = HEARTBEAT

    # milliseconds since the epoch
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.TYPE, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> HeartbeatEvent:
        return cls(timestamp=_int(d, "timestamp"))


Frame = Union[
    Ping,
    Pong,
    StatusFrame,
    PlaybackUpdate,
    DeviceUpdate,
    DeviceList,
    SlotSync,
    SyncRequest,
    ConnectionEvent,
    HeartbeatEvent,
]

_DECODERS: dict[str, Callable[[dict[str, Any]], Frame]] = {
    cls.TYPE: cls.from_dict
    for cls in (
        Ping,
        Pong,
        StatusFrame,
        PlaybackUpdate,
        DeviceUpdate,
        DeviceList,
        SlotSync,
        SyncRequest,
        ConnectionEvent,
        HeartbeatEvent,
    )
}


# ── Codec ────────────────────────────────────────────────────────


def encode_frame(frame: Frame | dict[str, Any]) -> str:
    """Serialise a frame (or an already-built dict) to compact JSON text."""
    d = frame if isinstance(frame, dict) else frame.to_dict()
    return json.dumps(d, separators=(",", ":"))


def decode_frame(raw: str | bytes) -> Frame:
    """Parse one text message into a frame.

    Raises ``FrameError`` on malformed JSON, a non-object payload,
    an unknown ``type``, or missing/invalid fields.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode()
        except UnicodeDecodeError as e:
            raise FrameError(f"not utf-8: {e}") from e
    try:
        d = json.loads(raw)
    except json.JSONDecodeError as e:
        raise FrameError(f"invalid JSON: {e}") from e
    if not isinstance(d, dict):
        raise FrameError("expected JSON object")
    msg_type = d.get("type")
    decoder = _DECODERS.get(msg_type) if isinstance(msg_type, str) else None
    if decoder is None:
        raise FrameError(f"unknown frame type {msg_type!r}")
    return decoder(d)
