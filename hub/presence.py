"""Device presence from two sources with different trust.

A live WebSocket is authoritative.  A status report that arrived through
the offline-queue HTTP path is only trusted while no socket is up and the
report is recent (``fallback_s``).  With neither, the device is offline.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

SOURCE_WEBSOCKET = "websocket"
SOURCE_OFFLINE_QUEUE = "offline_queue"
SOURCE_TIMEOUT = "timeout"

_CONFIDENCE = {
    SOURCE_WEBSOCKET: "high",
    SOURCE_OFFLINE_QUEUE: "medium",
    SOURCE_TIMEOUT: "low",
}


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(slots=True)
class PresenceStatus:
    device_id: str
    is_online: bool
    source: str
    last_seen_ts: float | None = None

    @property
    def confidence(self) -> str:
        return _CONFIDENCE[self.source]

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "isOnline": self.is_online,
            "source": self.source,
            "confidence": self.confidence,
            "lastSeen": _iso(self.last_seen_ts),
        }


@dataclass(slots=True)
class _Record:
    socket_connected: bool = False
    socket_ts: float | None = None
    reported_online: bool = False
    reported_ts: float | None = None


class PresenceTracker:
    def __init__(
        self,
        fallback_s: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fallback_s = fallback_s
        self._clock = clock
        self._records: dict[str, _Record] = {}

    def set_socket_status(self, device_id: str, connected: bool) -> PresenceStatus:
        rec = self._records.setdefault(device_id, _Record())
        rec.socket_connected = connected
        rec.socket_ts = self._clock()
        return self.status(device_id)

    def set_reported_status(
        self, device_id: str, is_online: bool, when: float | None = None
    ) -> PresenceStatus:
        """Status that came in over HTTP (queued while the device was offline)."""
        rec = self._records.setdefault(device_id, _Record())
        ts = self._clock() if when is None else when
        # a late queued report never rewinds a newer one
        if rec.reported_ts is None or ts >= rec.reported_ts:
            rec.reported_online = is_online
            rec.reported_ts = ts
        return self.status(device_id)

    def status(self, device_id: str) -> PresenceStatus:
        rec = self._records.get(device_id)
        if rec is None:
            return PresenceStatus(device_id, False, SOURCE_TIMEOUT)
        if rec.socket_connected:
            return PresenceStatus(device_id, True, SOURCE_WEBSOCKET, rec.socket_ts)
        if rec.reported_ts is not None and self._clock() - rec.reported_ts <= self._fallback_s:
            return PresenceStatus(
                device_id, rec.reported_online, SOURCE_OFFLINE_QUEUE, rec.reported_ts
            )
        last = max((t for t in (rec.socket_ts, rec.reported_ts) if t is not None), default=None)
        return PresenceStatus(device_id, False, SOURCE_TIMEOUT, last)

    def all_statuses(self) -> list[PresenceStatus]:
        return [self.status(d) for d in sorted(self._records)]

    def summary(self) -> dict:
        statuses = self.all_statuses()
        online = sum(1 for s in statuses if s.is_online)
        by_source: dict[str, int] = {}
        for s in statuses:
            by_source[s.source] = by_source.get(s.source, 0) + 1
        return {
            "total": len(statuses),
            "online": online,
            "offline": len(statuses) - online,
            "by_source": by_source,
        }
