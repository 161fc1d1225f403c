"""Durable per-kind telemetry queue, flushed over HTTP when connectivity returns.

Entries survive restarts in a single JSON file.  A flush POSTs each entry
to its kind's endpoint and deletes it only after a 2xx with
``{"success": true}``; anything else leaves it queued for the next flush.
Within a kind, the first failure ends that kind's flush so older entries
are never overtaken by newer ones.  Entries older than ``max_age_s`` are
dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import httpx

log = logging.getLogger(__name__)

_FILE_VERSION = 1


class QueueKind(str, Enum):
    DEVICE_STATUS = "device-status"
    LOCATION = "location"
    AD_PLAYBACK = "ad-playback"
    QR_SCAN = "qr-scan"

    @property
    def endpoint(self) -> str:
        return _ENDPOINTS[self]


_ENDPOINTS: dict[QueueKind, str] = {
    QueueKind.DEVICE_STATUS: "/offlineQueue/device-status",
    QueueKind.LOCATION: "/offlineQueue/location-data",
    QueueKind.AD_PLAYBACK: "/offlineQueue/ad-playback",
    QueueKind.QR_SCAN: "/offlineQueue/qr-scan",
}


def _iso(ts: float) -> str:
    dt = datetime.fromtimestamp(ts, timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


@dataclass(slots=True)
class QueuedEntry:
    kind: QueueKind
    payload: dict[str, Any]
    queued_ts: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    attempts: int = 0

    @property
    def queued_timestamp(self) -> str:
        return _iso(self.queued_ts)

    def body(self) -> dict[str, Any]:
        """POST body: the payload tagged as offline with its enqueue time."""
        return {
            **self.payload,
            "isOffline": True,
            "queuedTimestamp": self.queued_timestamp,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "payload": self.payload,
            "queued_ts": self.queued_ts,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> QueuedEntry:
        return cls(
            kind=QueueKind(d["kind"]),
            payload=dict(d["payload"]),
            queued_ts=float(d["queued_ts"]),
            id=str(d.get("id") or uuid.uuid4().hex[:12]),
            attempts=int(d.get("attempts", 0)),
        )


@dataclass(slots=True)
class FlushResult:
    sent: int = 0
    failed: int = 0
    expired: int = 0
    skipped: bool = False  # another flush was already running

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "expired": self.expired,
            "skipped": self.skipped,
        }


class OfflineQueue:
    """Per-kind FIFO of telemetry that could not go over the live link."""

    def __init__(
        self,
        base_url: str,
        path: str | Path | None = None,
        *,
        timeout_s: float = 10.0,
        max_age_s: float = 24 * 3600.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._path = Path(path).expanduser() if path is not None else None
        self._timeout_s = timeout_s
        self._max_age_s = max_age_s
        self._transport = transport
        self._clock = clock
        self._client: httpx.AsyncClient | None = None
        self._queues: dict[QueueKind, list[QueuedEntry]] = {k: [] for k in QueueKind}
        self._flush_lock = asyncio.Lock()
        self._online = False

        self._enqueued = 0
        self._sent = 0
        self._failed = 0
        self._expired = 0
        self._flushes = 0
        self._last_flush_ts: float | None = None
        self._save_failures = 0
        self._last_error = ""

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout_s,
                transport=self._transport,
            )

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def online(self) -> bool:
        return self._online

    # ── Persistence ──────────────────────────────────────────────

    def load(self) -> int:
        """Read the durable file, replacing in-memory state.  Returns entry count."""
        self._queues = {k: [] for k in QueueKind}
        if self._path is None or not self._path.exists():
            return 0
        try:
            raw = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            log.warning("offline queue unreadable at %s: %s", self._path, e)
            return 0
        loaded = 0
        for item in raw.get("entries", []):
            try:
                entry = QueuedEntry.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                log.warning("dropping corrupt queue entry: %s", e)
                continue
            self._queues[entry.kind].append(entry)
            loaded += 1
        for entries in self._queues.values():
            entries.sort(key=lambda e: e.queued_ts)
        self._expire()
        log.info("offline queue loaded %d entries from %s", loaded, self._path)
        return self.pending()

    def _save(self) -> None:
        if self._path is None:
            return
        data = {
            "version": _FILE_VERSION,
            "entries": [e.to_dict() for k in QueueKind for e in self._queues[k]],
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.write_text(json.dumps(data, indent=2) + "\n")
            tmp.replace(self._path)
        except OSError as e:
            # keep the in-memory queue; the next successful save catches up
            self._save_failures += 1
            self._last_error = f"save failed: {e}"
            log.warning("offline queue save to %s failed: %s", self._path, e)

    # ── Queue ops ────────────────────────────────────────────────

    def enqueue(self, kind: QueueKind | str, payload: dict[str, Any]) -> QueuedEntry:
        kind = QueueKind(kind)
        entry = QueuedEntry(kind=kind, payload=dict(payload), queued_ts=self._clock())
        self._expire()
        self._queues[kind].append(entry)
        self._enqueued += 1
        self._save()
        log.debug("queued %s entry %s (%d pending)", kind.value, entry.id, self.pending(kind))
        return entry

    def pending(self, kind: QueueKind | str | None = None) -> int:
        if kind is None:
            return sum(len(v) for v in self._queues.values())
        return len(self._queues[QueueKind(kind)])

    def entries(self, kind: QueueKind | str) -> list[QueuedEntry]:
        return list(self._queues[QueueKind(kind)])

    def clear(self, kind: QueueKind | str | None = None) -> int:
        kinds = list(QueueKind) if kind is None else [QueueKind(kind)]
        removed = 0
        for k in kinds:
            removed += len(self._queues[k])
            self._queues[k] = []
        self._save()
        log.info("offline queue cleared %d entries", removed)
        return removed

    def _expire(self) -> int:
        cutoff = self._clock() - self._max_age_s
        dropped = 0
        for kind, entries in self._queues.items():
            keep = [e for e in entries if e.queued_ts >= cutoff]
            if len(keep) != len(entries):
                dropped += len(entries) - len(keep)
                self._queues[kind] = keep
        if dropped:
            self._expired += dropped
            log.warning("offline queue dropped %d entries older than %.0fs", dropped, self._max_age_s)
        return dropped

    # ── Flush ────────────────────────────────────────────────────

    async def set_online(self, online: bool) -> FlushResult | None:
        """Connectivity signal.  Going online triggers a flush."""
        was_online, self._online = self._online, online
        if online and not was_online:
            log.info("connectivity regained, flushing %d queued entries", self.pending())
            return await self.flush()
        return None

    async def flush(self) -> FlushResult:
        """POST every queued entry; remove the acknowledged ones."""
        if self._flush_lock.locked():
            return FlushResult(skipped=True)
        async with self._flush_lock:
            client = self._require_client()
            result = FlushResult(expired=self._expire())
            if result.expired:
                self._save()
            self._flushes += 1
            self._last_flush_ts = self._clock()
            for kind in QueueKind:
                # snapshot: entries enqueued mid-flush wait for the next one
                for entry in list(self._queues[kind]):
                    if await self._post(client, entry):
                        self._remove(kind, entry)
                        result.sent += 1
                    else:
                        result.failed += 1
                        break
            self._sent += result.sent
            self._failed += result.failed
            if result.sent or result.failed:
                log.info(
                    "offline flush: sent=%d failed=%d pending=%d",
                    result.sent,
                    result.failed,
                    self.pending(),
                )
            return result

    async def _post(self, client: httpx.AsyncClient, entry: QueuedEntry) -> bool:
        entry.attempts += 1
        try:
            resp = await client.post(entry.kind.endpoint, json=entry.body())
        except httpx.HTTPError as e:
            self._last_error = str(e).strip() or e.__class__.__name__
            log.warning("flush %s %s failed: %s", entry.kind.value, entry.id, self._last_error)
            return False
        if not 200 <= resp.status_code < 300:
            self._last_error = f"HTTP {resp.status_code}"
            log.warning("flush %s %s rejected: %s", entry.kind.value, entry.id, self._last_error)
            return False
        try:
            data = resp.json()
        except ValueError:
            self._last_error = "non-JSON acknowledgement"
            return False
        if not isinstance(data, dict) or data.get("success") is not True:
            self._last_error = "acknowledgement without success"
            return False
        return True

    def _remove(self, kind: QueueKind, entry: QueuedEntry) -> None:
        entries = self._queues[kind]
        if entry in entries:
            entries.remove(entry)
        self._save()

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("OfflineQueue is not started")
        return self._client

    def stats(self) -> dict:
        return {
            "pending": {k.value: len(v) for k, v in self._queues.items()},
            "total_pending": self.pending(),
            "online": self._online,
            "enqueued": self._enqueued,
            "sent": self._sent,
            "failed": self._failed,
            "expired": self._expired,
            "flushes": self._flushes,
            "last_flush_ts": self._last_flush_ts,
            "save_failures": self._save_failures,
            "last_error": self._last_error,
        }
