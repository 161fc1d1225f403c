"""Rate-limited playback telemetry.

State transitions (play, pause, buffer, end, new ad) are emitted at once.
While playing, the current position is sampled every ``sample_interval_s``
and emitted as a continuous-progress update.  Nothing is emitted while
not playing, and nothing at all after :meth:`PlaybackThrottler.stop`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from fleetlink.messages.envelope import PlaybackUpdate, compute_progress, utc_now_iso
from fleetlink.messages.types import LOADING, PLAYBACK_STATES, PLAYING

log = logging.getLogger(__name__)


@dataclass(slots=True)
class PlaybackSnapshot:
    ad_id: str = ""
    ad_title: str = ""
    state: str = LOADING
    current_time: float = 0.0
    duration: float = 0.0
    start_time: str | None = None


class PlaybackThrottler:
    def __init__(
        self,
        device_id: str,
        emit: Callable[[PlaybackUpdate], object],
        *,
        sample_interval_s: float = 0.2,
        now_iso: Callable[[], str] = utc_now_iso,
    ) -> None:
        if sample_interval_s <= 0:
            raise ValueError("sample_interval_s must be > 0")
        self._device_id = device_id
        self._emit = emit
        self._interval = sample_interval_s
        self._now_iso = now_iso
        self._snapshot = PlaybackSnapshot()
        self._active = False
        # bumped on stop(); a sampler from an older session never emits
        self._session = 0
        self._sampler: asyncio.Task | None = None
        self._emitted = 0
        self._transitions = 0

    @property
    def state(self) -> str | None:
        return self._snapshot.state if self._active else None

    @property
    def sampling(self) -> bool:
        return self._sampler is not None and not self._sampler.done()

    @property
    def emitted(self) -> int:
        return self._emitted

    def update(
        self,
        *,
        state: str | None = None,
        current_time: float | None = None,
        duration: float | None = None,
        ad_id: str | None = None,
        ad_title: str | None = None,
        start_time: str | None = None,
    ) -> None:
        """Merge a player event into the snapshot."""
        if state is not None and state not in PLAYBACK_STATES:
            raise ValueError(f"unknown playback state {state!r}")
        snap = self._snapshot
        prev_state = snap.state if self._active else None
        prev_ad = snap.ad_id if self._active else None

        if ad_id is not None:
            snap.ad_id = ad_id
        if ad_title is not None:
            snap.ad_title = ad_title
        if state is not None:
            snap.state = state
        if current_time is not None:
            snap.current_time = max(0.0, float(current_time))
        if duration is not None:
            snap.duration = max(0.0, float(duration))
        if start_time is not None:
            snap.start_time = start_time
        self._active = True

        if snap.state != prev_state or (ad_id is not None and ad_id != prev_ad):
            self._transitions += 1
            self._emit_now()

        if snap.state == PLAYING:
            if not self.sampling:
                session = self._session
                self._sampler = asyncio.create_task(
                    self._sample_loop(session), name="playback-sampler"
                )
        else:
            self._stop_sampler()

    def stop(self) -> None:
        """Stop sampling and forget the snapshot (e.g. the player unmounted)."""
        self._session += 1
        self._stop_sampler()
        self._active = False
        self._snapshot = PlaybackSnapshot()

    def current(self) -> PlaybackUpdate | None:
        if not self._active or not self._snapshot.ad_id:
            return None
        snap = self._snapshot
        return PlaybackUpdate(
            device_id=self._device_id,
            ad_id=snap.ad_id,
            ad_title=snap.ad_title,
            state=snap.state,
            current_time=snap.current_time,
            duration=snap.duration,
            progress=compute_progress(snap.current_time, snap.duration),
            timestamp=self._now_iso(),
            start_time=snap.start_time,
        )

    def _emit_now(self) -> None:
        update = self.current()
        if update is None:
            return
        self._emitted += 1
        try:
            self._emit(update)
        except Exception:
            log.exception("playback emit failed")

    def _stop_sampler(self) -> None:
        task, self._sampler = self._sampler, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _sample_loop(self, session: int) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if session != self._session or not self._active:
                return
            if self._snapshot.state != PLAYING:
                return
            self._emit_now()

    def snapshot(self) -> dict:
        return {
            "active": self._active,
            "state": self.state,
            "ad_id": self._snapshot.ad_id,
            "sampling": self.sampling,
            "sample_interval_s": self._interval,
            "emitted": self._emitted,
            "transitions": self._transitions,
        }
