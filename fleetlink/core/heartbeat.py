"""Application-level ping/pong liveness for one open link.

Every ``ping_interval_s`` the monitor checks how long it has been since
the last pong.  Past ``pong_timeout_s`` it fires ``on_timeout`` once and
stops; otherwise it sends another ping.  The owner restarts it on each
new connection.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

log = logging.getLogger(__name__)


class HeartbeatMonitor:
    def __init__(
        self,
        *,
        send_ping: Callable[[], bool],
        on_timeout: Callable[[], None],
        ping_interval_s: float = 25.0,
        pong_timeout_s: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "link",
    ) -> None:
        if ping_interval_s <= 0:
            raise ValueError("ping_interval_s must be > 0")
        if pong_timeout_s <= 0:
            raise ValueError("pong_timeout_s must be > 0")
        self._send_ping = send_ping
        self._on_timeout = on_timeout
        self._ping_interval_s = ping_interval_s
        self._pong_timeout_s = pong_timeout_s
        self._clock = clock
        self._name = name
        self._task: asyncio.Task | None = None
        self._last_pong = clock()
        self._pings_sent = 0
        self._pongs_received = 0
        self._timeouts = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_pong(self) -> float:
        return self._last_pong

    @property
    def timeouts(self) -> int:
        return self._timeouts

    def start(self) -> None:
        """(Re)start monitoring; the previous loop, if any, is cancelled."""
        self.stop()
        self._last_pong = self._clock()
        self._task = asyncio.create_task(self._run(), name=f"heartbeat-{self._name}")

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def pong_received(self) -> None:
        self._last_pong = self._clock()
        self._pongs_received += 1

    def expired(self) -> bool:
        return self._clock() - self._last_pong > self._pong_timeout_s

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._ping_interval_s)
            if self.expired():
                self._task = None
                self._timeouts += 1
                log.warning(
                    "%s: no pong for %.1fs (timeout %.1fs)",
                    self._name,
                    self._clock() - self._last_pong,
                    self._pong_timeout_s,
                )
                self._on_timeout()
                return
            if self._send_ping():
                self._pings_sent += 1

    def snapshot(self) -> dict:
        return {
            "running": self.running,
            "ping_interval_s": self._ping_interval_s,
            "pong_timeout_s": self._pong_timeout_s,
            "since_last_pong_s": round(self._clock() - self._last_pong, 3),
            "pings_sent": self._pings_sent,
            "pongs_received": self._pongs_received,
            "timeouts": self._timeouts,
        }
