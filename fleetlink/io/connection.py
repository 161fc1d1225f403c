"""WebSocket link supervisor with heartbeat liveness and bounded reconnect.

One :class:`ConnectionSupervisor` owns one logical link for one role
(status device, playback device, or observer).  It walks
IDLE → CONNECTING → OPEN → CLOSED, reschedules itself with exponential
backoff after transport loss, and gives up after ``max_reconnect_attempts``
until someone calls :meth:`ConnectionSupervisor.reconnect`.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from fleetlink.config import HeartbeatConfig, LinkConfig
from fleetlink.core.backoff import backoff_delay_s
from fleetlink.core.heartbeat import HeartbeatMonitor
from fleetlink.messages.envelope import (
    Frame,
    FrameError,
    Ping,
    Pong,
    decode_frame,
    encode_frame,
)
from fleetlink.roles import ConfigurationError, LinkRole

log = logging.getLogger(__name__)

_CLOSE_TIMEOUT_S = 2.0
# App-range close code for a link we tear down after a missed pong.
CLOSE_PONG_TIMEOUT = 4000

# Close code → human reason, shown in status snapshots.
CLOSE_REASONS: dict[int, str] = {
    1000: "normal closure",
    1001: "going away",
    1006: "abnormal closure",
    1011: "server error",
    1012: "service restart",
    1013: "try again later",
    CLOSE_PONG_TIMEOUT: "pong timeout",
    4400: "missing identifier",
    4404: "unknown channel",
}


class Transport(Protocol):
    """The slice of a websockets client connection the supervisor uses."""

    async def send(self, message: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Opener = Callable[[str], Awaitable[Transport]]


async def websocket_opener(url: str) -> Transport:
    # Liveness is handled by our own ping/pong frames, not protocol pings.
    return await websockets.connect(url, ping_interval=None, open_timeout=None)


class LinkState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(slots=True)
class LinkStatus:
    """What a UI needs to render a link indicator."""

    state: LinkState
    reconnect_attempt: int
    exhausted: bool = False
    error: str | None = None
    close_code: int | None = None
    close_reason: str | None = None
    next_retry_s: float | None = None

    @property
    def is_online(self) -> bool:
        return self.state is LinkState.OPEN


class ConnectionSupervisor:
    """Drives one role's link through connect, heartbeat, and reconnect."""

    def __init__(
        self,
        role: LinkRole,
        *,
        link: LinkConfig | None = None,
        heartbeat: HeartbeatConfig | None = None,
        opener: Opener | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._role = role
        self._link = link or LinkConfig()
        hb = heartbeat or HeartbeatConfig()
        self._opener = opener or websocket_opener
        self._rng = rng

        self._state = LinkState.IDLE
        self._reconnect_attempt = 0
        self._exhausted = False
        self._stopped = False
        self._last_error: str | None = None
        # bumped by reconnect() and disconnect(); an open from an older attempt is discarded
        self._generation = 0
        self._close_code: int | None = None
        self._next_retry_s: float | None = None

        self._transport: Transport | None = None
        self._outbox: asyncio.Queue[str] | None = None
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._attempt_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._closing: set[asyncio.Task] = set()

        self._message_handlers: list[Callable[[Frame], None]] = []
        self._status_handlers: list[Callable[[LinkStatus], None]] = []

        self._heartbeat = HeartbeatMonitor(
            send_ping=self._send_ping,
            on_timeout=self._on_pong_timeout,
            ping_interval_s=hb.ping_interval_s,
            pong_timeout_s=hb.pong_timeout_s,
            clock=clock,
            name=role.label,
        )

        # Debug counters
        self._connect_count = 0
        self._disconnect_count = 0
        self._failed_opens = 0
        self._frames_ok = 0
        self._frames_bad = 0
        self._sent = 0
        self._dropped_sends = 0
        self._last_bad_frame = ""

    # ── Properties ───────────────────────────────────────────────

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is LinkState.OPEN

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def heartbeat(self) -> HeartbeatMonitor:
        return self._heartbeat

    @property
    def label(self) -> str:
        return self._role.label

    def status(self) -> LinkStatus:
        return LinkStatus(
            state=self._state,
            reconnect_attempt=self._reconnect_attempt,
            exhausted=self._exhausted,
            error=self._last_error,
            close_code=self._close_code,
            close_reason=(
                CLOSE_REASONS.get(self._close_code, "unknown")
                if self._close_code is not None
                else None
            ),
            next_retry_s=self._next_retry_s,
        )

    # ── Subscriptions ────────────────────────────────────────────

    def on_message(self, cb: Callable[[Frame], None]) -> None:
        self._message_handlers.append(cb)

    def on_status(self, cb: Callable[[LinkStatus], None]) -> None:
        self._status_handlers.append(cb)

    # ── Public API ───────────────────────────────────────────────

    async def connect(self) -> bool:
        """Open the link.  Returns True once OPEN.

        Raises ``ConfigurationError`` before any network activity when the
        role is missing an identifier.  Transport failures do not raise;
        they schedule a reconnect and return False.
        """
        url = self._role.url(self._link.base_url)
        if self._state is LinkState.OPEN:
            return True
        if self._state is LinkState.CONNECTING:
            return False
        self._stopped = False
        self._cancel_reconnect()
        return await self._attempt(url)

    async def reconnect(self) -> bool:
        """Tear down whatever exists, reset the counter, and connect now."""
        url = self._role.url(self._link.base_url)
        self._generation += 1
        self._stopped = False
        self._cancel_reconnect()
        self._cancel_task(self._attempt_task)
        await self._teardown(1000, "manual reconnect")
        self._reconnect_attempt = 0
        self._exhausted = False
        self._last_error = None
        log.info("%s: manual reconnect", self.label)
        return await self._attempt(url)

    async def disconnect(self) -> None:
        """Close the link for good.  Safe to call more than once."""
        self._stopped = True
        self._generation += 1
        # Drop subscribers first so nothing fires during teardown.
        self._message_handlers.clear()
        self._status_handlers.clear()
        self._cancel_reconnect()
        self._cancel_task(self._attempt_task)
        self._attempt_task = None
        await self._teardown(1000, "client disconnect")
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        self._state = LinkState.CLOSED

    def send(self, frame: Frame | dict[str, Any]) -> bool:
        """Queue a frame for the open link.  Dropped (False) unless OPEN."""
        if self._state is not LinkState.OPEN or self._outbox is None:
            self._dropped_sends += 1
            return False
        self._outbox.put_nowait(encode_frame(frame))
        self._sent += 1
        return True

    # ── Connect / loss ───────────────────────────────────────────

    async def _attempt(self, url: str) -> bool:
        generation = self._generation
        self._set_state(LinkState.CONNECTING)
        log.info("%s: connecting to %s", self.label, url)
        try:
            transport = await asyncio.wait_for(
                self._opener(url), timeout=self._link.open_timeout_s
            )
        except asyncio.TimeoutError:
            return self._open_failed(
                generation, f"open timed out after {self._link.open_timeout_s}s"
            )
        except (OSError, WebSocketException) as e:
            return self._open_failed(generation, f"open failed: {e}")
        if generation != self._generation:
            # reconnect() or disconnect() ran while the handshake was in flight
            log.info("%s: discarding link from a superseded attempt", self.label)
            await _close_quietly(transport, 1000, "superseded")
            return False
        self._on_open(transport)
        return True

    def _open_failed(self, generation: int, reason: str) -> bool:
        if generation != self._generation:
            log.debug("%s: superseded attempt failed: %s", self.label, reason)
            return False
        self._failed_opens += 1
        self._last_error = reason
        self._close_code = None
        log.warning("%s: %s", self.label, reason)
        self._after_loss()
        return False

    def _on_open(self, transport: Transport) -> None:
        self._transport = transport
        self._outbox = asyncio.Queue()
        self._reconnect_attempt = 0
        self._exhausted = False
        self._last_error = None
        self._close_code = None
        self._next_retry_s = None
        self._connect_count += 1
        self._state = LinkState.OPEN

        self._heartbeat.start()
        for frame in self._role.opening_frames():
            self.send(frame)
        self._reader_task = asyncio.create_task(
            self._read_loop(transport), name=f"{self.label}-read"
        )
        self._writer_task = asyncio.create_task(
            self._write_loop(transport, self._outbox), name=f"{self.label}-write"
        )
        log.info("%s: open", self.label)
        self._notify_status()

    def _handle_transport_loss(self, reason: str, close_code: int | None = None) -> None:
        transport = self._transport
        if transport is None:
            return
        self._transport = None
        self._outbox = None
        self._heartbeat.stop()
        self._cancel_task(self._reader_task)
        self._cancel_task(self._writer_task)
        self._reader_task = None
        self._writer_task = None

        if close_code is None:
            close_code = getattr(transport, "close_code", None)
        self._close_code = close_code
        self._close_in_background(
            transport, close_code if close_code == CLOSE_PONG_TIMEOUT else 1000, reason
        )
        self._disconnect_count += 1
        self._last_error = reason
        log.warning("%s: link lost (%s, code=%s)", self.label, reason, close_code)
        self._after_loss()

    def _after_loss(self) -> None:
        self._state = LinkState.CLOSED
        if self._stopped:
            return
        if self._reconnect_attempt < self._link.max_reconnect_attempts:
            self._schedule_reconnect()
        else:
            self._exhausted = True
            self._next_retry_s = None
            self._last_error = "max reconnect attempts reached"
            log.error(
                "%s: giving up after %d reconnect attempts",
                self.label,
                self._reconnect_attempt,
            )
        self._notify_status()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            return
        self._reconnect_attempt += 1
        delay = backoff_delay_s(
            self._reconnect_attempt,
            base_s=self._link.backoff_base_s,
            max_s=self._link.backoff_max_s,
            jitter_ratio=self._link.jitter_ratio,
            rng=self._rng,
        )
        self._next_retry_s = delay
        log.info(
            "%s: reconnect %d/%d in %.2fs",
            self.label,
            self._reconnect_attempt,
            self._link.max_reconnect_attempts,
            delay,
        )
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._stopped:
            return
        try:
            url = self._role.url(self._link.base_url)
        except ConfigurationError as e:
            self._last_error = str(e)
            log.error("%s: %s", self.label, e)
            return
        self._attempt_task = asyncio.create_task(
            self._attempt(url), name=f"{self.label}-reconnect"
        )

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        self._next_retry_s = None

    async def _teardown(self, code: int, reason: str) -> None:
        transport = self._transport
        self._transport = None
        self._outbox = None
        self._heartbeat.stop()
        self._cancel_task(self._reader_task)
        self._cancel_task(self._writer_task)
        self._reader_task = None
        self._writer_task = None
        if transport is not None:
            self._state = LinkState.CLOSING
            await _close_quietly(transport, code, reason)
        self._state = LinkState.CLOSED

    # ── Read / write loops ───────────────────────────────────────

    async def _read_loop(self, transport: Transport) -> None:
        reason = "connection closed"
        try:
            async for raw in transport:
                if self._transport is not transport:
                    return
                self._handle_raw(raw)
        except ConnectionClosed as e:
            reason = f"connection closed: {e}"
        except OSError as e:
            reason = f"read error: {e}"
        if self._transport is transport:
            self._handle_transport_loss(reason)

    async def _write_loop(self, transport: Transport, outbox: asyncio.Queue[str]) -> None:
        try:
            while True:
                text = await outbox.get()
                await transport.send(text)
        except (OSError, WebSocketException) as e:
            if self._transport is transport:
                self._handle_transport_loss(f"write error: {e}")

    def _handle_raw(self, raw: str | bytes) -> None:
        try:
            frame = decode_frame(raw)
        except FrameError as e:
            self._frames_bad += 1
            self._last_bad_frame = str(raw)[:120]
            log.debug("%s: dropping bad frame: %s", self.label, e)
            return
        self._frames_ok += 1
        if isinstance(frame, Ping):
            self.send(Pong())
            return
        if isinstance(frame, Pong):
            self._heartbeat.pong_received()
            return
        for cb in list(self._message_handlers):
            try:
                cb(frame)
            except Exception:
                log.exception("%s: message handler failed", self.label)

    # ── Heartbeat hooks ──────────────────────────────────────────

    def _send_ping(self) -> bool:
        return self.send(Ping())

    def _on_pong_timeout(self) -> None:
        self._handle_transport_loss("pong timeout", close_code=CLOSE_PONG_TIMEOUT)

    # ── Helpers ──────────────────────────────────────────────────

    def _set_state(self, state: LinkState) -> None:
        if state is self._state:
            return
        self._state = state
        self._notify_status()

    def _notify_status(self) -> None:
        status = self.status()
        for cb in list(self._status_handlers):
            try:
                cb(status)
            except Exception:
                log.exception("%s: status handler failed", self.label)

    def _close_in_background(self, transport: Transport, code: int, reason: str) -> None:
        task = asyncio.create_task(_close_quietly(transport, code, reason))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    @staticmethod
    def _cancel_task(task: asyncio.Task | None) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def debug_snapshot(self) -> dict:
        return {
            "label": self.label,
            "state": self._state.value,
            "reconnect_attempt": self._reconnect_attempt,
            "max_reconnect_attempts": self._link.max_reconnect_attempts,
            "exhausted": self._exhausted,
            "next_retry_s": self._next_retry_s,
            "connect_count": self._connect_count,
            "disconnect_count": self._disconnect_count,
            "failed_opens": self._failed_opens,
            "frames_ok": self._frames_ok,
            "frames_bad": self._frames_bad,
            "sent": self._sent,
            "dropped_sends": self._dropped_sends,
            "last_bad_frame": self._last_bad_frame,
            "last_error": self._last_error or "",
            "close_code": self._close_code,
            "heartbeat": self._heartbeat.snapshot(),
        }


async def _close_quietly(transport: Transport, code: int, reason: str) -> None:
    try:
        await asyncio.wait_for(transport.close(code, reason), timeout=_CLOSE_TIMEOUT_S)
    except (asyncio.TimeoutError, OSError, WebSocketException) as e:
        log.debug("close(%d) failed: %s", code, e)
