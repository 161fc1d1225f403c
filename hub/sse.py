"""Server-Sent Events sink: lets an SSE client sit in the hub like a socket."""

from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator

from fleetlink.messages.envelope import HeartbeatEvent, encode_frame


def format_event(text: str) -> str:
    return f"data: {text}\n\n"


class SseSink:
    """Bounded outbound buffer for one SSE response.

    ``send_text`` raises ``ConnectionError`` once the sink is closed or the
    client has fallen ``maxsize`` events behind; the hub evicts on that.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_text(self, text: str) -> None:
        if self._closed:
            raise ConnectionError("sse stream closed")
        try:
            self._queue.put_nowait(text)
        except asyncio.QueueFull as e:
            raise ConnectionError("sse client too slow") from e

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        # make room for the sentinel so events() always wakes up
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def events(self, heartbeat_s: float) -> AsyncIterator[str]:
        """Yield SSE-formatted chunks until closed, with a heartbeat every ``heartbeat_s``.

        The heartbeat runs on a fixed schedule; queued traffic does not push it back.
        """
        loop = asyncio.get_running_loop()
        next_beat = loop.time() + heartbeat_s
        while True:
            now = loop.time()
            remaining = next_beat - now
            if remaining <= 0:
                next_beat = now + heartbeat_s
                beat = HeartbeatEvent(timestamp=int(time.time() * 1000))
                yield format_event(encode_frame(beat))
                continue
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=remaining)
            except asyncio.TimeoutError:
                continue
            if item is None:
                return
            yield format_event(item)
