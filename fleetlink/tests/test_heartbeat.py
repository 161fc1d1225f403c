"""Tests for HeartbeatMonitor."""

from __future__ import annotations

import asyncio

import pytest

from fleetlink.core.heartbeat import HeartbeatMonitor


class _Recorder:
    def __init__(self) -> None:
        self.pings = 0
        self.timeouts = 0

    def ping(self) -> bool:
        self.pings += 1
        return True

    def timeout(self) -> None:
        self.timeouts += 1


@pytest.mark.asyncio
async def test_timeout_fires_once_without_pongs():
    rec = _Recorder()
    hb = HeartbeatMonitor(
        send_ping=rec.ping, on_timeout=rec.timeout, ping_interval_s=0.01, pong_timeout_s=0.025
    )
    hb.start()
    await asyncio.sleep(0.12)
    assert rec.timeouts == 1
    assert hb.timeouts == 1
    assert not hb.running
    assert rec.pings >= 1


@pytest.mark.asyncio
async def test_pongs_keep_monitor_alive():
    rec = _Recorder()
    hb = HeartbeatMonitor(
        send_ping=rec.ping, on_timeout=rec.timeout, ping_interval_s=0.01, pong_timeout_s=0.03
    )
    hb.start()
    for _ in range(10):
        await asyncio.sleep(0.01)
        hb.pong_received()
    assert rec.timeouts == 0
    assert hb.running
    hb.stop()
    assert not hb.running


@pytest.mark.asyncio
async def test_restart_replaces_previous_loop():
    rec = _Recorder()
    hb = HeartbeatMonitor(
        send_ping=rec.ping, on_timeout=rec.timeout, ping_interval_s=0.05, pong_timeout_s=10.0
    )
    hb.start()
    hb.start()
    hb.start()
    await asyncio.sleep(0.12)
    hb.stop()
    # one loop pings twice in 0.12s; three leaked loops would ping six times
    assert 1 <= rec.pings <= 3


@pytest.mark.asyncio
async def test_stop_prevents_timeout():
    rec = _Recorder()
    hb = HeartbeatMonitor(
        send_ping=rec.ping, on_timeout=rec.timeout, ping_interval_s=0.01, pong_timeout_s=0.015
    )
    hb.start()
    hb.stop()
    await asyncio.sleep(0.05)
    assert rec.timeouts == 0
    assert rec.pings == 0


def test_rejects_non_positive_intervals():
    with pytest.raises(ValueError):
        HeartbeatMonitor(send_ping=lambda: True, on_timeout=lambda: None, ping_interval_s=0)
    with pytest.raises(ValueError):
        HeartbeatMonitor(send_ping=lambda: True, on_timeout=lambda: None, pong_timeout_s=-1)
