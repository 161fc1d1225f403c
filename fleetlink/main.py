"""Fleetlink CLI: run a simulated display device or a console observer."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import platform

from fleetlink.config import FleetConfig, load_config
from fleetlink.core.offline_queue import OfflineQueue, QueueKind
from fleetlink.core.throttler import PlaybackThrottler
from fleetlink.io.connection import ConnectionSupervisor, LinkState, LinkStatus
from fleetlink.messages.envelope import PlaybackUpdate, SlotSync, SyncRequest, utc_now_iso
from fleetlink.messages.types import CHANNEL_PLAYBACK, ENDED, LOADING, PLAYING
from fleetlink.observer import FleetView
from fleetlink.roles import ObserverRole, PlaybackDeviceRole, StatusDeviceRole

log = logging.getLogger("fleetlink")

_PLAYER_TICK_S = 0.1
# Simulated rotation: (ad id, title, duration seconds)
_DEMO_ADS = [
    ("ad-001", "Morning coffee", 8.0),
    ("ad-002", "Transit pass", 12.0),
    ("ad-003", "Weekend market", 6.0),
]


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Fleetlink device/observer client")
    p.add_argument("--config", default=None, help="YAML config file path")
    p.add_argument("--base-url", default=None, help="Hub base URL (http or https)")
    p.add_argument("--log-level", default="INFO", help="Log level")
    sub = p.add_subparsers(dest="command", required=True)

    dev = sub.add_parser("device", help="Simulate a display device playing ads")
    dev.add_argument(
        "--device-id", default=os.environ.get("DEVICE_ID", ""), help="Device ID"
    )
    dev.add_argument(
        "--material-id", default=os.environ.get("MATERIAL_ID", ""), help="Material ID"
    )
    dev.add_argument("--slot", type=int, default=None, help="Slot number on the material")
    dev.add_argument("--queue-path", default=None, help="Offline queue file")

    obs = sub.add_parser("observer", help="Print fleet playback to the console")
    obs.add_argument("--client-id", default="admin", help="Observer client ID")
    obs.add_argument(
        "--device", action="append", default=None, help="Only show this device (repeatable)"
    )
    return p.parse_args()


def _apply_overrides(cfg: FleetConfig, args: argparse.Namespace) -> FleetConfig:
    if args.base_url:
        cfg.link.base_url = args.base_url
    if args.command == "device":
        if args.device_id:
            cfg.device.device_id = args.device_id
        if args.material_id:
            cfg.device.material_id = args.material_id
        if args.slot is not None:
            cfg.device.slot_number = args.slot
        if args.queue_path:
            cfg.queue.path = args.queue_path
        if not cfg.device.os_version:
            cfg.device.os_version = platform.platform()
    return cfg


# ── Device ───────────────────────────────────────────────────────


async def run_device(cfg: FleetConfig) -> None:
    status_link = ConnectionSupervisor(
        StatusDeviceRole(cfg.device), link=cfg.link, heartbeat=cfg.heartbeat
    )
    playback_link = ConnectionSupervisor(
        PlaybackDeviceRole(cfg.device), link=cfg.link, heartbeat=cfg.heartbeat
    )
    queue = OfflineQueue(
        cfg.link.base_url,
        cfg.queue.path,
        timeout_s=cfg.queue.http_timeout_s,
        max_age_s=cfg.queue.max_age_s,
    )
    queue.load()
    await queue.start()
    pending_flush: set[asyncio.Task] = set()

    def on_status_link(status: LinkStatus) -> None:
        if status.is_online:
            task = asyncio.create_task(queue.set_online(True))
            pending_flush.add(task)
            task.add_done_callback(pending_flush.discard)
            return
        if status.state is LinkState.CLOSED:
            if queue.online:
                queue.enqueue(
                    QueueKind.DEVICE_STATUS,
                    {
                        "deviceId": cfg.device.device_id,
                        "materialId": cfg.device.material_id,
                        "isOnline": False,
                        "lastSeen": utc_now_iso(),
                    },
                )
            task = asyncio.create_task(queue.set_online(False))
            pending_flush.add(task)
            task.add_done_callback(pending_flush.discard)
        if status.exhausted:
            log.error("status link gave up: %s", status.error)

    def on_playback_frame(frame) -> None:
        if isinstance(frame, SlotSync):
            log.info(
                "slot %s is at %.1fs of %s (%s)",
                frame.source_slot,
                frame.current_time,
                frame.ad_id,
                frame.state,
            )

    status_link.on_status(on_status_link)
    playback_link.on_message(on_playback_frame)

    def emit(update: PlaybackUpdate) -> None:
        playback_link.send(update)

    throttler = PlaybackThrottler(
        cfg.device.device_id, emit, sample_interval_s=cfg.throttle.sample_interval_s
    )

    await status_link.connect()
    if await playback_link.connect() and cfg.device.slot_number is not None:
        playback_link.send(
            SyncRequest(
                material_id=cfg.device.material_id,
                slot_number=cfg.device.slot_number,
                timestamp=utc_now_iso(),
            )
        )

    try:
        while True:
            for ad_id, title, duration in _DEMO_ADS:
                await _play_one(throttler, ad_id, title, duration)
                record = {
                    "deviceId": cfg.device.device_id,
                    "materialId": cfg.device.material_id,
                    "adId": ad_id,
                    "adTitle": title,
                    "adDuration": duration,
                    "viewTime": duration,
                    "completionRate": 100,
                    "slotNumber": cfg.device.slot_number,
                    "endTime": utc_now_iso(),
                }
                if not playback_link.connected:
                    queue.enqueue(QueueKind.AD_PLAYBACK, record)
    finally:
        throttler.stop()
        await playback_link.disconnect()
        await status_link.disconnect()
        if pending_flush:
            await asyncio.gather(*pending_flush, return_exceptions=True)
        await queue.stop()


async def _play_one(
    throttler: PlaybackThrottler, ad_id: str, title: str, duration: float
) -> None:
    throttler.update(
        state=LOADING, ad_id=ad_id, ad_title=title, duration=duration, current_time=0.0
    )
    throttler.update(state=PLAYING, start_time=utc_now_iso())
    position = 0.0
    while position < duration:
        await asyncio.sleep(_PLAYER_TICK_S)
        position = min(duration, position + _PLAYER_TICK_S)
        throttler.update(current_time=position)
    throttler.update(state=ENDED, current_time=duration)


# ── Observer ─────────────────────────────────────────────────────


async def run_observer(cfg: FleetConfig, client_id: str, devices: list[str] | None) -> None:
    link = ConnectionSupervisor(
        ObserverRole(client_id, CHANNEL_PLAYBACK), link=cfg.link, heartbeat=cfg.heartbeat
    )
    view = FleetView(set(devices) if devices else None)

    def print_update(update: PlaybackUpdate) -> None:
        print(
            f"{update.timestamp}  {update.device_id:<16} {update.state:<9} "
            f"{update.ad_title or update.ad_id:<24} {update.progress:5.1f}%"
        )

    view.on_playback(print_update)
    link.on_message(view.apply)
    link.on_status(
        lambda s: log.info(
            "observer link %s (attempt %d%s)",
            s.state.value,
            s.reconnect_attempt,
            ", exhausted" if s.exhausted else "",
        )
    )
    await link.connect()
    try:
        while True:
            await asyncio.sleep(1.0)
            if link.exhausted:
                log.error("observer link gave up: %s", link.last_error)
                return
    finally:
        await link.disconnect()


async def async_main(args: argparse.Namespace) -> None:
    cfg = _apply_overrides(load_config(args.config), args)
    if args.command == "device":
        await run_device(cfg)
    else:
        await run_observer(cfg, args.client_id, args.device)


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        asyncio.run(async_main(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
