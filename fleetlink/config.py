"""Device-side link configuration with defaults, loadable from YAML."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

log = logging.getLogger(__name__)


@dataclass
class LinkConfig:
    base_url: str = "http://localhost:5000"
    open_timeout_s: float = 10.0
    max_reconnect_attempts: int = 5
    backoff_base_s: float = 1.0
    backoff_max_s: float = 30.0
    jitter_ratio: float = 0.0  # 0 disables jitter


@dataclass
class HeartbeatConfig:
    ping_interval_s: float = 25.0
    pong_timeout_s: float = 90.0


@dataclass
class QueueConfig:
    path: str = "~/.fleetlink/offline_queue.json"
    http_timeout_s: float = 10.0
    max_age_s: float = 24 * 3600.0


@dataclass
class ThrottleConfig:
    sample_interval_s: float = 0.2


@dataclass
class DeviceConfig:
    device_id: str = ""
    material_id: str = ""
    slot_number: int | None = None
    platform: str = "python"
    device_name: str = ""
    os_version: str = ""


@dataclass
class FleetConfig:
    link: LinkConfig = field(default_factory=LinkConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig)


def load_config(path: str | Path | None = None) -> FleetConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        return FleetConfig()

    path = Path(path)
    if not path.exists():
        log.warning("config file not found: %s, using defaults", path)
        return FleetConfig()

    try:
        import yaml  # type: ignore[import-untyped]

        with open(path) as f:
            raw = yaml.safe_load(f) or {}

        cfg = FleetConfig()
        for section_name in ("link", "heartbeat", "queue", "throttle", "device"):
            if section_name in raw:
                section = getattr(cfg, section_name)
                for k, v in (raw[section_name] or {}).items():
                    if not hasattr(section, k):
                        log.warning("unknown config key %s.%s ignored", section_name, k)
                        continue
                    setattr(section, k, v)

        log.info("config loaded from %s", path)
        return cfg
    except Exception as e:
        log.warning("config load error: %s, using defaults", e)
        return FleetConfig()
