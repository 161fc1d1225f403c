"""Per-role hooks for :class:`~fleetlink.io.connection.ConnectionSupervisor`.

A role decides which channel a link joins, which identifiers go on the
upgrade URL, and which frames are sent as soon as the link opens.  The
reconnect and heartbeat machinery is the same for every role.
"""

from __future__ import annotations

from urllib.parse import urlencode, urlsplit, urlunsplit

from fleetlink.config import DeviceConfig
from fleetlink.messages.envelope import Frame, StatusFrame, utc_now_iso
from fleetlink.messages.types import CHANNEL_PLAYBACK, CHANNEL_STATUS, CHANNELS

_SCHEME_UPGRADE = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}


class ConfigurationError(ValueError):
    """A link cannot be attempted because its configuration is incomplete."""


def build_ws_url(base_url: str, channel: str, params: dict[str, str]) -> str:
    """``http(s)://host[/prefix]`` → ``ws(s)://host[/prefix]/ws/<channel>?...``"""
    if channel not in CHANNELS:
        raise ConfigurationError(f"unknown channel {channel!r}")
    parts = urlsplit(base_url)
    scheme = _SCHEME_UPGRADE.get(parts.scheme.lower())
    if scheme is None or not parts.netloc:
        raise ConfigurationError(f"base URL must be http(s) or ws(s): {base_url!r}")
    path = parts.path.rstrip("/") + f"/ws/{channel}"
    return urlunsplit((scheme, parts.netloc, path, urlencode(params), ""))


class LinkRole:
    """Base role: subclasses set ``channel`` and override the hooks."""

    channel: str = CHANNEL_STATUS
    label: str = "link"

    def validate(self) -> None:
        """Raise ``ConfigurationError`` if a required identifier is missing."""

    def query_params(self) -> dict[str, str]:
        return {}

    def opening_frames(self) -> list[Frame]:
        return []

    def url(self, base_url: str) -> str:
        self.validate()
        return build_ws_url(base_url, self.channel, self.query_params())


class _DeviceRole(LinkRole):
    def __init__(self, device: DeviceConfig) -> None:
        self.device = device

    @property
    def label(self) -> str:  # type: ignore[override]
        return f"{self.channel}:{self.device.device_id or '?'}"

    def validate(self) -> None:
        if not self.device.device_id:
            raise ConfigurationError("device_id is required for a device link")
        if not self.device.material_id:
            raise ConfigurationError("material_id is required for a device link")

    def query_params(self) -> dict[str, str]:
        params = {
            "deviceId": self.device.device_id,
            "materialId": self.device.material_id,
        }
        if self.device.slot_number is not None:
            params["slotNumber"] = str(self.device.slot_number)
        return params

    def identification(self) -> StatusFrame:
        now = utc_now_iso()
        return StatusFrame(
            device_id=self.device.device_id,
            material_id=self.device.material_id,
            timestamp=now,
            platform=self.device.platform,
            device_name=self.device.device_name or self.device.device_id,
            os_version=self.device.os_version,
            is_online=True,
            last_seen=now,
        )

    def opening_frames(self) -> list[Frame]:
        return [self.identification()]


class StatusDeviceRole(_DeviceRole):
    """Device presence link on the status channel."""

    channel = CHANNEL_STATUS


class PlaybackDeviceRole(_DeviceRole):
    """Device playback-telemetry producer on the playback channel."""

    channel = CHANNEL_PLAYBACK


class ObserverRole(LinkRole):
    """Admin dashboard consuming playback telemetry.

    Observers are classified by the ``admin=true`` query flag, so they send
    no identification frame.
    """

    channel = CHANNEL_PLAYBACK

    def __init__(self, client_id: str = "admin", channel: str = CHANNEL_PLAYBACK) -> None:
        self.client_id = client_id
        self.channel = channel

    @property
    def label(self) -> str:  # type: ignore[override]
        return f"{self.channel}:{self.client_id}"

    def validate(self) -> None:
        if not self.client_id:
            raise ConfigurationError("client_id is required for an observer link")

    def query_params(self) -> dict[str, str]:
        return {"deviceId": self.client_id, "admin": "true"}
