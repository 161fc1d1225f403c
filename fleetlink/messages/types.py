"""Frame type names, channels, and playback states shared by devices and the hub.

Wire names are camelCase to match the JSON payloads on the socket.
"""

from __future__ import annotations

# ── Liveness ─────────────────────────────────────────────────────

PING = "ping"
PONG = "pong"

# ── Device → hub ─────────────────────────────────────────────────

STATUS = "status"
AD_PLAYBACK_UPDATE = "adPlaybackUpdate"
SYNC_REQUEST = "syncRequest"

# ── Hub → observers / devices ────────────────────────────────────

DEVICE_UPDATE = "deviceUpdate"
DEVICE_LIST = "deviceList"
SLOT_SYNC = "slotSync"

# ── SSE-only events ──────────────────────────────────────────────

CONNECTION = "connection"
HEARTBEAT = "heartbeat"

# ── Channels ─────────────────────────────────────────────────────

CHANNEL_STATUS = "status"
CHANNEL_PLAYBACK = "playback"
CHANNELS = frozenset({CHANNEL_STATUS, CHANNEL_PLAYBACK})

# ── Playback states ──────────────────────────────────────────────

PLAYING = "playing"
PAUSED = "paused"
BUFFERING = "buffering"
LOADING = "loading"
ENDED = "ended"

PLAYBACK_STATES = frozenset({PLAYING, PAUSED, BUFFERING, LOADING, ENDED})
# A peer in one of these states has no position worth syncing to.
UNSETTLED_STATES = frozenset({LOADING, BUFFERING})
