"""Hub configuration from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(override=False)


@dataclass(slots=True)
class Settings:
    host: str = os.environ.get("HUB_HOST", "0.0.0.0")
    port: int = int(os.environ.get("HUB_PORT", "5000"))
    ping_interval_s: float = float(os.environ.get("HUB_PING_INTERVAL_S", "10.0"))
    pong_timeout_s: float = float(os.environ.get("HUB_PONG_TIMEOUT_S", "30.0"))
    send_timeout_s: float = float(os.environ.get("HUB_SEND_TIMEOUT_S", "5.0"))
    sse_heartbeat_s: float = float(os.environ.get("HUB_SSE_HEARTBEAT_S", "30.0"))
    sse_queue_size: int = int(os.environ.get("HUB_SSE_QUEUE_SIZE", "256"))
    presence_fallback_s: float = float(
        os.environ.get("HUB_PRESENCE_FALLBACK_S", "30.0")
    )
    cors_origins: str = os.environ.get("HUB_CORS_ORIGINS", "*")
    log_level: str = os.environ.get("LOG_LEVEL", "info")

    def __post_init__(self) -> None:
        if not (1 <= self.port <= 65535):
            raise ValueError("HUB_PORT must be in [1, 65535]")
        if self.ping_interval_s <= 0.0:
            raise ValueError("HUB_PING_INTERVAL_S must be > 0")
        if self.pong_timeout_s <= self.ping_interval_s:
            raise ValueError("HUB_PONG_TIMEOUT_S must exceed HUB_PING_INTERVAL_S")
        if self.send_timeout_s <= 0.0:
            raise ValueError("HUB_SEND_TIMEOUT_S must be > 0")
        if self.sse_heartbeat_s <= 0.0:
            raise ValueError("HUB_SSE_HEARTBEAT_S must be > 0")
        if self.sse_queue_size < 1:
            raise ValueError("HUB_SSE_QUEUE_SIZE must be >= 1")
        if self.presence_fallback_s < 0.0:
            raise ValueError("HUB_PRESENCE_FALLBACK_S must be >= 0")

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
