"""Pydantic models for the offline-queue HTTP intake."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _QueuedReport(BaseModel):
    # devices send camelCase and extra fields we pass through untouched
    model_config = ConfigDict(extra="allow")

    deviceId: str = Field(min_length=1)
    materialId: str | None = None
    isOffline: bool = False
    queuedTimestamp: datetime | None = None


class DeviceStatusReport(_QueuedReport):
    isOnline: bool
    lastSeen: datetime | None = None


class LocationReport(_QueuedReport):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)
    speed: float = 0.0
    heading: float = 0.0
    accuracy: float = 0.0


class AdPlaybackReport(_QueuedReport):
    adId: str = Field(min_length=1)
    adTitle: str = ""
    adDuration: float = Field(default=0.0, ge=0.0)
    viewTime: float = Field(default=0.0, ge=0.0)
    completionRate: float = Field(default=0.0, ge=0.0, le=100.0)
    slotNumber: int | None = None
    startTime: datetime | None = None
    endTime: datetime | None = None


class QrScanReport(_QueuedReport):
    adId: str = Field(min_length=1)
    adTitle: str = ""
    qrCode: str = ""
    scanTimestamp: datetime | None = None


class IntakeResponse(BaseModel):
    success: bool
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
