"""HTTP intake for telemetry that devices queued while offline.

Every endpoint answers ``{"success": true, ...}`` on acceptance; the device
deletes its queued entry only on that acknowledgement.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from hub.registry import TelemetryHub
from hub.schemas import (
    AdPlaybackReport,
    DeviceStatusReport,
    IntakeResponse,
    LocationReport,
    QrScanReport,
)

log = logging.getLogger(__name__)

router = APIRouter(prefix="/offlineQueue")


@router.post("/device-status", response_model=IntakeResponse)
async def device_status(report: DeviceStatusReport, request: Request) -> IntakeResponse:
    hub: TelemetryHub = request.app.state.hub
    when = report.lastSeen or report.queuedTimestamp
    await hub.report_status(
        report.deviceId,
        report.isOnline,
        when.timestamp() if when is not None else None,
    )
    status = hub.presence.status(report.deviceId)
    log.info(
        "offline status for %s: online=%s (effective %s via %s)",
        report.deviceId,
        report.isOnline,
        status.is_online,
        status.source,
    )
    return IntakeResponse(
        success=True, message="device status recorded", data=status.to_dict()
    )


@router.post("/location-data", response_model=IntakeResponse)
async def location_data(report: LocationReport) -> IntakeResponse:
    log.info("offline location for %s: %.5f,%.5f", report.deviceId, report.lat, report.lng)
    return IntakeResponse(
        success=True,
        message="location recorded",
        data={"deviceId": report.deviceId, "lat": report.lat, "lng": report.lng},
    )


@router.post("/ad-playback", response_model=IntakeResponse)
async def ad_playback(report: AdPlaybackReport) -> IntakeResponse:
    log.info(
        "offline playback for %s: %s %.0f%%",
        report.deviceId,
        report.adId,
        report.completionRate,
    )
    return IntakeResponse(
        success=True,
        message="ad playback recorded",
        data={"deviceId": report.deviceId, "adId": report.adId},
    )


@router.post("/qr-scan", response_model=IntakeResponse)
async def qr_scan(report: QrScanReport) -> IntakeResponse:
    log.info("offline qr scan for %s: %s", report.deviceId, report.adId)
    return IntakeResponse(
        success=True,
        message="qr scan recorded",
        data={"deviceId": report.deviceId, "adId": report.adId},
    )
