"""Tests for PresenceTracker source priority."""

from __future__ import annotations

from hub.presence import PresenceTracker


def _tracker():
    now = {"t": 1_000.0}
    return PresenceTracker(fallback_s=30.0, clock=lambda: now["t"]), now


def test_unknown_device_is_offline_by_timeout():
    tracker, _ = _tracker()
    status = tracker.status("tab-1")
    assert not status.is_online
    assert status.source == "timeout"
    assert status.confidence == "low"
    assert status.to_dict()["lastSeen"] is None


def test_socket_beats_offline_report():
    tracker, _ = _tracker()
    tracker.set_socket_status("tab-1", True)
    tracker.set_reported_status("tab-1", False)
    status = tracker.status("tab-1")
    assert status.is_online
    assert status.source == "websocket"
    assert status.confidence == "high"


def test_offline_report_trusted_only_inside_fallback_window():
    tracker, now = _tracker()
    tracker.set_socket_status("tab-1", True)
    tracker.set_socket_status("tab-1", False)
    tracker.set_reported_status("tab-1", True)
    assert tracker.status("tab-1").source == "offline_queue"
    assert tracker.status("tab-1").is_online

    now["t"] += 31.0
    status = tracker.status("tab-1")
    assert status.source == "timeout"
    assert not status.is_online
    assert status.to_dict()["lastSeen"].endswith("Z")


def test_late_queued_report_does_not_rewind_newer_one():
    tracker, now = _tracker()
    tracker.set_reported_status("tab-1", True, when=now["t"])
    tracker.set_reported_status("tab-1", False, when=now["t"] - 600.0)
    assert tracker.status("tab-1").is_online


def test_summary_counts_by_source():
    tracker, _ = _tracker()
    tracker.set_socket_status("tab-1", True)
    tracker.set_reported_status("tab-2", False)
    tracker.set_socket_status("tab-3", False)
    summary = tracker.summary()
    assert summary["total"] == 3
    assert summary["online"] == 1
    assert summary["by_source"] == {"websocket": 1, "offline_queue": 1, "timeout": 1}
