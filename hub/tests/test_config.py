"""Tests for hub Settings validation."""

from __future__ import annotations

import pytest

from hub.config import Settings


def test_defaults_are_valid():
    s = Settings()
    assert s.pong_timeout_s > s.ping_interval_s
    assert s.cors_origin_list


def test_pong_timeout_must_exceed_ping_interval():
    with pytest.raises(ValueError):
        Settings(ping_interval_s=10.0, pong_timeout_s=5.0)


def test_port_range():
    with pytest.raises(ValueError):
        Settings(port=0)


def test_cors_origins_split():
    s = Settings(cors_origins="https://a.example, https://b.example,")
    assert s.cors_origin_list == ["https://a.example", "https://b.example"]


def test_send_timeout_must_be_positive():
    with pytest.raises(ValueError):
        Settings(send_timeout_s=0.0)
