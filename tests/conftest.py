"""Shared fixtures for ScanWatcher tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from scanwatcher.utils.config import Config


@pytest.fixture(autouse=True)
def _clear_env_overrides(monkeypatch):
    """테스트 환경에서 설정 오버라이드 환경변수를 제거한다."""
    for name in (
        "SCANWATCHER_CONFIG",
        "SCANWATCHER_SYSLOG_HOST",
        "SCANWATCHER_SYSLOG_PORT",
        "SCANWATCHER_HTTP_SINK_URL",
        "SCANWATCHER_MAX_TRACKED_SOURCES",
        "SCANWATCHER_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config with listeners on ephemeral ports and sinks disabled."""
    yaml_content = f"""
scanwatcher:
  detection:
    rapid_threshold: 10
    rapid_window_seconds: 60
    slow_threshold: 20
    slow_window_seconds: 3600
    burst_enabled: true
    burst_threshold: 50
    burst_window_seconds: 10
    max_tracked_sources: 1000
  ingest:
    ignore_internal: true
    batch_size: 50
    workers: 2
    udp:
      enabled: true
      host: "127.0.0.1"
      port: 0
    unix:
      enabled: false
  eviction:
    interval_seconds: 300
    stats_interval_seconds: 0
  alerts:
    queue_size: 100
    send_timeout_seconds: 1.0
    sinks:
      syslog:
        enabled: false
      http:
        enabled: false
  logging:
    level: DEBUG
    directory: "{tmp_path / 'logs'}"
"""
    config_file = tmp_path / "test_config.yaml"
    config_file.write_text(yaml_content)
    return Config.load(config_file)
