"""Config 로더 테스트."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from scanwatcher.utils.config import DEFAULTS, Config


class TestConfigLoad:
    def test_fixture_values(self, config: Config):
        assert config.get("detection.rapid_threshold") == 10
        assert config.get("ingest.udp.port") == 0
        assert config.get("alerts.sinks.syslog.enabled") is False

    def test_defaults_fill_missing_keys(self, config: Config):
        assert config.get("detection.saturation_policy") == "reject"
        assert config.get("detection.severity_bands.critical") == 100
        assert config.get("alerts.sinks.syslog.port") == 514
        assert config.get("alerts.cef.vendor") == "ScanWatcher"

    def test_missing_key_returns_default(self, config: Config):
        assert config.get("detection.no_such_key") is None
        assert config.get("no.such.path", 5) == 5

    def test_section(self, config: Config):
        detection = config.section("detection")
        assert detection["slow_window_seconds"] == 3600
        assert config.section("nonexistent") == {}

    def test_missing_file_raises(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            Config.load(tmp_path / "missing.yaml")

    def test_env_overrides(self, tmp_path: Path, monkeypatch):
        config_file = tmp_path / "env.yaml"
        config_file.write_text("scanwatcher:\n  detection:\n    max_tracked_sources: 10\n")
        monkeypatch.setenv("SCANWATCHER_SYSLOG_HOST", "siem.example.net")
        monkeypatch.setenv("SCANWATCHER_SYSLOG_PORT", "1514")
        monkeypatch.setenv("SCANWATCHER_MAX_TRACKED_SOURCES", "500")

        config = Config.load(config_file)
        assert config.get("alerts.sinks.syslog.host") == "siem.example.net"
        assert config.get("alerts.sinks.syslog.port") == 1514
        assert config.get("detection.max_tracked_sources") == 500

    def test_config_path_from_env(self, tmp_path: Path, monkeypatch):
        config_file = tmp_path / "from_env.yaml"
        config_file.write_text("scanwatcher:\n  ingest:\n    workers: 8\n")
        monkeypatch.setenv("SCANWATCHER_CONFIG", str(config_file))

        config = Config.load()
        assert config.get("ingest.workers") == 8
        assert config.config_path == str(config_file)

    def test_bundled_default_config_loads(self):
        default_file = Path(__file__).resolve().parents[2] / "config" / "default.yaml"
        config = Config.load(default_file)
        assert config.get("ingest.udp.port") == 5555
        assert config.get("eviction.interval_seconds") == 300

    def test_bundled_default_config_matches_defaults(self):
        default_file = Path(__file__).resolve().parents[2] / "config" / "default.yaml"
        with open(default_file, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        assert data["scanwatcher"] == DEFAULTS
        assert DEFAULTS["alerts"]["sinks"]["syslog"]["enabled"] is True
        assert DEFAULTS["alerts"]["sinks"]["http"]["min_severity"] == "medium"
        assert DEFAULTS["detection"]["activity_ttl_seconds"] == 0


class TestFromDict:
    def test_merges_over_defaults(self):
        config = Config.from_dict({"detection": {"rapid_threshold": 3}})
        assert config.get("detection.rapid_threshold") == 3
        assert config.get("detection.slow_threshold") == 20

    def test_does_not_mutate_defaults(self):
        config = Config.from_dict({"detection": {"severity_bands": {"high": 1}}})
        config.raw["detection"]["severity_bands"]["medium"] = 0
        assert DEFAULTS["detection"]["severity_bands"] == {"critical": 100, "high": 50, "medium": 20}
