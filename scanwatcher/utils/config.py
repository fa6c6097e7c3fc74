"""기본값 병합 기능을 갖춘 YAML 설정 로더."""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

# 설정 파일에 값이 없을 때 사용하는 기본값
DEFAULTS: dict[str, Any] = {
    "detection": {
        "rapid_threshold":        10,
        "rapid_window_seconds":   60,
        "slow_threshold":         20,
        "slow_window_seconds":    3600,
        "burst_enabled":          True,
        "burst_threshold":        50,
        "burst_window_seconds":   10,
        "activity_ttl_seconds":   0,
        "max_tracked_sources":    100_000,
        "saturation_policy":      "reject",
        "realert_after_seconds":  0,
        "rapid_severity_boost":   False,
        "severity_bands": {
            "critical": 100,
            "high":     50,
            "medium":   20,
        },
    },
    "ingest": {
        "ignore_internal": True,
        "batch_size":      50,
        "workers":         4,
        "queue_size":      1000,
        "udp": {
            "enabled": True,
            "host":    "0.0.0.0",
            "port":    5555,
        },
        "unix": {
            "enabled": False,
            "path":    "/var/run/scanwatcher/scanwatcher.sock",
        },
    },
    "eviction": {
        "interval_seconds":       300,
        "stats_interval_seconds": 60,
    },
    "alerts": {
        "queue_size":           10000,
        "send_timeout_seconds": 5.0,
        "cef": {
            "vendor":  "ScanWatcher",
            "product": "LogScanDetector",
            "version": "1.0",
        },
        "sinks": {
            "syslog": {
                "enabled":      True,
                "host":         "127.0.0.1",
                "port":         514,
                "min_severity": "low",
            },
            "http": {
                "enabled":      False,
                "url":          "",
                "min_severity": "medium",
            },
        },
    },
    "logging": {
        "level":        "INFO",
        "directory":    "data/logs",
        "max_bytes":    10_485_760,
        "backup_count": 5,
        "format":       "text",
    },
    "metrics": {
        "enabled": False,
        "host":    "0.0.0.0",
        "port":    9108,
    },
}

# 환경변수 → Config 경로 매핑
_ENV_OVERRIDES: list[tuple[str, str, type]] = [
    ("SCANWATCHER_SYSLOG_HOST", "alerts.sinks.syslog.host", str),
    ("SCANWATCHER_SYSLOG_PORT", "alerts.sinks.syslog.port", int),
    ("SCANWATCHER_HTTP_SINK_URL", "alerts.sinks.http.url", str),
    ("SCANWATCHER_MAX_TRACKED_SOURCES", "detection.max_tracked_sources", int),
    ("SCANWATCHER_LOG_LEVEL", "logging.level", str),
]


def _deep_merge(base: dict, override: dict) -> dict:
    """override를 base에 재귀적으로 병합하여 새 dict를 반환한다."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _set_nested(data: dict, dotted_key: str, value: Any) -> None:
    """점 표기법을 사용하여 중첩 dict에 값을 설정한다."""
    keys = dotted_key.split(".")
    current = data
    for key in keys[:-1]:
        if key not in current or not isinstance(current[key], dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def _apply_env_overrides(data: dict) -> None:
    """환경변수가 설정되어 있으면 YAML 값을 오버라이드한다."""
    for env_var, config_path, cast in _ENV_OVERRIDES:
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested(data, config_path, cast(value))


class Config:
    """YAML 파일에서 로드된 불변 설정 컨테이너."""

    def __init__(self, data: dict[str, Any], config_path: str | Path | None = None) -> None:
        self._data = data
        self.config_path: str | None = str(config_path) if config_path else None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """기본값 위에 주어진 dict를 병합하여 Config를 만든다."""
        return cls(_deep_merge(copy.deepcopy(DEFAULTS), data))

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> Config:
        """YAML 파일에서 설정을 로드한다.

        프로젝트 루트 기준 config/default.yaml을 기본 경로로 사용한다.
        환경변수 SCANWATCHER_CONFIG로 경로를 오버라이드할 수 있다.
        .env 파일이 존재하면 자동으로 로드하여 환경변수를 설정한다.
        파일에 없는 키는 DEFAULTS 값으로 채워진다.
        """
        load_dotenv()

        if config_path is None:
            config_path = os.environ.get("SCANWATCHER_CONFIG")
        if config_path is None:
            project_root = Path(__file__).resolve().parent.parent.parent
            config_path = project_root / "config" / "default.yaml"

        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        inner = _deep_merge(copy.deepcopy(DEFAULTS), data.get("scanwatcher", data))
        _apply_env_overrides(inner)

        return cls(inner, config_path=config_path)

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """점 표기법으로 값을 조회한다: 'ingest.udp.port' -> config['ingest']['udp']['port']."""
        keys = dotted_key.split(".")
        current = self._data
        for key in keys:
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    def section(self, key: str) -> dict[str, Any]:
        """주어진 최상위 키에 대한 하위 dict를 반환한다."""
        return self._data.get(key, {})

    @property
    def raw(self) -> dict[str, Any]:
        """설정 데이터의 원본 dict를 반환한다."""
        return self._data
