"""탐지 엔진용 Alert, AlertKind 및 Severity 모델."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @property
    def cef_score(self) -> int:
        """CEF 헤더에 기록되는 0-10 심각도."""
        return _CEF_SCORES[self]

    def __ge__(self, other: Severity) -> bool:
        """현재 심각도가 other 이상인지 비교한다."""
        return self.rank >= other.rank

    def __gt__(self, other: Severity) -> bool:
        """현재 심각도가 other 초과인지 비교한다."""
        return self.rank > other.rank

    def __le__(self, other: Severity) -> bool:
        """현재 심각도가 other 이하인지 비교한다."""
        return self.rank <= other.rank

    def __lt__(self, other: Severity) -> bool:
        """현재 심각도가 other 미만인지 비교한다."""
        return self.rank < other.rank


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]

_CEF_SCORES = {
    Severity.LOW:      4,
    Severity.MEDIUM:   6,
    Severity.HIGH:     8,
    Severity.CRITICAL: 10,
}


def upgrade_severity(severity: Severity) -> Severity:
    """심각도를 한 단계 높인다 (LOW -> MEDIUM -> HIGH -> CRITICAL)."""
    idx = _SEVERITY_ORDER.index(severity)
    return _SEVERITY_ORDER[min(len(_SEVERITY_ORDER) - 1, idx + 1)]


@dataclass(frozen=True)
class SeverityBands:
    """고유 포트 수 → 심각도 구간 하한값."""
    critical: int = 100
    high: int = 50
    medium: int = 20

    @classmethod
    def from_config(cls, data: dict[str, Any] | None) -> SeverityBands:
        data = data or {}
        return cls(
            critical=int(data.get("critical", cls.critical)),
            high=int(data.get("high", cls.high)),
            medium=int(data.get("medium", cls.medium)),
        )

    def classify(self, unique_port_count: int) -> Severity:
        """고유 포트 수에 해당하는 심각도를 반환한다."""
        if unique_port_count >= self.critical:
            return Severity.CRITICAL
        if unique_port_count >= self.high:
            return Severity.HIGH
        if unique_port_count >= self.medium:
            return Severity.MEDIUM
        return Severity.LOW


class AlertKind(str, enum.Enum):
    RAPID_SCAN = "RapidScan"
    SLOW_SCAN = "SlowScan"
    CONNECTION_BURST = "ConnectionBurst"

    @property
    def signature_id(self) -> str:
        """CEF Signature ID 필드 값."""
        return _SIGNATURE_IDS[self]

    @property
    def title(self) -> str:
        return _TITLES[self]


_SIGNATURE_IDS = {
    AlertKind.RAPID_SCAN:       "RAPID_SCAN",
    AlertKind.SLOW_SCAN:        "SLOW_SCAN",
    AlertKind.CONNECTION_BURST: "CONNECTION_BURST",
}

_TITLES = {
    AlertKind.RAPID_SCAN:       "Rapid Port Scan Detected",
    AlertKind.SLOW_SCAN:        "Slow Port Scan Detected",
    AlertKind.CONNECTION_BURST: "Connection Burst Detected",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass(frozen=True)
class Alert:
    """탐지 엔진이 생성한 불변 알림."""
    kind: AlertKind
    source_address: str
    unique_port_count: int
    window_seconds: int
    severity: Severity
    message: str
    connection_count: int = 0
    sample_ports: tuple[int, ...] = ()
    origin_host: str | None = None
    detected_at: str = field(default_factory=_utc_now_iso)

    @property
    def dedup_key(self) -> str:
        """중복 제거 / 로그 상관에 사용되는 키."""
        return f"{self.kind.value}:{self.source_address}"

    def to_dict(self) -> dict[str, Any]:
        """알림을 딕셔너리로 직렬화한다."""
        return {
            "kind": self.kind.value,
            "source_address": self.source_address,
            "unique_port_count": self.unique_port_count,
            "window_seconds": self.window_seconds,
            "severity": self.severity.value,
            "message": self.message,
            "connection_count": self.connection_count,
            "sample_ports": list(self.sample_ports),
            "origin_host": self.origin_host,
            "detected_at": self.detected_at,
        }

    def to_json(self) -> str:
        """알림을 JSON 문자열로 직렬화한다."""
        return json.dumps(self.to_dict())
