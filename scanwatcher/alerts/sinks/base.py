"""알림 싱크 추상 기반 클래스."""

from __future__ import annotations

import abc
from typing import Any

from scanwatcher.alerts.cef import CEFFormatter
from scanwatcher.detection.models import Alert, Severity


class AlertSink(abc.ABC):
    """알림 싱크 기반 클래스 (UDP syslog, HTTP)."""

    name: str = ""

    def __init__(self, config: dict[str, Any], formatter: CEFFormatter | None = None) -> None:
        """싱크 설정, CEF 포매터, 최소 심각도 필터를 초기화한다."""
        self.config = config
        self.enabled = config.get("enabled", False)
        self.min_severity = Severity(str(config.get("min_severity", "low")).lower())
        self.formatter = formatter or CEFFormatter()

    def should_send(self, alert: Alert) -> bool:
        """알림이 이 싱크의 최소 심각도를 충족하는지 확인한다."""
        return self.enabled and alert.severity >= self.min_severity

    @abc.abstractmethod
    async def send(self, alert: Alert) -> bool:
        """알림을 전송한다. 성공 시 True를 반환한다."""

    async def close(self) -> None:
        """싱크가 보유한 연결을 정리한다."""
