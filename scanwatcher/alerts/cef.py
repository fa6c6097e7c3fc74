"""Alert → CEF(Common Event Format) 한 줄 레코드 변환.

CEF:Version|Device Vendor|Device Product|Device Version|Signature ID|Name|Severity|Extension
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from scanwatcher.detection.models import Alert

CEF_VERSION = 0


def escape_header(value: Any) -> str:
    """CEF 헤더 필드 이스케이프: 백슬래시와 파이프."""
    text = str(value)
    text = text.replace("\\", "\\\\")
    text = text.replace("|", "\\|")
    return text.replace("\r", " ").replace("\n", " ")


def escape_extension(value: Any) -> str:
    """CEF 확장 값 이스케이프: 백슬래시, 등호, 개행."""
    text = str(value)
    text = text.replace("\\", "\\\\")
    text = text.replace("=", "\\=")
    text = text.replace("\r\n", "\\n").replace("\n", "\\n").replace("\r", "\\r")
    return text


def _receipt_time_ms(detected_at: str) -> int | None:
    try:
        return int(datetime.fromisoformat(detected_at.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        return None


class CEFFormatter:
    """Alert를 CEF 레코드로 렌더링한다. 벤더/제품/버전은 설정에서 주입한다."""

    def __init__(
        self,
        vendor: str = "ScanWatcher",
        product: str = "LogScanDetector",
        version: str = "1.0",
    ) -> None:
        self.vendor  = vendor
        self.product = product
        self.version = version

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> CEFFormatter:
        config = config or {}
        return cls(
            vendor=config.get("vendor", "ScanWatcher"),
            product=config.get("product", "LogScanDetector"),
            version=str(config.get("version", "1.0")),
        )

    def extension(self, alert: Alert) -> dict[str, Any]:
        """확장 필드(key → value)를 순서대로 구성한다."""
        ext: dict[str, Any] = {"src": alert.source_address}
        if alert.origin_host:
            ext["dhost"] = alert.origin_host
        ext["cnt"] = alert.unique_port_count
        ext["cn1Label"] = "windowSeconds"
        ext["cn1"] = alert.window_seconds
        ext["cn2Label"] = "connectionCount"
        ext["cn2"] = alert.connection_count
        if alert.sample_ports:
            ext["cs1Label"] = "ports"
            ext["cs1"] = ",".join(str(p) for p in alert.sample_ports)
        rt = _receipt_time_ms(alert.detected_at)
        if rt is not None:
            ext["rt"] = rt
        ext["act"] = "alert"
        ext["msg"] = alert.message
        return ext

    def format(self, alert: Alert) -> str:
        """Alert 하나를 개행 없는 CEF 한 줄로 변환한다."""
        header = "|".join([
            f"CEF:{CEF_VERSION}",
            escape_header(self.vendor),
            escape_header(self.product),
            escape_header(self.version),
            escape_header(alert.kind.signature_id),
            escape_header(alert.kind.title),
            str(alert.severity.cef_score),
        ])
        ext = " ".join(
            f"{key}={escape_extension(value)}"
            for key, value in self.extension(alert).items()
        )
        return f"{header}|{ext}"
