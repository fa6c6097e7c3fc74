"""UDP syslog(RFC 3164)로 CEF 레코드를 보내는 싱크."""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from typing import Any

from scanwatcher.alerts.cef import CEFFormatter
from scanwatcher.alerts.sinks.base import AlertSink
from scanwatcher.detection.models import Alert, Severity

logger = logging.getLogger("scanwatcher.alerts.sinks.syslog")

# syslog severity (RFC 5424 표 2)
_SYSLOG_SEVERITY = {
    Severity.CRITICAL: 2,
    Severity.HIGH:     3,
    Severity.MEDIUM:   4,
    Severity.LOW:      5,
}

_DEFAULT_FACILITY = 20  # local4


class SyslogSink(AlertSink):
    name = "syslog"

    def __init__(self, config: dict[str, Any], formatter: CEFFormatter | None = None) -> None:
        """수집기 주소와 facility를 설정에서 로드한다."""
        super().__init__(config, formatter)
        self._host     = config.get("host", "127.0.0.1")
        self._port     = int(config.get("port", 514))
        self._facility = int(config.get("facility", _DEFAULT_FACILITY))
        self._hostname = config.get("hostname") or socket.gethostname()
        self._transport: asyncio.DatagramTransport | None = None

    def render(self, alert: Alert) -> bytes:
        """<PRI>타임스탬프 호스트 CEF:... 형식의 syslog 메시지를 만든다."""
        pri = self._facility * 8 + _SYSLOG_SEVERITY[alert.severity]
        stamp = time.strftime("%b %d %H:%M:%S", time.localtime())
        # RFC 3164: 한 자리 일자는 공백으로 채운다
        if stamp[4] == "0":
            stamp = stamp[:4] + " " + stamp[5:]
        return f"<{pri}>{stamp} {self._hostname} {self.formatter.format(alert)}".encode("utf-8")

    async def _ensure_transport(self) -> asyncio.DatagramTransport:
        if self._transport is None or self._transport.is_closing():
            loop = asyncio.get_running_loop()
            transport, _ = await loop.create_datagram_endpoint(
                asyncio.DatagramProtocol,
                remote_addr=(self._host, self._port),
            )
            self._transport = transport
        return self._transport

    async def send(self, alert: Alert) -> bool:
        """UDP 데이터그램 하나로 알림을 전송한다."""
        transport = await self._ensure_transport()
        transport.sendto(self.render(alert))
        logger.debug("Syslog alert sent to %s:%d: %s", self._host, self._port, alert.dedup_key)
        return True

    async def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
