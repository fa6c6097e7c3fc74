"""HTTP POST로 CEF 레코드를 수집기에 전달하는 싱크."""

from __future__ import annotations

import logging
from typing import Any

import aiohttp

from scanwatcher.alerts.cef import CEFFormatter
from scanwatcher.alerts.sinks.base import AlertSink
from scanwatcher.detection.models import Alert

logger = logging.getLogger("scanwatcher.alerts.sinks.http")


class HttpSink(AlertSink):
    name = "http"

    def __init__(self, config: dict[str, Any], formatter: CEFFormatter | None = None) -> None:
        """수집기 URL과 요청 타임아웃을 설정에서 로드한다."""
        super().__init__(config, formatter)
        self._url     = config.get("url", "")
        self._timeout = float(config.get("timeout_seconds", 5.0))
        self._headers = {"Content-Type": "text/plain; charset=utf-8"}
        self._headers.update(config.get("headers", {}) or {})

    async def send(self, alert: Alert) -> bool:
        """수집기 엔드포인트로 CEF 레코드를 POST한다."""
        if not self._url:
            logger.warning("HTTP sink not configured (missing url)")
            return False

        body = self.formatter.format(alert)
        async with aiohttp.ClientSession() as session:
            async with session.post(
                self._url, data=body.encode("utf-8"), headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if 200 <= resp.status < 300:
                    logger.debug("HTTP alert sent: %s", alert.dedup_key)
                    return True
                text = await resp.text()
                logger.error("HTTP sink error %d: %s", resp.status, text[:200])
                return False
