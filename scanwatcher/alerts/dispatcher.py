"""중앙 알림 디스패처: 로깅, CEF 렌더링, 싱크(UDP syslog/HTTP) 병렬 전송."""

from __future__ import annotations

import asyncio
import logging
import time

from scanwatcher import metrics
from scanwatcher.alerts.cef import CEFFormatter
from scanwatcher.alerts.sinks.base import AlertSink
from scanwatcher.alerts.sinks.http import HttpSink
from scanwatcher.alerts.sinks.syslog import SyslogSink
from scanwatcher.detection.models import Alert, Severity
from scanwatcher.utils.config import Config

logger = logging.getLogger("scanwatcher.alerts.dispatcher")

_LOG_LEVELS = {
    Severity.CRITICAL: logging.CRITICAL,
    Severity.HIGH:     logging.ERROR,
    Severity.MEDIUM:   logging.WARNING,
    Severity.LOW:      logging.INFO,
}


class AlertDispatcher:
    """탐지 경로와 알림 전송을 분리하는 디스패처.

    각 알림에 대한 처리 흐름:
    1. 터미널 로깅
    2. Prometheus 알림 카운터
    3. 활성화된 싱크로 병렬 전송 (싱크별 타임아웃, 재시도 없음)

    전송 실패는 기록 후 버린다. 엔진의 억제 상태는 되돌리지 않는다.
    """

    def __init__(
        self,
        config: Config,
        sinks: list[AlertSink] | None = None,
        formatter: CEFFormatter | None = None,
    ) -> None:
        """설정에서 큐 크기, 전송 타임아웃, 싱크 목록을 구성한다."""
        alerts_cfg = config.section("alerts")
        self._formatter    = formatter or CEFFormatter.from_config(alerts_cfg.get("cef"))
        self._send_timeout = float(alerts_cfg.get("send_timeout_seconds", 5.0))
        self._queue: asyncio.Queue[Alert] = asyncio.Queue(maxsize=alerts_cfg.get("queue_size", 10000))
        self._task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._dropped = 0

        if sinks is None:
            sinks = []
            sinks_config = alerts_cfg.get("sinks", {})
            sink_classes = [
                ("syslog", SyslogSink),
                ("http", HttpSink),
            ]
            for name, cls in sink_classes:
                sink_config = sinks_config.get(name, {})
                if sink_config.get("enabled", False):
                    sinks.append(cls(sink_config, self._formatter))
                    logger.info("Alert sink enabled: %s", name)
        self._sinks = sinks

    @property
    def formatter(self) -> CEFFormatter:
        return self._formatter

    @property
    def sinks(self) -> list[AlertSink]:
        return list(self._sinks)

    @property
    def dropped_count(self) -> int:
        return self._dropped

    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """디스패처 소비자 루프를 시작한다."""
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self._consumer_loop())
        logger.info("AlertDispatcher started (%d sinks)", len(self._sinks))

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """남은 알림을 제한 시간 동안 처리한 뒤 디스패처를 중지한다."""
        if self._task:
            if not self._queue.empty():
                try:
                    await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
                except asyncio.TimeoutError:
                    logger.warning("Alert queue not drained before shutdown (%d pending)",
                                   self._queue.qsize())
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        for sink in self._sinks:
            try:
                await sink.close()
            except Exception:
                logger.exception("Failed to close alert sink %s", sink.name)
        logger.info("AlertDispatcher stopped")

    def enqueue(self, alert: Alert) -> None:
        """스레드 안전 큐 삽입 (워커 스레드의 LineProcessor에서 호출)."""
        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._put, alert)
                return
        self._put(alert)

    def _put(self, alert: Alert) -> None:
        try:
            self._queue.put_nowait(alert)
        except asyncio.QueueFull:
            self._dropped += 1
            metrics.alerts_dropped.inc()
            logger.warning("Alert queue full, dropping alert: %s", alert.dedup_key)
            return
        metrics.alerts_queue_depth.set(self._queue.qsize())

    async def _consumer_loop(self) -> None:
        """큐에서 알림을 처리한다."""
        while True:
            alert = await self._queue.get()
            metrics.alerts_queue_depth.set(self._queue.qsize())
            try:
                await self.process_alert(alert)
            except Exception:
                logger.exception("Error processing alert: %s", alert.dedup_key)
            finally:
                self._queue.task_done()

    async def process_alert(self, alert: Alert) -> None:
        """알림 한 건에 대해 로깅, 메트릭, 싱크 전송을 실행한다."""
        logger.log(
            _LOG_LEVELS.get(alert.severity, logging.INFO),
            "[%s] %s | src=%s ports=%d window=%ds | %s",
            alert.severity.value, alert.kind.value, alert.source_address,
            alert.unique_port_count, alert.window_seconds, alert.message,
        )
        metrics.alerts_total.labels(kind=alert.kind.value, severity=alert.severity.value).inc()

        await self._send_to_sinks(alert)

    async def _send_to_sinks(self, alert: Alert) -> None:
        """해당하는 모든 싱크에 알림을 병렬로 전송한다."""
        async def _timed_send(sink: AlertSink) -> tuple[str, float, bool, Exception | None]:
            """싱크 전송을 수행하고 (이름, 소요 시간, 성공 여부, 예외)를 반환한다."""
            start = time.monotonic()
            try:
                ok = await asyncio.wait_for(sink.send(alert), timeout=self._send_timeout)
                return sink.name, time.monotonic() - start, bool(ok), None
            except Exception as exc:
                return sink.name, time.monotonic() - start, False, exc

        tasks = [_timed_send(sink) for sink in self._sinks if sink.should_send(alert)]
        if not tasks:
            return

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Sink task raised unexpected error: %r", result)
                continue
            name, elapsed, ok, exc = result
            metrics.sink_duration.labels(sink=name).observe(elapsed)
            if exc is not None:
                metrics.sink_failures.labels(sink=name).inc()
                logger.error("Alert sink %s failed: %r", name, exc)
            elif not ok:
                metrics.sink_failures.labels(sink=name).inc()
                logger.warning("Alert sink %s rejected alert %s", name, alert.dedup_key)
