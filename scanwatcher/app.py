"""메인 오케스트레이터: 수신, 정규화, 탐지, 알림, 축출 통합 관리."""

from __future__ import annotations

import asyncio
import logging
import signal

from scanwatcher import metrics
from scanwatcher.alerts.dispatcher import AlertDispatcher
from scanwatcher.detection.engine import ScanDetectionEngine
from scanwatcher.detection.stats import EngineStats
from scanwatcher.detection.store import ActivityStore
from scanwatcher.ingest.collector import UdpLogCollector, UnixLogCollector, WorkerPool
from scanwatcher.ingest.normalizer import LogNormalizer
from scanwatcher.ingest.processor import LineProcessor
from scanwatcher.services.eviction import EvictionService
from scanwatcher.utils.config import Config
from scanwatcher.utils.logging_setup import setup_logging

logger = logging.getLogger("scanwatcher.app")


class ScanWatcher:
    """최상위 애플리케이션 오케스트레이터.

    저장소와 카운터를 소유하고 엔진, 프로세서, 서비스에 주입한다.
    컴포넌트 연결, 시작 순서 제어, 정상 종료만 담당한다.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self.loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None

        detection_cfg = config.section("detection")
        ingest_cfg    = config.section("ingest")

        # 핵심 컴포넌트
        self.stats = EngineStats()
        self.store = ActivityStore(
            max_sources=detection_cfg.get("max_tracked_sources", 100_000),
            saturation_policy=detection_cfg.get("saturation_policy", "reject"),
        )
        self.engine     = ScanDetectionEngine(detection_cfg, self.store, self.stats)
        self.dispatcher = AlertDispatcher(config)
        self.normalizer = LogNormalizer()
        self.processor  = LineProcessor(
            self.normalizer,
            self.engine,
            self.stats,
            dispatcher=self.dispatcher,
            ignore_internal=ingest_cfg.get("ignore_internal", True),
        )
        self.pool = WorkerPool(
            self.processor,
            workers=ingest_cfg.get("workers", 4),
            queue_size=ingest_cfg.get("queue_size", 1000),
        )

        # 수신기
        self.udp_collector: UdpLogCollector | None = None
        udp_cfg = ingest_cfg.get("udp", {})
        if udp_cfg.get("enabled", True):
            self.udp_collector = UdpLogCollector(
                self.pool,
                host=udp_cfg.get("host", "0.0.0.0"),
                port=udp_cfg.get("port", 5555),
            )

        self.unix_collector: UnixLogCollector | None = None
        unix_cfg = ingest_cfg.get("unix", {})
        if unix_cfg.get("enabled", False):
            self.unix_collector = UnixLogCollector(
                self.pool,
                path=unix_cfg["path"],
                batch_size=ingest_cfg.get("batch_size", 50),
            )

        eviction_cfg = config.section("eviction")
        self.eviction = EvictionService(
            self.engine,
            interval=eviction_cfg.get("interval_seconds", 300),
            stats_interval=eviction_cfg.get("stats_interval_seconds", 60),
        )

    def request_stop(self) -> None:
        """실행 중인 run()에 종료를 요청한다."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """메인 진입점: 모든 컴포넌트를 시작하고 종료 신호를 기다린다."""
        self.loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()

        setup_logging(self.config)
        logger.info("ScanWatcher starting...")

        for warning in self.engine.validate_config():
            logger.warning("Config: %s", warning)
        logger.info(
            "Detection: rapid %d ports/%ds, slow %d ports/%ds, burst %s, ttl %ds, capacity %d",
            self.engine.option("rapid_threshold"), self.engine.option("rapid_window_seconds"),
            self.engine.option("slow_threshold"), self.engine.option("slow_window_seconds"),
            "on" if self.engine.option("burst_enabled") else "off",
            self.engine.activity_ttl, self.store.capacity,
        )

        # ── Prometheus 노출 ──────────────────────────────────────────────
        if self.config.get("metrics.enabled", False):
            host = self.config.get("metrics.host", "0.0.0.0")
            port = self.config.get("metrics.port", 9108)
            metrics.serve_metrics(host, port)
            logger.info("Metrics endpoint listening on %s:%d", host, port)

        # ── 알림 디스패처 ────────────────────────────────────────────────
        await self.dispatcher.start()

        # ── 수신기 ──────────────────────────────────────────────────────
        if self.udp_collector is not None:
            await self.udp_collector.start()
        if self.unix_collector is not None:
            await self.unix_collector.start()
        if self.udp_collector is None and self.unix_collector is None:
            logger.warning("No ingest listener enabled; nothing will be received")

        # ── 시그널 처리 ─────────────────────────────────────────────────
        def _signal_handler() -> None:
            logger.info("Shutdown signal received")
            self.request_stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self.loop.add_signal_handler(sig, _signal_handler)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s not installed", sig)

        # ── 백그라운드 서비스 시작 ────────────────────────────────────────
        await self.eviction.start()

        logger.info("ScanWatcher ready (%d workers)", self.pool.workers)

        await self._stop_event.wait()

        # ── 종료 ──────────────────────────────────────────────────────────
        logger.info("Shutting down...")
        if self.udp_collector is not None:
            self.udp_collector.stop()
        if self.unix_collector is not None:
            await self.unix_collector.stop()
        await self.pool.drain()
        self.pool.shutdown()
        await self.eviction.stop()
        await self.dispatcher.stop()
        self.eviction.log_stats()
        self.engine.shutdown()
        logger.info("ScanWatcher stopped")
