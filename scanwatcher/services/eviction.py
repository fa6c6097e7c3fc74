"""EvictionService - 비활성 출발지 축출과 카운터 보고 루프."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from scanwatcher import metrics

if TYPE_CHECKING:
    from scanwatcher.detection.engine import ScanDetectionEngine

logger = logging.getLogger("scanwatcher.services.eviction")


class EvictionService:
    """주기적 유지보수 실행: TTL이 지난 출발지 항목 축출, 카운터 스냅샷 로깅.

    탐지 경로와 독립적으로 동작하며 저장소의 샤드/항목 락만 사용한다.
    """

    def __init__(
        self,
        engine: ScanDetectionEngine,
        interval: float = 300,
        stats_interval: float = 60,
    ) -> None:
        """축출 서비스를 초기화한다. 엔진에서 저장소, 카운터, TTL을 얻는다."""
        self.engine         = engine
        self.store          = engine.store
        self.stats          = engine.stats
        self.interval       = interval
        self.stats_interval = stats_interval

        self._eviction_task: asyncio.Task | None = None
        self._stats_task: asyncio.Task | None    = None

    async def start(self) -> None:
        """축출 루프와 통계 보고 루프를 시작한다."""
        self._eviction_task = asyncio.create_task(self._eviction_loop())
        if self.stats_interval > 0:
            self._stats_task = asyncio.create_task(self._stats_loop())
        logger.info(
            "EvictionService started (interval=%ss, ttl=%ss)",
            self.interval, self.engine.activity_ttl,
        )

    async def stop(self) -> None:
        """모든 루프 태스크를 취소하고 정리한다."""
        for task in (self._eviction_task, self._stats_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._eviction_task = None
        self._stats_task    = None

    def run_once(self, now: float | None = None) -> int:
        """축출 1회 실행. cutoff = now - ttl 이전에 마지막으로 관찰된 항목을 제거한다."""
        if now is None:
            now = time.time()
        cutoff = now - self.engine.activity_ttl

        removed = self.store.evict_older_than(cutoff)
        remaining = len(self.store)

        metrics.tracked_sources.set(remaining)
        if removed:
            metrics.evicted_sources.inc(removed)

        logger.info(
            "Eviction: %d inactive sources removed, %d tracked (capacity %d, rejected %d)",
            removed, remaining, self.store.capacity, self.store.rejected_count,
        )
        return removed

    def log_stats(self) -> dict[str, int]:
        """카운터 스냅샷을 로깅하고 반환한다."""
        snapshot = self.stats.snapshot()
        logger.info(
            "Stats: %s | tracked=%d",
            ", ".join(f"{name}={value}" for name, value in snapshot.items()),
            len(self.store),
        )
        return snapshot

    async def _eviction_loop(self) -> None:
        """주기적으로 비활성 출발지를 축출한다."""
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.run_once()
            except Exception:
                logger.exception("Eviction run failed")

    async def _stats_loop(self) -> None:
        """주기적으로 파이프라인 카운터를 보고한다."""
        while True:
            await asyncio.sleep(self.stats_interval)
            try:
                self.log_stats()
            except Exception:
                logger.exception("Stats report failed")
