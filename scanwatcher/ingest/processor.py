"""LineProcessor: 원시 로그 라인을 정규화하여 탐지 엔진에 전달한다."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from scanwatcher.detection.engine import ScanDetectionEngine
from scanwatcher.detection.models import Alert
from scanwatcher.detection.stats import (
    LINES_MALFORMED,
    LINES_RECEIVED,
    OBSERVATIONS_FILTERED,
    PROCESSING_ERRORS,
    EngineStats,
)
from scanwatcher.ingest.normalizer import LogNormalizer
from scanwatcher.utils.network import is_internal

if TYPE_CHECKING:
    from scanwatcher.alerts.dispatcher import AlertDispatcher

logger = logging.getLogger("scanwatcher.ingest.processor")


class LineProcessor:
    """라인 → Observation → 엔진 → 디스패처 파이프라인.

    워커 스레드에서 동시에 호출될 수 있다. 상태는 엔진/저장소와
    EngineStats에만 있으며 이 클래스는 자체 가변 상태를 갖지 않는다.
    """

    def __init__(
        self,
        normalizer: LogNormalizer,
        engine: ScanDetectionEngine,
        stats: EngineStats,
        dispatcher: "AlertDispatcher | None" = None,
        ignore_internal: bool = True,
    ) -> None:
        self._normalizer      = normalizer
        self._engine          = engine
        self._stats           = stats
        self._dispatcher      = dispatcher
        self._ignore_internal = ignore_internal

    @property
    def engine(self) -> ScanDetectionEngine:
        return self._engine

    @property
    def stats(self) -> EngineStats:
        return self._stats

    def on_lines(
        self,
        lines: Iterable[str],
        received_at: float | Sequence[float] | None = None,
    ) -> list[Alert]:
        """라인 묶음을 처리하고 발생한 알림 목록을 반환한다.

        received_at은 수신 시각이다. 묶음 전체에 하나의 값을 주거나
        라인별 값을 lines와 같은 순서로 준다. None이면 정규화 시점의 시계를 쓴다.
        """
        if received_at is None or isinstance(received_at, (int, float)):
            stamps: Iterable[float | None] = itertools.repeat(received_at)
        else:
            stamps = received_at

        alerts: list[Alert] = []
        for line, stamp in zip(lines, stamps):
            alert = self.on_line(line, stamp)
            if alert is not None:
                alerts.append(alert)
        return alerts

    def on_line(self, line: str, received_at: float | None = None) -> Alert | None:
        """라인 한 건을 처리한다. 예외는 이 라인 안에서만 처리된다."""
        if not line or not line.strip():
            return None
        self._stats.incr(LINES_RECEIVED)

        try:
            observation = self._normalizer.normalize(line, received_at)
            if observation is None:
                self._stats.incr(LINES_MALFORMED)
                return None

            if self._ignore_internal and is_internal(observation.source_address):
                self._stats.incr(OBSERVATIONS_FILTERED)
                return None

            alert = self._engine.process(observation)
            if alert is not None and self._dispatcher is not None:
                self._dispatcher.enqueue(alert)
            return alert
        except Exception:
            self._stats.incr(PROCESSING_ERRORS)
            logger.exception("Failed to process log line: %.200s", line)
            return None
