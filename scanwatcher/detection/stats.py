"""파이프라인 전역 카운터.

탐지 로직은 이 값을 읽지 않으며 보고용으로만 사용한다 (eventual consistency).
"""

from __future__ import annotations

import threading

from scanwatcher import metrics

LINES_RECEIVED        = "lines_received"
LINES_MALFORMED       = "lines_malformed"
OBSERVATIONS_FILTERED = "observations_filtered"
EVENTS_PROCESSED      = "events_processed"
ALERTS_GENERATED      = "alerts_generated"
SOURCES_REJECTED      = "sources_rejected"
PROCESSING_ERRORS     = "processing_errors"
LINES_DROPPED         = "lines_dropped"

COUNTER_NAMES = (
    LINES_RECEIVED,
    LINES_MALFORMED,
    OBSERVATIONS_FILTERED,
    EVENTS_PROCESSED,
    ALERTS_GENERATED,
    SOURCES_REJECTED,
    PROCESSING_ERRORS,
    LINES_DROPPED,
)


class EngineStats:
    """스레드 안전 카운터 집합. 증가분은 Prometheus 카운터에도 반영된다."""

    def __init__(self) -> None:
        self._lock   = threading.Lock()
        self._counts = dict.fromkeys(COUNTER_NAMES, 0)

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] = self._counts.get(name, 0) + amount
        metrics.pipeline_events.labels(counter=name).inc(amount)

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts.get(name, 0)

    def snapshot(self) -> dict[str, int]:
        """현재 카운터 값의 사본."""
        with self._lock:
            return dict(self._counts)
