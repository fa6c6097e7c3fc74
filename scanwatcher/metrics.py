"""ScanWatcher용 Prometheus 메트릭 정의."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, generate_latest, start_http_server

# --- 인제스트/탐지 파이프라인 ---
pipeline_events = Counter(
    "scanwatcher_pipeline_events_total",
    "Pipeline counters (lines, observations, rejections)",
    ["counter"],
)

ingest_batches_dropped = Counter(
    "scanwatcher_ingest_batches_dropped_total",
    "Line batches dropped because the worker queue was full",
)

# --- 알림 ---
alerts_total       = Counter("scanwatcher_alerts_total", "Alerts generated", ["kind", "severity"])
alerts_dropped     = Counter("scanwatcher_alerts_dropped_total", "Alerts dropped because the queue was full")
alerts_queue_depth = Gauge("scanwatcher_alerts_queue_depth", "Current alert queue depth")

# --- 싱크 ---
sink_duration = Histogram(
    "scanwatcher_sink_send_duration_seconds",
    "Alert sink send duration",
    ["sink"],
)
sink_failures = Counter("scanwatcher_sink_failures_total", "Alert sink send failures", ["sink"])

# --- 활동 저장소 ---
tracked_sources = Gauge("scanwatcher_tracked_sources", "Currently tracked source addresses")
evicted_sources = Counter("scanwatcher_evicted_sources_total", "Source entries removed by eviction")


def get_metrics_output() -> bytes:
    """Prometheus 텍스트 노출 형식을 생성한다."""
    return generate_latest()


def serve_metrics(host: str, port: int) -> None:
    """Prometheus 스크레이프용 HTTP 엔드포인트를 백그라운드 스레드로 연다."""
    start_http_server(port, addr=host)
