"""로그 기반 포트 스캔 탐지 엔진 (빠른 스캔, 느린 스캔, 연결 폭주)."""

from __future__ import annotations

import logging
from typing import Any

from scanwatcher.detection.base import DetectionEngine
from scanwatcher.detection.models import (
    Alert,
    AlertKind,
    Severity,
    SeverityBands,
    upgrade_severity,
)
from scanwatcher.detection.stats import (
    ALERTS_GENERATED,
    EVENTS_PROCESSED,
    SOURCES_REJECTED,
    EngineStats,
)
from scanwatcher.detection.store import (
    SATURATION_EVICT_OLDEST,
    SATURATION_REJECT,
    ActivityStore,
    SourceActivity,
    StoreSaturated,
)
from scanwatcher.ingest.models import Observation

logger = logging.getLogger("scanwatcher.detection.engine")

_SAMPLE_PORTS = 20


class ScanDetectionEngine(DetectionEngine):
    """출발지 주소별 고유 목적지 포트 수를 슬라이딩 윈도우로 추적한다.

    한 번의 process 호출마다:
    1. ActivityStore에서 출발지 항목을 가져오거나 만든다 (포화 시 드롭)
    2. (port, timestamp)를 기록한다
    3. 가장 긴 윈도우보다 오래된 이벤트를 정리한다
    4. 빠른 스캔 → 느린 스캔 → 연결 폭주 순서로 임계값을 검사한다

    출발지당 알림은 한 번만 발생한다. 억제 상태는 관리자 해제
    (reset_suppression), 항목 축출 후 재생성, 또는 realert_after_seconds
    경과 시에만 풀린다.
    """

    name = "scan_detection"
    description = "로그 라인에서 출발지별 빠른/느린 포트 스캔과 연결 폭주를 탐지합니다."
    config_schema = {
        "rapid_threshold": {
            "type": int, "default": 10, "min": 2, "max": 65536,
            "label": "빠른 스캔 포트 수 임계값",
            "description": "rapid_window_seconds 내 고유 포트 수가 이 값 이상이면 RapidScan.",
        },
        "rapid_window_seconds": {
            "type": int, "default": 60, "min": 1, "max": 3600,
            "label": "빠른 스캔 윈도우(초)",
        },
        "slow_threshold": {
            "type": int, "default": 20, "min": 2, "max": 65536,
            "label": "느린 스캔 포트 수 임계값",
            "description": "slow_window_seconds 내 고유 포트 수가 이 값 이상이면 SlowScan.",
        },
        "slow_window_seconds": {
            "type": int, "default": 3600, "min": 60, "max": 604800,
            "label": "느린 스캔 윈도우(초)",
        },
        "burst_enabled": {
            "type": bool, "default": True,
            "label": "연결 폭주 탐지 사용",
        },
        "burst_threshold": {
            "type": int, "default": 50, "min": 2, "max": 1000000,
            "label": "연결 폭주 임계값",
            "description": "burst_window_seconds 내 접근 횟수(포트 중복 포함)가 이 값 이상이면 "
                           "ConnectionBurst. 무차별 대입/플러드 패턴 탐지용.",
        },
        "burst_window_seconds": {
            "type": int, "default": 10, "min": 1, "max": 600,
            "label": "연결 폭주 윈도우(초)",
        },
        "activity_ttl_seconds": {
            "type": int, "default": 0, "min": 0, "max": 2592000,
            "label": "출발지 항목 TTL(초)",
            "description": "마지막 관찰 이후 이 시간이 지나면 축출 대상. 0이면 가장 긴 윈도우의 2배. "
                           "가장 긴 윈도우의 2배보다 짧으면 그 값으로 보정된다.",
        },
        "max_tracked_sources": {
            "type": int, "default": 100000, "min": 1, "max": 10000000,
            "label": "최대 추적 출발지 수",
        },
        "saturation_policy": {
            "type": str, "default": SATURATION_REJECT,
            "choices": (SATURATION_REJECT, SATURATION_EVICT_OLDEST),
            "label": "포화 정책",
            "description": "reject: 새 출발지 거부, evict_oldest: 가장 오래된 항목 교체.",
        },
        "realert_after_seconds": {
            "type": int, "default": 0, "min": 0, "max": 2592000,
            "label": "재알림 대기(초)",
            "description": "0이면 축출 전까지 재알림하지 않는다.",
        },
        "rapid_severity_boost": {
            "type": bool, "default": False,
            "label": "빠른 스캔 심각도 한 단계 상향",
        },
        "severity_bands": {
            "type": dict, "default": {"critical": 100, "high": 50, "medium": 20},
            "label": "심각도 구간 (고유 포트 수 하한)",
        },
    }

    def __init__(
        self,
        config: dict[str, Any],
        store: ActivityStore,
        stats: EngineStats,
    ) -> None:
        """스캔 탐지 엔진을 초기화한다. 저장소와 카운터는 외부에서 주입받는다."""
        super().__init__(config)
        self._store = store
        self._stats = stats

        self._rapid_threshold = self.option("rapid_threshold")
        self._rapid_window    = self.option("rapid_window_seconds")
        self._slow_threshold  = self.option("slow_threshold")
        self._slow_window     = self.option("slow_window_seconds")
        self._burst_enabled   = self.option("burst_enabled")
        self._burst_threshold = self.option("burst_threshold")
        self._burst_window    = self.option("burst_window_seconds")
        self._realert_after   = self.option("realert_after_seconds")
        self._rapid_boost     = self.option("rapid_severity_boost")
        self._bands           = SeverityBands.from_config(self.option("severity_bands"))

        windows = [self._rapid_window, self._slow_window]
        if self._burst_enabled:
            windows.append(self._burst_window)
        self._longest_window = max(windows)

        # 축출 컷오프는 최소 now - 2 × longest_window
        min_ttl = 2 * self._longest_window
        ttl = self.option("activity_ttl_seconds") or min_ttl
        if ttl < min_ttl:
            logger.warning(
                "activity_ttl_seconds=%d is shorter than twice the longest window (%ds); using %ds",
                ttl, self._longest_window, min_ttl,
            )
            ttl = min_ttl
        self._activity_ttl = ttl

    @property
    def store(self) -> ActivityStore:
        return self._store

    @property
    def stats(self) -> EngineStats:
        return self._stats

    @property
    def longest_window(self) -> int:
        """설정된 윈도우 중 가장 긴 값(초)."""
        return self._longest_window

    @property
    def activity_ttl(self) -> int:
        """축출 기준 TTL(초)."""
        return self._activity_ttl

    def validate_config(self) -> list[str]:
        warnings = super().validate_config()
        rapid = self.config.get("rapid_window_seconds", self._rapid_window)
        slow  = self.config.get("slow_window_seconds", self._slow_window)
        if isinstance(rapid, int) and isinstance(slow, int) and rapid >= slow:
            warnings.append(
                f"{self.name}.rapid_window_seconds ({rapid}) should be shorter than "
                f"slow_window_seconds ({slow})"
            )
        bands = self._bands
        if not bands.critical >= bands.high >= bands.medium:
            warnings.append(
                f"{self.name}.severity_bands must be ordered critical >= high >= medium "
                f"(got {bands.critical}/{bands.high}/{bands.medium})"
            )
        return warnings

    def process(self, observation: Observation) -> Alert | None:
        """Observation 한 건을 반영하고, 임계값을 처음 넘으면 Alert를 반환한다."""
        if not self.enabled:
            return None

        try:
            with self._store.locked(observation.source_address, observation.timestamp) as activity:
                alert = self._evaluate(activity, observation)
        except StoreSaturated:
            self._stats.incr(SOURCES_REJECTED)
            logger.debug("Activity store saturated; dropped new source %s",
                         observation.source_address)
            return None

        self._stats.incr(EVENTS_PROCESSED)
        if alert is not None:
            self._stats.incr(ALERTS_GENERATED)
        return alert

    def reset_suppression(self, address: str) -> bool:
        """관리자 조치: 출발지의 알림 억제를 해제한다."""
        return self._store.clear_suppression(address)

    def _evaluate(self, activity: SourceActivity, observation: Observation) -> Alert | None:
        """항목 락을 잡은 상태에서 호출된다."""
        now = activity.add_port(observation.destination_port, observation.timestamp)
        if observation.origin_host:
            activity.last_host = observation.origin_host

        # 이벤트 단위 정리. 출발지 단위 축출은 EvictionService 담당
        activity.cleanup(self._longest_window, now)

        if self._is_suppressed(activity, now):
            return None

        rapid_ports = activity.unique_ports_in_window(self._rapid_window, now)
        if rapid_ports >= self._rapid_threshold:
            severity = self._bands.classify(rapid_ports)
            if self._rapid_boost:
                severity = upgrade_severity(severity)
            return self._emit(
                activity, AlertKind.RAPID_SCAN, rapid_ports, self._rapid_window, severity, now,
            )

        slow_ports = activity.unique_ports_in_window(self._slow_window, now)
        if slow_ports >= self._slow_threshold:
            return self._emit(
                activity, AlertKind.SLOW_SCAN, slow_ports, self._slow_window,
                self._bands.classify(slow_ports), now,
            )

        if self._burst_enabled:
            attempts = activity.events_in_window(self._burst_window, now)
            if attempts >= self._burst_threshold:
                burst_ports = activity.unique_ports_in_window(self._burst_window, now)
                return self._emit(
                    activity, AlertKind.CONNECTION_BURST, burst_ports, self._burst_window,
                    Severity.HIGH, now, attempts=attempts,
                )

        return None

    def _is_suppressed(self, activity: SourceActivity, now: float) -> bool:
        if activity.alerted_at is None:
            return False
        if self._realert_after and now - activity.alerted_at >= self._realert_after:
            return False
        return True

    def _emit(
        self,
        activity: SourceActivity,
        kind: AlertKind,
        unique_ports: int,
        window: int,
        severity: Severity,
        now: float,
        attempts: int | None = None,
    ) -> Alert:
        """억제 플래그를 설정하고 Alert를 만든다. 전송 성공 여부와 무관하다."""
        activity.alerted_at = now

        if kind is AlertKind.CONNECTION_BURST:
            message = (
                f"Connection burst detected: {activity.address} made {attempts} connection "
                f"attempts ({unique_ports} unique ports) in the last {window} seconds"
            )
        else:
            message = (
                f"Network scan {kind.value} detected: {activity.address} accessed "
                f"{unique_ports} unique ports in the last {window} seconds"
            )

        return Alert(
            kind              = kind,
            source_address    = activity.address,
            unique_port_count = unique_ports,
            window_seconds    = window,
            severity          = severity,
            message           = message,
            connection_count  = activity.connection_count,
            sample_ports      = tuple(activity.ports_in_window(window, now)[:_SAMPLE_PORTS]),
            origin_host       = activity.last_host,
        )

    def shutdown(self) -> None:
        """엔진 종료 시 추적 데이터를 정리한다."""
        self._store.clear()
