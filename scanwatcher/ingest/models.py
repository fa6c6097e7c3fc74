"""로그 라인 정규화 모델: Observation."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Observation:
    """입력 로그 한 줄의 정규화된 표현.

    모든 추출 규칙이 이 형식으로 변환하여 DetectionEngine에 전달한다.
    source_address와 destination_port가 없는 Observation은 만들지 않는다
    (정규화기가 None을 반환한다).
    """
    timestamp:           float        # 수집 시각 (UTC epoch 초)
    source_address:      str
    destination_port:    int
    protocol:            str | None = None
    action:              str | None = None
    origin_host:         str | None = None   # syslog 헤더의 장비 호스트명
    destination_address: str | None = None
